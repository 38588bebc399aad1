"""
Cache store behaviour: due checks, monotonic freshness markers, deduplicated
tile inserts and immutable reference rows.
"""

import threading
from datetime import timedelta

import pytest

from bomcache.database import models
from bomcache.database.db import CacheDB
from bomcache.database.models import ResourceKind
from bomcache.errors import IntegrityViolation

from conftest import dt, make_png, tile_name


def _tile(minute: int, radar_id: int = 2) -> models.RadarDataLayer:
    return models.RadarDataLayer(
        image=make_png(),
        radar_id=radar_id,
        radar_type_id="3",
        timestamp=dt(2024, 1, 1, 0, minute),
        filename=tile_name(minute, radar_id=radar_id),
    )


def _location(**overrides) -> models.Location:
    values = dict(
        id="melbourne-3000",
        geohash="r1r0fsn",
        station_id=None,
        has_wave=False,
        latitude=-37.81,
        longitude=144.96,
        name="Melbourne",
        state="VIC",
        postcode="3000",
        timezone="Australia/Melbourne",
    )
    values.update(overrides)
    return models.Location(**values)


def _station(**overrides) -> models.Station:
    values = dict(
        id=86071,
        district_id="86",
        name="MELBOURNE REGIONAL OFFICE",
        start=1908,
        end=2015,
        latitude=-37.8075,
        longitude=144.97,
        state="VIC",
    )
    values.update(overrides)
    return models.Station(**values)


def test_unknown_resource_is_due(db):
    assert db.is_due(ResourceKind.OBSERVATION, "melbourne-3000", timedelta(minutes=10))


def test_due_after_interval(db):
    checked = dt(2024, 1, 1, 12, 0)
    db.mark_checked(ResourceKind.OBSERVATION, "melbourne-3000", checked)

    interval = timedelta(minutes=10)
    assert not db.is_due(ResourceKind.OBSERVATION, "melbourne-3000", interval, now=checked + timedelta(minutes=5))
    assert db.is_due(ResourceKind.OBSERVATION, "melbourne-3000", interval, now=checked + timedelta(minutes=11))
    assert db.next_due(ResourceKind.OBSERVATION, "melbourne-3000", interval) == checked + interval


def test_marker_only_moves_forward(db):
    later = dt(2024, 1, 1, 12, 10)
    db.mark_checked(ResourceKind.DAILY, "melbourne-3000", later)
    db.mark_checked(ResourceKind.DAILY, "melbourne-3000", dt(2024, 1, 1, 12, 0))

    marker = db.get_marker(ResourceKind.DAILY, "melbourne-3000")
    assert marker.last_check == later.replace(tzinfo=None)

    db.mark_checked(ResourceKind.DAILY, "melbourne-3000", dt(2024, 1, 1, 12, 20), timedelta(hours=1))
    marker = db.get_marker(ResourceKind.DAILY, "melbourne-3000")
    assert marker.last_check == dt(2024, 1, 1, 12, 20).replace(tzinfo=None)
    assert marker.interval_seconds == 3600


def test_markers_are_keyed_by_kind_and_key(db):
    db.mark_checked(ResourceKind.OBSERVATION, "melbourne-3000", dt(2024, 1, 1))
    assert db.is_due(ResourceKind.DAILY, "melbourne-3000", timedelta(hours=1), now=dt(2024, 1, 1, 0, 1))
    assert db.is_due(ResourceKind.OBSERVATION, "sydney-2000", timedelta(hours=1), now=dt(2024, 1, 1, 0, 1))


def test_insert_radar_tile_is_idempotent(db, radar):
    assert db.insert_radar_tile(_tile(0))
    assert not db.insert_radar_tile(_tile(0))
    assert db.known_tile_filenames(2, "3") == {tile_name(0)}


def test_latest_tiles_newest_first(db, radar):
    for minute in (10, 0, 5, 15):
        db.insert_radar_tile(_tile(minute))

    tiles = db.latest_tiles(2, "3", 3)
    assert [t.filename for t in tiles] == [tile_name(15), tile_name(10), tile_name(5)]


def test_tile_for_unknown_radar_is_rejected(db):
    with pytest.raises(IntegrityViolation):
        db.insert_radar_tile(_tile(0, radar_id=99))


def test_prune_data_layers_keeps_newest(db, radar):
    for minute in range(0, 30, 5):
        db.insert_radar_tile(_tile(minute))

    assert db.prune_data_layers(2, "3", keep=2) == 4
    assert db.known_tile_filenames(2, "3") == {tile_name(20), tile_name(25)}


def test_upsert_reference_ignores_identical_row(db):
    assert db.upsert_reference(_station())
    assert not db.upsert_reference(_station())


def test_upsert_reference_conflict_is_surfaced(db):
    db.upsert_reference(_station())
    with pytest.raises(IntegrityViolation) as excinfo:
        db.upsert_reference(_station(name="SOMEWHERE ELSE"))

    assert excinfo.value.resource == "station:86071"
    assert db.get_station(86071).name == "MELBOURNE REGIONAL OFFICE"


def test_upsert_reference_rejects_other_tables(db):
    with pytest.raises(TypeError):
        db.upsert_reference(models.FreshnessMarker(kind="daily", key="x", last_check=dt(2024, 1, 1), interval_seconds=0))


def test_location_without_station(db):
    assert db.insert_location(_location())
    assert db.get_location("melbourne-3000").station_id is None


def test_location_with_unknown_station_violates_foreign_key(db):
    with pytest.raises(IntegrityViolation):
        db.insert_location(_location(station_id=12345))
    assert db.get_location("melbourne-3000") is None


def test_location_linked_to_cached_station(db):
    db.upsert_reference(_station())
    db.insert_location(_location(station_id=86071))
    assert db.get_location("melbourne-3000").station_id == 86071


def test_observations_latest_and_pruned(db):
    db.insert_location(_location())
    for minute in range(5):
        db.record_observation("melbourne-3000", ResourceKind.OBSERVATION, {"temp": minute}, dt(2024, 1, 1, 0, minute))

    latest = db.latest_observation("melbourne-3000", ResourceKind.OBSERVATION)
    assert latest.payload == {"temp": 4}

    assert db.prune_observations("melbourne-3000", ResourceKind.OBSERVATION, keep=2) == 3
    assert db.latest_observation("melbourne-3000", ResourceKind.OBSERVATION).payload == {"temp": 4}
    assert db.latest_observation("melbourne-3000", ResourceKind.DAILY) is None


def test_atomic_rolls_back_on_error(db):
    db.insert_location(_location())

    def work(session):
        db.record_observation("melbourne-3000", ResourceKind.DAILY, {"a": 1}, dt(2024, 1, 1), session=session)
        db.mark_checked(ResourceKind.DAILY, "melbourne-3000", dt(2024, 1, 1), session=session)
        raise RuntimeError("refresh failed halfway")

    with pytest.raises(RuntimeError):
        db.atomic(work)

    assert db.latest_observation("melbourne-3000", ResourceKind.DAILY) is None
    assert db.get_marker(ResourceKind.DAILY, "melbourne-3000") is None


def test_feature_layers_invalidated(db, radar):
    layer = models.RadarFeatureLayer(
        image=make_png(), radar_id=2, feature="background", radar_type_id="3", filename="IDR023.background.png"
    )
    assert db.insert_feature_layer(layer)
    db.mark_checked(ResourceKind.RADAR_FEATURE, "IDR023", dt(2024, 1, 1))

    assert db.invalidate_feature_layers(2, "3", "IDR023") == 1
    assert db.feature_layers(2, "3") == []
    assert db.get_marker(ResourceKind.RADAR_FEATURE, "IDR023") is None


def test_concurrent_writers_do_not_duplicate(db_url, radar):
    """Two processes sharing the file are simulated by two engines on it."""
    first = CacheDB(db_url, busy_timeout=5, retry_delay=0.01)
    second = CacheDB(db_url, busy_timeout=5, retry_delay=0.01)
    results = []

    def insert_all(cache, completed):
        for minute in range(0, 60, 5):
            results.append(cache.insert_radar_tile(_tile(minute)))
        cache.mark_checked(ResourceKind.RADAR_DATA, "IDR023", completed)

    completions = [(first, dt(2024, 1, 1, 1, 5)), (second, dt(2024, 1, 1, 1, 0))]
    threads = [threading.Thread(target=insert_all, args=args) for args in completions]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert results.count(True) == 12
    assert len(first.known_tile_filenames(2, "3")) == 12
    marker = second.get_marker(ResourceKind.RADAR_DATA, "IDR023")
    assert marker.last_check == dt(2024, 1, 1, 1, 5).replace(tzinfo=None)
    first.close()
    second.close()
