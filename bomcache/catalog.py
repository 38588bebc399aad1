import os
import struct
import tempfile
from dataclasses import dataclass
from typing import Iterable
import logging

from dbfread import DBF

from .database import models
from .errors import DecodeError
from .utils import bearing_deg, compass_direction, haversine_km

logger = logging.getLogger(__name__)

CATALOG_FILENAME = "IDR00007.dbf"
NEARBY_DISTANCE_KM = 200


def _read_records(dbf_buf: bytes) -> list[dict]:
    # dbfread only opens tables from a path
    with tempfile.TemporaryDirectory() as tmp_dir:
        path = os.path.join(tmp_dir, CATALOG_FILENAME)
        with open(path, "wb") as f:
            f.write(dbf_buf)
        try:
            return [dict(record) for record in DBF(path, encoding="latin-1", lowernames=True)]
        except (ValueError, struct.error) as e:
            raise DecodeError(f"Unable to read radar catalog: {e}", resource=CATALOG_FILENAME) from e


def _radar_from_record(record: dict) -> models.Radar:
    try:
        return models.Radar(
            id=int(record["id"]),
            name=record["name"],
            full_name=record["full_name"],
            latitude=float(record["latitude"]),
            longitude=float(record["longitude"]),
            state=record["state"],
            type_=record["type"],
            group_=record.get("group") == "Yes",
        )
    except (KeyError, TypeError, ValueError) as e:
        raise DecodeError(f"Invalid radar catalog record {record}: {e}", resource=CATALOG_FILENAME) from e


def parse_radar_catalog(dbf_buf: bytes) -> list[models.Radar]:
    """
    Parse the BOM radar catalog, a dBase table with one row per radar site,
    and return the radars whose status is ``Public``.

    A radar id listed more than once keeps its first row.
    """
    radars: dict[int, models.Radar] = {}
    records = _read_records(dbf_buf)
    for record in records:
        if record.get("status") != "Public":
            continue
        radar = _radar_from_record(record)
        if radar.id in radars:
            logger.warning(f"Radar {radar.id} is listed more than once in the catalog. Keeping the first entry")
            continue
        radars[radar.id] = radar

    logger.debug(f"Radar catalog lists {len(records)} radars, {len(radars)} public")
    return list(radars.values())


@dataclass
class NearbyRadar:
    radar: models.Radar
    distance_km: int
    direction: str

    def __str__(self):
        return f"{self.radar.full_name or self.radar.name} - {self.distance_km}km {self.direction}"


def rank_nearby_radars(
    latitude: float,
    longitude: float,
    radars: Iterable[models.Radar],
    max_distance_km: int = NEARBY_DISTANCE_KM,
) -> list[NearbyRadar]:
    """
    Rank radars by distance from a point. Radars further than
    ``max_distance_km`` are dropped, but the closest radar is always returned.
    """
    ranked = []
    for radar in radars:
        if radar.latitude is None or radar.longitude is None:
            continue
        distance = haversine_km(latitude, longitude, radar.latitude, radar.longitude)
        bearing = bearing_deg(latitude, longitude, radar.latitude, radar.longitude)
        ranked.append(NearbyRadar(radar=radar, distance_km=int(distance), direction=compass_direction(bearing)))

    ranked.sort(key=lambda r: r.distance_km)
    within = [r for r in ranked if r.distance_km <= max_distance_km]
    return within or ranked[:1]
