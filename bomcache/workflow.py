from datetime import datetime, timedelta
from typing import Any, Dict
import logging

from .catalog import NEARBY_DISTANCE_KM, NearbyRadar, parse_radar_catalog, rank_nearby_radars
from .compositor import RadarLoopCompositor, RenderResult
from .config import CacheConfig, RadarConfig
from .database import models
from .database.db import CacheDB
from .database.models import ResourceKind
from .errors import DecodeError, NetworkError
from .fetcher import BatchResult, RadarLayerFetcher
from .radar import RadarType, radar_prefix
from .remote.client import WeatherClient, WeatherSnapshot
from .scheduler import MonitorScheduler, TrackedResource
from .stations import station_rows
from .utils import utc_now

logger = logging.getLogger(__name__)

WEATHER_KINDS = (ResourceKind.OBSERVATION, ResourceKind.DAILY, ResourceKind.HOURLY, ResourceKind.WARNINGS)


class CacheWorkflow:
    """
    Connects the cache components: builds the tracked resources for the
    scheduler, performs their refreshes and serves cache reads.
    """

    def __init__(
        self,
        config: CacheConfig,
        db: CacheDB,
        client: WeatherClient,
        fetcher: RadarLayerFetcher,
        compositor: RadarLoopCompositor,
        scheduler: MonitorScheduler,
    ):
        self.config = config
        self.db = db
        self.client = client
        self.fetcher = fetcher
        self.compositor = compositor
        self.scheduler = scheduler

    # Resources

    def interval_for(self, location: models.Location, kind: ResourceKind) -> timedelta:
        overrides = location.weather or {}
        if kind.value in overrides:
            return timedelta(seconds=float(overrides[kind.value]))
        return self.config.intervals.for_kind(kind)

    def weather_resource(self, location: models.Location, kind: ResourceKind) -> TrackedResource:
        return TrackedResource(
            kind=kind,
            key=location.id,
            interval=self.interval_for(location, kind),
            refresh=lambda: self.refresh_weather(location, kind),
        )

    def weather_resources(self, location: models.Location) -> list[TrackedResource]:
        return [self.weather_resource(location, kind) for kind in WEATHER_KINDS]

    def next_tile_available(self, radar_id: int, radar_type: RadarType) -> datetime | None:
        """When the tile after the newest cached one should be in the archive."""
        latest = self.db.latest_tile_time(radar_id, radar_type.type_id)
        if latest is None:
            return None
        return latest + radar_type.update_frequency + radar_type.check_after

    def radar_resource(self, radar: RadarConfig, radar_type: RadarType) -> TrackedResource:
        return TrackedResource(
            kind=ResourceKind.RADAR_DATA,
            key=radar_prefix(radar.id, radar_type),
            interval=radar_type.update_frequency,
            refresh=lambda: self.refresh_radar(radar, radar_type),
            not_before=lambda: self.next_tile_available(radar.id, radar_type),
        )

    def radar_resources(self) -> list[TrackedResource]:
        return [
            self.radar_resource(radar, radar_type)
            for radar in self.config.radars
            for radar_type in radar.radar_types
        ]

    def register_resources(self):
        """Add the active location and every configured radar to the scheduler."""
        if self.config.location is not None:
            location = self.db.get_location(self.config.location)
            if location is None:
                logger.warning(f"Location {self.config.location} is not in the cache. Run the setup first")
            else:
                for resource in self.weather_resources(location):
                    self.scheduler.add_resource(resource)
        for resource in self.radar_resources():
            self.scheduler.add_resource(resource)

    # Weather

    async def _fetch_weather(self, geohash: str, kind: ResourceKind) -> WeatherSnapshot | None:
        async with self.client as client:
            if kind is ResourceKind.OBSERVATION:
                return await client.get_observation(geohash)
            if kind is ResourceKind.DAILY:
                return await client.get_daily(geohash)
            if kind is ResourceKind.HOURLY:
                return await client.get_hourly(geohash)
            if kind is ResourceKind.WARNINGS:
                return await client.get_warnings(geohash)
        raise ValueError(f"{kind} is not a weather resource")

    async def refresh_weather(self, location: models.Location, kind: ResourceKind) -> bool:
        """
        Fetch one weather resource and store it with its freshness marker in a
        single transaction. Returns True if a snapshot was recorded.
        """
        snapshot = await self._fetch_weather(location.geohash, kind)
        fetched_at = utc_now()
        interval = self.interval_for(location, kind)

        def store(session):
            if snapshot is not None:
                self.db.record_observation(
                    location.id, kind, snapshot.payload, fetched_at,
                    issue_time=snapshot.issue_time, session=session,
                )
                self.db.prune_observations(location.id, kind, self.config.past_observations, session=session)
            self.db.mark_checked(kind, location.id, fetched_at, interval, session=session)

        self.db.atomic(store, resource=f"{kind.value}:{location.id}")
        if snapshot is None:
            logger.info(f"No {kind.value} available for {location.id}")
        else:
            logger.info(f"Stored new {kind.value} for {location.id}")
        return snapshot is not None

    async def read(self, location_id: str, kind: ResourceKind, check: bool = False) -> models.Observation | None:
        """
        Return the latest cached snapshot. With ``check`` the resource is
        refreshed first if it is due, using the same due-check as the monitor.
        """
        if check:
            location = self.db.get_location(location_id)
            if location is None:
                raise ValueError(f"Unknown location {location_id}")
            await self.scheduler.refresh_if_due(self.weather_resource(location, kind))
        return self.db.latest_observation(location_id, kind)

    # Radar

    async def _load_radar_catalog(self) -> int:
        # The archive session must already be open
        radars = parse_radar_catalog(await self.fetcher.archive.get_radar_catalog())

        def work(session) -> int:
            return sum(self.db.upsert_reference(row, session=session) for row in radars)

        inserted = self.db.atomic(work, resource="radar")
        logger.info(f"Loaded {len(radars)} public radars, {inserted} new")
        return inserted

    async def load_radar_catalog(self) -> int:
        """Download the radar catalog and cache every public radar. Returns the number of new radars."""
        async with self.fetcher.archive:
            return await self._load_radar_catalog()

    async def ensure_radar(self, radar: RadarConfig) -> models.Radar:
        """
        Return the cached catalog row of a configured radar, loading the
        catalog the first time it is needed.
        """
        row = self.db.get_radar(radar.id)
        if row is None:
            await self._load_radar_catalog()
            row = self.db.get_radar(radar.id)
        if row is None:
            raise ValueError(f"Radar {radar.id} is not in the public radar catalog")
        return row

    async def nearby_radars(self, location_id: str, max_distance_km: int = NEARBY_DISTANCE_KM) -> list[NearbyRadar]:
        location = self.db.get_location(location_id)
        if location is None:
            raise ValueError(f"Unknown location {location_id}")
        radars = self.db.all_radars()
        if not radars:
            await self.load_radar_catalog()
            radars = self.db.all_radars()
        return rank_nearby_radars(location.latitude, location.longitude, radars, max_distance_km)

    async def ensure_overlays(self, radar: RadarConfig, radar_type: RadarType) -> BatchResult:
        """
        Download the legend and feature layers that are missing. Overlays are
        static, so they are only fetched when absent or after invalidation.
        """
        key = radar_prefix(radar.id, radar_type)
        legend_result = await self.fetcher.fetch_legends([radar_type.legend_type])
        result = await self.fetcher.fetch_feature_layers(radar.id, radar_type, radar.features)
        if result.ok and result.new:
            self.db.mark_checked(ResourceKind.RADAR_FEATURE, key, utc_now())

        result.listed += legend_result.listed
        result.new += legend_result.new
        result.failed += legend_result.failed
        result.failures.extend(legend_result.failures)
        return result

    def invalidate_overlays(self, radar: RadarConfig, radar_type: RadarType) -> int:
        return self.db.invalidate_feature_layers(radar.id, radar_type.type_id, radar_prefix(radar.id, radar_type))

    async def refresh_radar(self, radar: RadarConfig, radar_type: RadarType) -> BatchResult:
        key = radar_prefix(radar.id, radar_type)

        async with self.fetcher.archive:
            await self.ensure_radar(radar)
            await self.ensure_overlays(radar, radar_type)
            result = await self.fetcher.fetch_data_layers(radar.id, radar_type, max_new=radar.loop_length)

        if result.ok:
            self.db.mark_checked(ResourceKind.RADAR_DATA, key, utc_now(), radar_type.update_frequency)
        else:
            logger.warning(f"{key}: {result.failed} tiles failed, keeping it due")

        self.db.prune_data_layers(radar.id, radar_type.type_id, max(radar.retention, radar.loop_length))

        if result.new and radar.render_on_update:
            self.render(radar, radar_type)

        if not result.ok:
            first = result.failures[0]
            raise NetworkError(
                f"{result.failed} of {result.listed} tiles failed, first: {first.error}",
                resource=key,
            )
        return result

    def render(self, radar: RadarConfig, radar_type: RadarType) -> RenderResult:
        return self.compositor.render_loop(
            radar.id,
            radar_type,
            radar.loop_length,
            features=radar.features,
            frame_delay_ms=radar.frame_delay_ms,
            remove_header=radar.remove_header,
            write_frames=radar.write_frames,
        )

    def radar_config(self, radar_id: int) -> RadarConfig:
        for radar in self.config.radars:
            if radar.id == radar_id:
                return radar
        raise ValueError(f"Radar {radar_id} is not configured")

    async def render_radar(self, radar_id: int, radar_type: RadarType, check: bool = False) -> RenderResult:
        radar = self.radar_config(radar_id)
        if check:
            await self.scheduler.refresh_if_due(self.radar_resource(radar, radar_type))
        return self.render(radar, radar_type)

    # Setup

    async def load_stations(self, text: str | None = None) -> int:
        """Insert the reference station list. Returns the number of new stations."""
        if text is None:
            async with self.client as client:
                text = await client.get_station_list()

        rows = station_rows(text)

        def work(session) -> int:
            # Counted per attempt, atomic() may run this again after lock contention
            return sum(self.db.upsert_reference(row, session=session) for row in rows)

        inserted = self.db.atomic(work, resource="station")
        logger.info(f"Loaded {len(rows)} stations, {inserted} new")
        return inserted

    async def create_location(
        self, geohash: str, location_id: str, name: str, postcode: str, state: str,
        weather: Dict[str, Any] | None = None,
    ) -> models.Location:
        """
        Create a location from its search result fields. The observation
        station is linked only if it is already cached.
        """
        async with self.client as client:
            data = await client.get_location(geohash)
            observation = await client.get_observation(geohash)

        station_id = None
        if observation is not None:
            bom_id = ((observation.payload or {}).get("station") or {}).get("bom_id")
            try:
                candidate = int(bom_id) if bom_id is not None else None
            except ValueError as e:
                raise DecodeError(f"Invalid station id {bom_id}", resource=geohash) from e
            if candidate is not None and self.db.get_station(candidate) is not None:
                station_id = candidate
            elif candidate is not None:
                logger.warning(f"Station {candidate} is not cached. {location_id} will not be linked to it")

        try:
            location = models.Location(
                id=location_id,
                geohash=geohash,
                station_id=station_id,
                has_wave=bool(data.get("has_wave", False)),
                latitude=float(data["latitude"]),
                longitude=float(data["longitude"]),
                marine_area_id=data.get("marine_area_id"),
                name=name,
                state=state,
                postcode=postcode,
                tidal_point=data.get("tidal_point"),
                timezone=data["timezone"],
                weather=weather,
            )
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise DecodeError(f"Incomplete location record: {e!r}", resource=geohash) from e
        self.db.insert_location(location)
        logger.info(f"Created location {location_id}")
        return location
