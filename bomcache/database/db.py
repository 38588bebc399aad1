from sqlalchemy import create_engine, event, func, select, delete
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import sessionmaker, Session
from contextlib import contextmanager

import logging
import time
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, TypeVar

from . import models
from ..errors import ContentionError, IntegrityViolation
from ..utils import as_utc, to_db_time, utc_now

logger = logging.getLogger(__name__)

T = TypeVar("T")

_REFERENCE_MODELS = (models.Station, models.Radar, models.RadarLegend, models.Location)


def _kind(kind: Enum | str) -> str:
    return kind.value if isinstance(kind, Enum) else str(kind)


def _column_values(row) -> dict[str, Any]:
    return {c.key: getattr(row, c.key) for c in row.__table__.columns}


def _is_lock_error(error: OperationalError) -> bool:
    message = str(error.orig).lower()
    return "locked" in message or "busy" in message


class CacheDB:
    """
    Local SQLite cache shared by the monitor and on-demand readers.

    The database file is the only synchronisation point between processes.
    Every write runs in its own transaction (or in one handed in through the
    ``session`` argument) and is retried with a short backoff while another
    process holds the write lock. Readers never take the write lock; in WAL mode
    they see the last committed snapshot.
    """

    def __init__(
        self,
        engine: str = 'sqlite:///bomcache.db',
        busy_timeout: float = 5.0,
        retry_limit: int = 5,
        retry_delay: float = 0.1,
    ):
        connect_args = {"timeout": busy_timeout} if engine.startswith("sqlite") else {}
        self.engine = create_engine(engine, connect_args=connect_args)
        self.retry_limit = retry_limit
        self.retry_delay = retry_delay

        if self.engine.dialect.name == "sqlite":
            event.listen(self.engine, "connect", self._set_sqlite_pragmas)

        models.Base.metadata.create_all(self.engine)
        self.Session = sessionmaker(
            bind=self.engine,
            autocommit=False,
            autoflush=False,
            expire_on_commit=False,
        )

    @staticmethod
    def _set_sqlite_pragmas(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()

    @contextmanager
    def session_scope(self):
        session = self.Session()
        try:
            yield session
        finally:
            session.close()

    def atomic(self, work: Callable[[Session], T], resource: str | None = None) -> T:
        """
        Run ``work(session)`` in a single transaction and commit it.

        Lock contention is retried with exponential backoff up to
        ``retry_limit`` attempts, after which ContentionError is raised.
        Constraint violations are surfaced as IntegrityViolation.
        """
        delay = self.retry_delay
        for attempt in range(1, self.retry_limit + 1):
            session = self.Session()
            try:
                result = work(session)
                session.commit()
                return result
            except OperationalError as e:
                session.rollback()
                if not _is_lock_error(e):
                    raise
                if attempt == self.retry_limit:
                    raise ContentionError(
                        f"Database still locked after {attempt} attempts", resource=resource
                    ) from e
                logger.warning(f"Database locked while writing {resource}. Retry {attempt}/{self.retry_limit} in {delay:.2f}s")
                time.sleep(delay)
                delay *= 2
            except IntegrityError as e:
                session.rollback()
                raise IntegrityViolation(str(e.orig), resource=resource) from e
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()

    def _write(self, work: Callable[[Session], T], session: Session | None, resource: str | None) -> T:
        if session is not None:
            return work(session)
        return self.atomic(work, resource=resource)

    # Reference data

    def upsert_reference(self, row, session: Session | None = None) -> bool:
        """
        Insert an immutable reference row unless it already exists.

        Returns True if the row was inserted. An existing row with the same key
        but different values is a data integrity error, never overwritten.
        """
        model = type(row)
        if model not in _REFERENCE_MODELS:
            raise TypeError(f"{model.__name__} is not a reference table")

        values = _column_values(row)
        resource = f"{model.__tablename__}:{values['id']}"

        def work(s: Session) -> bool:
            result = s.execute(
                sqlite_insert(model).values(**values).on_conflict_do_nothing(index_elements=["id"])
            )
            if result.rowcount:
                logger.debug(f"Inserted {resource}")
                return True

            existing = s.execute(select(model).where(model.id == values["id"])).scalar_one()
            conflicts = [col for col, value in values.items() if getattr(existing, col) != value]
            if conflicts:
                raise IntegrityViolation(
                    f"Conflicting values for existing row in columns {conflicts}", resource=resource
                )
            return False

        return self._write(work, session, resource)

    def insert_location(self, location: models.Location, session: Session | None = None) -> bool:
        return self.upsert_reference(location, session=session)

    def get_station(self, station_id: int) -> models.Station | None:
        with self.session_scope() as session:
            return session.get(models.Station, station_id)

    def get_location(self, location_id: str) -> models.Location | None:
        with self.session_scope() as session:
            return session.get(models.Location, location_id)

    def get_radar(self, radar_id: int) -> models.Radar | None:
        with self.session_scope() as session:
            return session.get(models.Radar, radar_id)

    def all_radars(self) -> list[models.Radar]:
        with self.session_scope() as session:
            return list(session.execute(select(models.Radar).order_by(models.Radar.id)).scalars().all())

    def get_legend(self, legend_id: int) -> models.RadarLegend | None:
        with self.session_scope() as session:
            return session.get(models.RadarLegend, legend_id)

    # Weather snapshots

    def record_observation(
        self,
        location_id: str,
        kind: Enum | str,
        payload: Any,
        timestamp: datetime,
        issue_time: datetime | None = None,
        session: Session | None = None,
    ) -> None:
        row = models.Observation(
            location_id=location_id,
            kind=_kind(kind),
            payload=payload,
            fetched_at=to_db_time(timestamp),
            issue_time=to_db_time(issue_time) if issue_time is not None else None,
        )

        def work(s: Session):
            s.add(row)
            s.flush()

        self._write(work, session, f"{location_id}:{_kind(kind)}")

    def latest_observation(self, location_id: str, kind: Enum | str) -> models.Observation | None:
        with self.session_scope() as session:
            query = (
                select(models.Observation)
                .where(models.Observation.location_id == location_id, models.Observation.kind == _kind(kind))
                .order_by(models.Observation.fetched_at.desc(), models.Observation.id.desc())
                .limit(1)
            )
            return session.execute(query).scalar_one_or_none()

    def prune_observations(self, location_id: str, kind: Enum | str, keep: int, session: Session | None = None) -> int:
        def work(s: Session) -> int:
            stale = (
                select(models.Observation.id)
                .where(models.Observation.location_id == location_id, models.Observation.kind == _kind(kind))
                .order_by(models.Observation.fetched_at.desc(), models.Observation.id.desc())
                .offset(keep)
            )
            result = s.execute(delete(models.Observation).where(models.Observation.id.in_(stale)))
            return result.rowcount

        return self._write(work, session, f"{location_id}:{_kind(kind)}")

    # Radar layers

    def insert_radar_tile(self, layer: models.RadarDataLayer, session: Session | None = None) -> bool:
        """Insert a data tile unless its filename is already cached. Returns True if inserted."""
        values = _column_values(layer)
        values.pop("id", None)
        values["timestamp"] = to_db_time(values["timestamp"])

        def work(s: Session) -> bool:
            result = s.execute(
                sqlite_insert(models.RadarDataLayer).values(**values).on_conflict_do_nothing(index_elements=["filename"])
            )
            return result.rowcount == 1

        inserted = self._write(work, session, layer.filename)
        if not inserted:
            logger.debug(f"{layer.filename} already cached")
        return inserted

    def insert_feature_layer(self, layer: models.RadarFeatureLayer, session: Session | None = None) -> bool:
        values = _column_values(layer)
        values.pop("id", None)

        def work(s: Session) -> bool:
            result = s.execute(
                sqlite_insert(models.RadarFeatureLayer).values(**values).on_conflict_do_nothing(index_elements=["filename"])
            )
            return result.rowcount == 1

        return self._write(work, session, layer.filename)

    def latest_tiles(self, radar_id: int, radar_type_id: str, limit: int) -> list[models.RadarDataLayer]:
        """Return up to ``limit`` data tiles, newest first."""
        with self.session_scope() as session:
            query = (
                select(models.RadarDataLayer)
                .where(
                    models.RadarDataLayer.radar_id == radar_id,
                    models.RadarDataLayer.radar_type_id == radar_type_id,
                )
                .order_by(models.RadarDataLayer.timestamp.desc())
                .limit(limit)
            )
            return list(session.execute(query).scalars().all())

    def latest_tile_time(self, radar_id: int, radar_type_id: str) -> datetime | None:
        with self.session_scope() as session:
            query = select(func.max(models.RadarDataLayer.timestamp)).where(
                models.RadarDataLayer.radar_id == radar_id,
                models.RadarDataLayer.radar_type_id == radar_type_id,
            )
            return as_utc(session.execute(query).scalar())

    def known_tile_filenames(self, radar_id: int, radar_type_id: str) -> set[str]:
        with self.session_scope() as session:
            query = select(models.RadarDataLayer.filename).where(
                models.RadarDataLayer.radar_id == radar_id,
                models.RadarDataLayer.radar_type_id == radar_type_id,
            )
            return set(session.execute(query).scalars().all())

    def feature_layers(self, radar_id: int, radar_type_id: str) -> list[models.RadarFeatureLayer]:
        with self.session_scope() as session:
            query = select(models.RadarFeatureLayer).where(
                models.RadarFeatureLayer.radar_id == radar_id,
                models.RadarFeatureLayer.radar_type_id == radar_type_id,
            )
            return list(session.execute(query).scalars().all())

    def known_feature_filenames(self, radar_id: int, radar_type_id: str) -> set[str]:
        return {layer.filename for layer in self.feature_layers(radar_id, radar_type_id)}

    def invalidate_feature_layers(self, radar_id: int, radar_type_id: str, key: str) -> int:
        """Drop the cached overlays of a radar so the next refresh downloads them again."""
        def work(s: Session) -> int:
            result = s.execute(
                delete(models.RadarFeatureLayer).where(
                    models.RadarFeatureLayer.radar_id == radar_id,
                    models.RadarFeatureLayer.radar_type_id == radar_type_id,
                )
            )
            s.execute(
                delete(models.FreshnessMarker).where(
                    models.FreshnessMarker.kind == models.ResourceKind.RADAR_FEATURE.value,
                    models.FreshnessMarker.key == key,
                )
            )
            return result.rowcount

        removed = self.atomic(work, resource=key)
        logger.info(f"Invalidated {removed} feature layers for {key}")
        return removed

    def prune_data_layers(self, radar_id: int, radar_type_id: str, keep: int, session: Session | None = None) -> int:
        """Delete the oldest data tiles beyond the newest ``keep``."""
        def work(s: Session) -> int:
            stale = (
                select(models.RadarDataLayer.id)
                .where(
                    models.RadarDataLayer.radar_id == radar_id,
                    models.RadarDataLayer.radar_type_id == radar_type_id,
                )
                .order_by(models.RadarDataLayer.timestamp.desc())
                .offset(keep)
            )
            result = s.execute(delete(models.RadarDataLayer).where(models.RadarDataLayer.id.in_(stale)))
            return result.rowcount

        removed = self._write(work, session, f"IDR{radar_id:02d}{radar_type_id}")
        if removed:
            logger.debug(f"Pruned {removed} old tiles for IDR{radar_id:02d}{radar_type_id}")
        return removed

    # Freshness

    def get_marker(self, kind: Enum | str, key: str) -> models.FreshnessMarker | None:
        with self.session_scope() as session:
            return session.get(models.FreshnessMarker, (_kind(kind), key))

    def is_due(self, kind: Enum | str, key: str, interval: timedelta, now: datetime | None = None) -> bool:
        marker = self.get_marker(kind, key)
        if marker is None:
            return True
        now = now or utc_now()
        return now - as_utc(marker.last_check) >= interval

    def next_due(self, kind: Enum | str, key: str, interval: timedelta, now: datetime | None = None) -> datetime:
        now = now or utc_now()
        marker = self.get_marker(kind, key)
        if marker is None:
            return now
        return as_utc(marker.last_check) + interval

    def mark_checked(
        self,
        kind: Enum | str,
        key: str,
        timestamp: datetime,
        interval: timedelta | None = None,
        session: Session | None = None,
    ) -> None:
        """
        Record a successful check. The stored time only ever moves forward, so
        when two processes race the later completion wins.
        """
        interval_seconds = interval.total_seconds() if interval is not None else 0.0
        stmt = sqlite_insert(models.FreshnessMarker).values(
            kind=_kind(kind),
            key=key,
            last_check=to_db_time(timestamp),
            interval_seconds=interval_seconds,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["kind", "key"],
            set_={
                "last_check": stmt.excluded.last_check,
                "interval_seconds": stmt.excluded.interval_seconds,
            },
            where=models.FreshnessMarker.last_check < stmt.excluded.last_check,
        )

        def work(s: Session):
            s.execute(stmt)

        self._write(work, session, f"{_kind(kind)}:{key}")

    def close(self):
        """
        Dispose of the engine connection pool.
        """
        try:
            if self.engine:
                self.engine.dispose()
                logger.debug("Database engine disposed.")
        except Exception as e:
            logger.warning(f"Error disposing database engine: {e}")
