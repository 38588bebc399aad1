import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Awaitable, Callable, Iterable
import logging

from .database.db import CacheDB
from .database.models import ResourceKind
from .errors import BomCacheError, IntegrityViolation
from .utils import format_duration, utc_now

logger = logging.getLogger(__name__)

MIN_SLEEP = timedelta(seconds=1)


class SchedulerState(str, Enum):
    IDLE = "idle"
    CHECKING = "checking"
    SLEEPING = "sleeping"
    STOPPED = "stopped"


@dataclass
class TrackedResource:
    """
    A resource kind for one key (location or radar), with its polling interval.

    ``refresh`` fetches the resource and stores it together with its freshness
    marker in one transaction. It must not advance the marker on failure.

    ``not_before`` optionally returns the earliest time new data can exist
    upstream. The resource is not due before then even if its interval passed.
    """
    kind: ResourceKind
    key: str
    interval: timedelta
    refresh: Callable[[], Awaitable[object]]
    not_before: Callable[[], datetime | None] | None = None

    @property
    def label(self) -> str:
        return f"{self.kind.value}:{self.key}"


class MonitorScheduler:
    """
    Periodically refreshes every tracked resource that is due.

    The loop is sequential: resources are checked one after another, failures
    are logged and leave the resource due for the next cycle. Between cycles it
    sleeps until the earliest next due time, capped at ``max_poll``. ``stop()``
    wakes it immediately; a fetch already in progress is allowed to finish
    within ``fetch_timeout``.
    """

    def __init__(
        self,
        db: CacheDB,
        resources: Iterable[TrackedResource] = (),
        max_poll: timedelta = timedelta(seconds=150),
        fetch_timeout: float = 60,
    ):
        self.db = db
        self.resources: list[TrackedResource] = list(resources)
        self.max_poll = max_poll
        self.fetch_timeout = fetch_timeout
        self.state = SchedulerState.IDLE
        self._stop_event = asyncio.Event()

    def add_resource(self, resource: TrackedResource):
        self.resources.append(resource)

    def _not_before(self, resource: TrackedResource) -> datetime | None:
        if resource.not_before is None:
            return None
        return resource.not_before()

    def is_due(self, resource: TrackedResource, now: datetime | None = None) -> bool:
        now = now or utc_now()
        available = self._not_before(resource)
        if available is not None and now < available:
            return False
        return self.db.is_due(resource.kind, resource.key, resource.interval, now=now)

    async def refresh_if_due(self, resource: TrackedResource, now: datetime | None = None) -> bool:
        """
        Refresh ``resource`` if it is due. Returns True if a refresh ran.

        This is the single due-check used by both the monitor loop and
        one-shot readers.
        """
        if not self.is_due(resource, now=now):
            logger.debug(f"{resource.label} is fresh")
            return False

        logger.debug(f"{resource.label} is due. Refreshing")
        await asyncio.wait_for(resource.refresh(), timeout=self.fetch_timeout)
        return True

    def next_due(self, resource: TrackedResource, now: datetime | None = None) -> datetime:
        now = now or utc_now()
        next_due = self.db.next_due(resource.kind, resource.key, resource.interval, now=now)
        available = self._not_before(resource)
        if available is not None:
            next_due = max(next_due, available)
        return next_due

    def next_wake(self, now: datetime | None = None) -> datetime:
        now = now or utc_now()
        if not self.resources:
            return now + self.max_poll
        next_due = min(self.next_due(r, now=now) for r in self.resources)
        return min(max(next_due, now + MIN_SLEEP), now + self.max_poll)

    async def run_once(self, now: datetime | None = None) -> datetime:
        """
        Refresh every due resource once. Stops early if ``stop()`` is called;
        the refresh in progress is allowed to finish.

        Data integrity errors are not retried and propagate to the caller.
        """
        self.state = SchedulerState.CHECKING
        try:
            for resource in self.resources:
                if self._stop_event.is_set():
                    logger.info("Stop requested, skipping remaining resources")
                    break
                try:
                    await self.refresh_if_due(resource, now=now)
                except IntegrityViolation:
                    logger.critical(f"Data integrity error while refreshing {resource.label}")
                    raise
                except BomCacheError as e:
                    logger.error(f"Refreshing {resource.label} failed, will retry next cycle: {e}")
                except asyncio.TimeoutError:
                    logger.error(f"Refreshing {resource.label} timed out after {self.fetch_timeout}s, will retry next cycle")
        finally:
            self.state = SchedulerState.IDLE
        return self.next_wake()

    async def run(self):
        self._stop_event.clear()
        logger.info(f"Monitoring {len(self.resources)} resources")
        try:
            while not self._stop_event.is_set():
                next_check = await self.run_once()
                if self._stop_event.is_set():
                    break

                sleep_duration = max(next_check - utc_now(), MIN_SLEEP)
                logger.debug(f"Next check in {format_duration(sleep_duration)}")
                self.state = SchedulerState.SLEEPING
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=sleep_duration.total_seconds())
                except asyncio.TimeoutError:
                    pass
                self.state = SchedulerState.IDLE
        finally:
            self.state = SchedulerState.STOPPED
            logger.info("Monitor stopped")

    def stop(self):
        logger.info("Stop requested")
        self._stop_event.set()
