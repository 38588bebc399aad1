import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Iterable
import logging

from .database import models
from .database.db import CacheDB
from .errors import BomCacheError, ContentionError, DecodeError, NetworkError
from .radar import (
    RadarFeature, RadarLegendType, RadarType, feature_filename, parse_data_filename, radar_prefix
)
from .remote.archive import BaseArchive

logger = logging.getLogger(__name__)

PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"


@dataclass
class FetchFailure:
    filename: str
    error: BomCacheError


@dataclass
class BatchResult:
    listed: int = 0
    new: int = 0
    failed: int = 0
    failures: list[FetchFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.failed == 0

    def record_failure(self, filename: str, error: BomCacheError):
        self.failed += 1
        self.failures.append(FetchFailure(filename=filename, error=error))


class RadarLayerFetcher:
    """
    Downloads radar tiles and overlays that are not cached yet.

    Every candidate is fetched and stored on its own: one failed download is
    recorded in the BatchResult and does not stop the rest of the batch.
    """

    def __init__(self, db: CacheDB, archive: BaseArchive, retry_limit: int = 3, retry_delay: float = 5):
        if retry_limit < 1:
            raise ValueError(f"retry_limit should be greater than 0. Got {retry_limit}")
        self.db = db
        self.archive = archive
        self.retry_limit = retry_limit
        self.retry_delay = retry_delay

    async def _download(self, filename: str, get: Callable[[str], Awaitable[bytes]]) -> bytes:
        for attempt in range(1, self.retry_limit + 1):
            try:
                png_buf = await get(filename)
                break
            except NetworkError as e:
                if attempt == self.retry_limit:
                    raise
                logger.debug(f"Failed to download {filename} ({e}). Retry {attempt}/{self.retry_limit}")
                await asyncio.sleep(self.retry_delay)

        if not png_buf.startswith(PNG_SIGNATURE):
            raise DecodeError("Downloaded file is not a PNG image", resource=filename)
        return png_buf

    async def _fetch_batch(
        self,
        candidates: Iterable[str],
        known: set[str],
        get: Callable[[str], Awaitable[bytes]],
        store: Callable[[str, bytes], bool],
    ) -> BatchResult:
        result = BatchResult()
        for filename in candidates:
            result.listed += 1
            if filename in known:
                continue
            try:
                png_buf = await self._download(filename, get)
                if store(filename, png_buf):
                    result.new += 1
            except (NetworkError, DecodeError, ContentionError) as e:
                logger.warning(f"Skipping {filename}: {e}")
                result.record_failure(filename, e)
        return result

    async def fetch_data_layers(
        self, radar_id: int, radar_type: RadarType, max_new: int | None = None
    ) -> BatchResult:
        """
        List the archive and store every data tile for this radar that is not
        cached yet. With ``max_new`` only the newest ``max_new`` listed tiles are
        considered; older ones are never downloaded.
        """
        prefix = radar_prefix(radar_id, radar_type)
        known = self.db.known_tile_filenames(radar_id, radar_type.type_id)

        listing = await self.archive.list_data_layers()
        candidates = sorted(name for name in listing if name.startswith(prefix))
        if not candidates:
            logger.warning(
                f"No images for {prefix} found in archive. "
                "Some radars have limited data available. Consider adjusting your config"
            )

        if max_new is not None:
            # Only the newest tiles in the listing can end up in a loop
            window = candidates[-max_new:] if max_new > 0 else []
            skipped = set(candidates) - set(window) - known
            if skipped:
                logger.debug(f"{prefix}: ignoring {len(skipped)} older tiles outside the newest {max_new}")
            known = known | skipped

        def store(filename: str, png_buf: bytes) -> bool:
            tile = parse_data_filename(filename)
            if tile.radar_id != radar_id or tile.radar_type is not radar_type:
                raise DecodeError(f"Tile does not belong to {prefix}", resource=filename)
            return self.db.insert_radar_tile(
                models.RadarDataLayer(
                    image=png_buf,
                    radar_id=tile.radar_id,
                    radar_type_id=tile.radar_type.type_id,
                    timestamp=tile.timestamp,
                    filename=filename,
                )
            )

        def get_tile(filename: str) -> Awaitable[bytes]:
            # A name that does not parse is never downloaded
            parse_data_filename(filename)
            return self.archive.get_data_layer(filename)

        result = await self._fetch_batch(candidates, known, get_tile, store)
        logger.info(f"{prefix}: listed {result.listed}, new {result.new}, failed {result.failed}")
        return result

    async def fetch_feature_layers(
        self, radar_id: int, radar_type: RadarType, features: Iterable[RadarFeature]
    ) -> BatchResult:
        """Download the static overlays for a radar that are missing from the cache."""
        prefix = radar_prefix(radar_id, radar_type)
        known = self.db.known_feature_filenames(radar_id, radar_type.type_id)
        wanted = {feature_filename(radar_id, radar_type, feature): feature for feature in features}

        def store(filename: str, png_buf: bytes) -> bool:
            return self.db.insert_feature_layer(
                models.RadarFeatureLayer(
                    image=png_buf,
                    radar_id=radar_id,
                    feature=wanted[filename].value,
                    radar_type_id=radar_type.type_id,
                    filename=filename,
                )
            )

        result = await self._fetch_batch(wanted, known, self.archive.get_transparency, store)
        logger.info(f"{prefix} features: requested {result.listed}, new {result.new}, failed {result.failed}")
        return result

    async def fetch_legends(self, legend_types: Iterable[RadarLegendType] = tuple(RadarLegendType)) -> BatchResult:
        legend_types = list(legend_types)
        by_filename = {t.filename: t for t in legend_types}
        known = {t.filename for t in legend_types if self.db.get_legend(t.value) is not None}

        def store(filename: str, png_buf: bytes) -> bool:
            legend = models.RadarLegend(id=by_filename[filename].value, image=png_buf)
            return self.db.upsert_reference(legend)

        return await self._fetch_batch(by_filename, known, self.archive.get_transparency, store)
