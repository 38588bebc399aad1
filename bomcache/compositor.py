import io
import os
import tempfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Iterable
import logging

from PIL import Image, PngImagePlugin

from .database.db import CacheDB
from .errors import CompositionError, DecodeError, NoCachedDataError
from .radar import DEFAULT_FEATURES, RadarFeature, RadarType, radar_prefix
from .utils import as_utc

logger = logging.getLogger(__name__)

HEADER_ROWS = 16
_FEATURE_ORDER = {feature: i for i, feature in enumerate(RadarFeature)}


@dataclass
class RenderResult:
    path: Path
    frames: int
    timestamps: list[datetime]


@dataclass
class _Layer:
    name: str
    image: Image.Image


def decode_png(png_buf: bytes, resource: str) -> Image.Image:
    try:
        image = Image.open(io.BytesIO(png_buf))
        image.load()
    except (OSError, ValueError) as e:
        raise DecodeError(f"Unable to decode image: {e}", resource=resource) from e
    return image.convert("RGBA")


class RadarLoopCompositor:
    """
    Builds an animated radar loop from cached tiles.

    Layers are stacked in a fixed order on an opaque canvas: the base feature
    overlays, the range rings, the data tile and finally the legend. The loop
    is written as an APNG to a fixed path per radar so an external player can
    keep reopening the same file.
    """

    def __init__(self, db: CacheDB, image_dir: str | Path):
        self.db = db
        self.image_dir = Path(image_dir)

    def loop_path(self, radar_id: int, radar_type: RadarType) -> Path:
        return self.image_dir / f"{radar_prefix(radar_id, radar_type)}.loop.png"

    def _load_overlays(
        self, radar_id: int, radar_type: RadarType, features: Iterable[RadarFeature]
    ) -> tuple[list[_Layer], list[_Layer], _Layer | None]:
        prefix = radar_prefix(radar_id, radar_type)
        cached = {layer.feature: layer for layer in self.db.feature_layers(radar_id, radar_type.type_id)}

        base, rings = [], []
        for feature in sorted(set(features), key=_FEATURE_ORDER.get):
            layer = cached.get(feature.value)
            if layer is None:
                if cached:
                    logger.warning(f"{prefix} is missing the {feature.value} feature")
                continue
            decoded = _Layer(layer.filename, decode_png(layer.image, layer.filename))
            if feature is RadarFeature.RANGE:
                rings.append(decoded)
            else:
                base.append(decoded)

        if not cached:
            logger.debug(f"No feature layers cached for {prefix}. Compositing data tiles alone")

        legend_row = self.db.get_legend(radar_type.legend_type.value)
        legend = None
        if legend_row is None:
            logger.warning(f"No {radar_type.legend_type.name.lower()} legend cached")
        else:
            legend = _Layer(radar_type.legend_type.filename, decode_png(legend_row.image, radar_type.legend_type.filename))

        return base, rings, legend

    @staticmethod
    def _size_error(layer: _Layer, size: tuple[int, int], tile_name: str) -> CompositionError:
        width, height = layer.image.size
        return CompositionError(
            f"Layer is {width}x{height} but data tile {tile_name} is {size[0]}x{size[1]}",
            resource=layer.name,
        )

    def composite_frame(
        self,
        data: _Layer,
        base: list[_Layer],
        rings: list[_Layer],
        legend: _Layer | None,
    ) -> Image.Image:
        """
        Stack the layers on an opaque black canvas. Overlays must match the
        data tile exactly. The legend may be taller than the tile (the colour
        scale sits below the map) and then sets the canvas height.
        """
        size = data.image.size
        canvas_size = size
        if legend is not None:
            width, height = legend.image.size
            if width != size[0] or height < size[1]:
                raise self._size_error(legend, size, data.name)
            canvas_size = legend.image.size

        frame = Image.new("RGBA", canvas_size, (0, 0, 0, 255))
        for layer in [*base, *rings, data]:
            if layer.image.size != size:
                raise self._size_error(layer, size, data.name)
            frame.alpha_composite(layer.image)
        if legend is not None:
            frame.alpha_composite(legend.image)
        return frame

    def render_frames(
        self,
        radar_id: int,
        radar_type: RadarType,
        loop_length: int,
        features: Iterable[RadarFeature] = DEFAULT_FEATURES,
        remove_header: bool = False,
    ) -> list[tuple[str, datetime, Image.Image]]:
        """
        Composite the ``loop_length`` most recent tiles, oldest first.

        Raises NoCachedDataError if there is not a single tile to draw.
        """
        prefix = radar_prefix(radar_id, radar_type)
        if loop_length < 1:
            raise ValueError(f"loop_length should be greater than 0. Got {loop_length}")

        tiles = self.db.latest_tiles(radar_id, radar_type.type_id, loop_length)
        if not tiles:
            raise NoCachedDataError("No cached radar data", resource=prefix)
        tiles.sort(key=lambda t: t.timestamp)

        base, rings, legend = self._load_overlays(radar_id, radar_type, features)

        frames = []
        for tile in tiles:
            logger.debug(f"Constructing frame for {tile.filename}")
            data = decode_png(tile.image, tile.filename)
            if remove_header:
                data.paste((0, 0, 0, 0), (0, 0, data.width, min(HEADER_ROWS, data.height)))
            frame = self.composite_frame(_Layer(tile.filename, data), base, rings, legend)
            frames.append((tile.filename, as_utc(tile.timestamp), frame))
        return frames

    @staticmethod
    def encode_loop(frames: list[Image.Image], frame_delay_ms: int) -> bytes:
        """
        Encode the frames as an APNG with one entry per frame.

        Pillow merges consecutive identical frames unless their blend ops differ.
        Frames are opaque, so alternating SOURCE and OVER draws the same pixels.
        """
        blend = [
            PngImagePlugin.Blend.OP_SOURCE if i % 2 == 0 else PngImagePlugin.Blend.OP_OVER
            for i in range(len(frames))
        ]
        buffer = io.BytesIO()
        frames[0].save(
            buffer,
            format="PNG",
            save_all=True,
            append_images=frames[1:],
            duration=frame_delay_ms,
            blend=blend,
            loop=0,
        )
        return buffer.getvalue()

    @staticmethod
    def _write_atomic(path: Path, content: bytes):
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(content)
            os.replace(tmp_name, path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
        logger.debug(f"Wrote {path}")

    def _write_frames(self, radar_id: int, radar_type: RadarType, frames: list[tuple[str, datetime, Image.Image]]):
        frame_dir = self.image_dir / radar_prefix(radar_id, radar_type)
        frame_dir.mkdir(parents=True, exist_ok=True)

        current = {name for name, _, _ in frames}
        for old in frame_dir.glob("*.png"):
            if old.name not in current:
                logger.debug(f"Deleting old radar image {old}")
                old.unlink()

        for name, _, image in frames:
            buffer = io.BytesIO()
            image.save(buffer, format="PNG")
            self._write_atomic(frame_dir / name, buffer.getvalue())

    def render_loop(
        self,
        radar_id: int,
        radar_type: RadarType,
        loop_length: int,
        features: Iterable[RadarFeature] = DEFAULT_FEATURES,
        frame_delay_ms: int = 200,
        remove_header: bool = False,
        write_frames: bool = False,
    ) -> RenderResult:
        frames = self.render_frames(radar_id, radar_type, loop_length, features, remove_header)

        path = self.loop_path(radar_id, radar_type)
        self._write_atomic(path, self.encode_loop([image for _, _, image in frames], frame_delay_ms))
        if write_frames:
            self._write_frames(radar_id, radar_type, frames)

        timestamps = [timestamp for _, timestamp, _ in frames]
        logger.info(f"Rendered {len(frames)} frames ({timestamps[0]:%H:%M} - {timestamps[-1]:%H:%M} UTC) to {path}")
        return RenderResult(path=path, frames=len(frames), timestamps=timestamps)
