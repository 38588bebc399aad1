import io
import struct
from datetime import datetime

import pytest
import pytz
from PIL import Image

from bomcache.database import models
from bomcache.database.db import CacheDB
from bomcache.errors import NetworkError
from bomcache.radar import RadarType, data_filename
from bomcache.remote.archive import BaseArchive

tz = pytz.timezone("utc")

TILE_SIZE = (16, 16)

CATALOG_FIELDS = [
    ("NAME", "C", 20, 0),
    ("LONGITUDE", "N", 10, 4),
    ("LATITUDE", "N", 10, 4),
    ("ID", "N", 4, 0),
    ("FULL_NAME", "C", 40, 0),
    ("STATE", "C", 4, 0),
    ("TYPE", "C", 20, 0),
    ("GROUP", "C", 4, 0),
    ("STATUS", "C", 10, 0),
]

MELBOURNE_RADAR = {
    "name": "Melbourne", "longitude": 144.7554, "latitude": -37.8553, "id": 2,
    "full_name": "Melbourne (Laverton)", "state": "VIC", "type": "Doppler", "group": "No", "status": "Public",
}


def dt(year: int, month: int, day: int, hour: int = 0, minute: int = 0):
    """Shortcut for building UTC-aware datetimes."""
    return tz.localize(datetime(year, month, day, hour, minute))


def make_png(color=(255, 0, 0, 255), size=TILE_SIZE) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGBA", size, color).save(buffer, format="PNG")
    return buffer.getvalue()


def make_dbf(records, fields=CATALOG_FIELDS) -> bytes:
    """Write a minimal dBase III table."""
    header_len = 32 + 32 * len(fields) + 1
    record_len = 1 + sum(length for _, _, length, _ in fields)
    buffer = io.BytesIO()
    buffer.write(struct.pack("<BBBBLHH20x", 3, 124, 1, 1, len(records), header_len, record_len))
    for name, field_type, length, decimals in fields:
        buffer.write(struct.pack("<11sc4xBB14x", name.encode("ascii"), field_type.encode("ascii"), length, decimals))
    buffer.write(b"\r")
    for record in records:
        buffer.write(b" ")
        for name, field_type, length, decimals in fields:
            value = record.get(name.lower())
            if value is None:
                text = ""
            elif field_type == "N":
                text = f"{value:.{decimals}f}".rjust(length)
            else:
                text = str(value)
            buffer.write(text.ljust(length)[:length].encode("ascii"))
    buffer.write(b"\x1a")
    return buffer.getvalue()


def tile_name(minute: int, radar_id: int = 2, radar_type: RadarType = RadarType.KM128) -> str:
    return data_filename(radar_id, radar_type, dt(2024, 1, 1, 0, minute))


class FakeArchive(BaseArchive):
    """In-memory archive. Files listed in ``broken`` fail on every download."""

    def __init__(self, data=None, transparencies=None, broken=(), catalog=None):
        self.data = dict(data or {})
        self.transparencies = dict(transparencies or {})
        self.catalog = catalog
        self.broken = set(broken)
        self.downloads: list[str] = []
        self.listings = 0

    async def list_files(self, path: str) -> list[str]:
        if path == self.data_dir:
            self.listings += 1
            return list(self.data)
        return list(self.transparencies)

    async def get_bytes(self, path: str) -> bytes:
        directory, filename = path.rsplit("/", 1)
        self.downloads.append(filename)
        if filename in self.broken:
            raise NetworkError("Connection reset", resource=path)
        if path == self.catalog_path:
            if self.catalog is None:
                raise NetworkError("550 File not found", resource=path)
            return self.catalog
        files = self.data if directory == self.data_dir else self.transparencies
        if filename not in files:
            raise NetworkError("550 File not found", resource=path)
        return files[filename]


@pytest.fixture
def db_url(tmp_path):
    return f"sqlite:///{tmp_path / 'cache.db'}"


@pytest.fixture
def db(db_url):
    cache = CacheDB(db_url, busy_timeout=1, retry_delay=0.01)
    yield cache
    cache.close()


@pytest.fixture
def radar(db):
    db.upsert_reference(models.Radar(id=2, name="Melbourne", state="VIC"))
    return db.get_radar(2)
