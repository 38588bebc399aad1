from pydantic import BaseModel, Field, field_validator
import pandas as pd

from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

from .database.models import ResourceKind
from .radar import DEFAULT_FEATURES, RadarFeature, RadarType


def _to_timedelta(v):
    """Accept pandas style strings ('10min', '3h'), seconds or timedeltas."""
    if isinstance(v, timedelta):
        return v
    if isinstance(v, (int, float)):
        return timedelta(seconds=v)
    try:
        return pd.Timedelta(v).to_pytimedelta()
    except ValueError as e:
        raise ValueError(f"Invalid interval {v!r}: {e}")


class IntervalConfig(BaseModel):
    observation: timedelta = Field(timedelta(minutes=10), description="Polling interval of current conditions")
    daily: timedelta = Field(timedelta(hours=1), description="Polling interval of the daily forecast")
    hourly: timedelta = Field(timedelta(hours=3), description="Polling interval of the hourly forecast")
    warnings: timedelta = Field(timedelta(minutes=30), description="Polling interval of weather warnings")

    @field_validator('observation', 'daily', 'hourly', 'warnings', mode='before')
    @classmethod
    def parse_interval(cls, v):
        return _to_timedelta(v)

    def for_kind(self, kind: ResourceKind) -> timedelta:
        return getattr(self, kind.value)


class RadarConfig(BaseModel):
    id: int = Field(..., description="BOM radar id, e.g. 2 for Melbourne. Site details come from the radar catalog")
    name: Optional[str] = Field(None, description="Label for log messages")

    radar_types: List[RadarType] = Field(default_factory=lambda: [RadarType.KM128])
    features: List[RadarFeature] = Field(default_factory=lambda: list(DEFAULT_FEATURES))
    loop_length: int = Field(24, ge=1, description="Maximum number of frames in a loop")
    frame_delay_ms: int = Field(200, ge=1)
    retention: int = Field(48, ge=1, description="Number of data tiles kept per radar type")
    remove_header: bool = False
    write_frames: bool = False
    render_on_update: bool = True


class CacheConfig(BaseModel):
    """
    Configuration of the whole cache, constructed once at startup and handed to
    every component.
    """
    database_path: str = Field('sqlite:///bomcache.db', description="SQLAlchemy database url")
    busy_timeout: float = Field(5.0, description="Seconds a connection waits for a lock")
    location: Optional[str] = Field(None, description="Id of the active location")
    intervals: IntervalConfig = Field(default_factory=IntervalConfig)
    radars: List[RadarConfig] = Field(default_factory=list)
    image_dir: Path = Path("radar-images")
    max_poll: timedelta = timedelta(seconds=150)
    fetch_timeout: float = 60
    retry_limit: int = Field(5, ge=1)
    retry_delay: float = 7
    past_observations: int = Field(6 * 24 * 2, ge=1, description="Snapshots kept per location and kind")
    archive: Dict[str, Any] = Field(default_factory=dict)
    logging: Optional[Dict[str, Any]] = None

    @field_validator('max_poll', mode='before')
    @classmethod
    def parse_max_poll(cls, v):
        return _to_timedelta(v)

    @classmethod
    def from_dict(cls, config: dict) -> "CacheConfig":
        config = dict(config)
        database = config.pop('database', {}) or {}
        if 'path' in database:
            config.setdefault('database_path', database['path'])
        if 'busy_timeout' in database:
            config.setdefault('busy_timeout', database['busy_timeout'])
        if 'max_poll_seconds' in config:
            config.setdefault('max_poll', config.pop('max_poll_seconds'))
        return cls(**config)
