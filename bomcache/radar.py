import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

import pytz

from .errors import DecodeError

_DATA_FILENAME = re.compile(r"^IDR(\d{2,3})([1-4IABCD])\.T\.(\d{12})\.png$")
_FEATURE_FILENAME = re.compile(r"^IDR(\d{2,3})([1-4IABCD])\.(\w+)\.png$")
_TIMESTAMP_FORMAT = "%Y%m%d%H%M"


class RadarLegendType(int, Enum):
    RAINFALL = 0
    ACCUMULATED_RAINFALL = 1
    DOPPLER_WIND = 2

    @property
    def filename(self) -> str:
        return f"IDR.legend.{self.value}.png"


class RadarType(str, Enum):
    KM512 = "512km"
    KM256 = "256km"
    KM128 = "128km"
    KM64 = "64km"
    DOPPLER = "doppler"
    ACCUMULATED_5MIN = "5min"
    ACCUMULATED_1HOUR = "1hour"
    ACCUMULATED_SINCE9 = "since9"
    ACCUMULATED_24HOUR = "24hour"

    @property
    def type_id(self) -> str:
        return _TYPE_IDS[self]

    @classmethod
    def from_id(cls, type_id: str) -> "RadarType":
        for radar_type, tid in _TYPE_IDS.items():
            if tid == type_id:
                return radar_type
        raise DecodeError(f"{type_id} is not a valid radar type id", resource=type_id)

    @property
    def update_frequency(self) -> timedelta:
        if self is RadarType.ACCUMULATED_SINCE9:
            return timedelta(minutes=15)
        if self is RadarType.ACCUMULATED_24HOUR:
            return timedelta(days=1)
        return timedelta(minutes=5)

    @property
    def check_after(self) -> timedelta:
        # Lag between the capture time of a tile and its appearance in the archive
        if self is RadarType.ACCUMULATED_SINCE9:
            return timedelta(minutes=15)
        if self is RadarType.ACCUMULATED_24HOUR:
            return timedelta(minutes=10)
        return timedelta(minutes=2)

    @property
    def legend_type(self) -> RadarLegendType:
        if self in (RadarType.KM64, RadarType.KM128, RadarType.KM256, RadarType.KM512):
            return RadarLegendType.RAINFALL
        if self is RadarType.DOPPLER:
            return RadarLegendType.DOPPLER_WIND
        return RadarLegendType.ACCUMULATED_RAINFALL


_TYPE_IDS = {
    RadarType.KM512: "1",
    RadarType.KM256: "2",
    RadarType.KM128: "3",
    RadarType.KM64: "4",
    RadarType.DOPPLER: "I",
    RadarType.ACCUMULATED_5MIN: "A",
    RadarType.ACCUMULATED_1HOUR: "B",
    RadarType.ACCUMULATED_SINCE9: "C",
    RadarType.ACCUMULATED_24HOUR: "D",
}


class RadarFeature(str, Enum):
    # Declaration order is the stacking order of the overlays
    BACKGROUND = "background"
    TOPOGRAPHY = "topography"
    RANGE = "range"
    WATERWAYS = "waterways"
    ROADS = "roads"
    FORECAST_DISTRICTS = "wthrDistricts"
    RAIL = "rail"
    CATCHMENTS = "catchments"
    LOCATIONS = "locations"


DEFAULT_FEATURES = [
    RadarFeature.BACKGROUND,
    RadarFeature.TOPOGRAPHY,
    RadarFeature.RANGE,
    RadarFeature.LOCATIONS,
]


def radar_prefix(radar_id: int, radar_type: RadarType) -> str:
    return f"IDR{radar_id:02d}{radar_type.type_id}"


def data_filename(radar_id: int, radar_type: RadarType, timestamp: datetime) -> str:
    return f"{radar_prefix(radar_id, radar_type)}.T.{timestamp.strftime(_TIMESTAMP_FORMAT)}.png"


def feature_filename(radar_id: int, radar_type: RadarType, feature: RadarFeature) -> str:
    return f"{radar_prefix(radar_id, radar_type)}.{feature.value}.png"


@dataclass(frozen=True)
class DataTileName:
    radar_id: int
    radar_type: RadarType
    timestamp: datetime
    filename: str

    @property
    def next_timestamp(self) -> datetime:
        return self.timestamp + self.radar_type.update_frequency


@dataclass(frozen=True)
class FeatureLayerName:
    radar_id: int
    radar_type: RadarType
    feature: RadarFeature
    filename: str


def parse_data_filename(filename: str) -> DataTileName:
    """
    Parse a radar data tile name such as ``IDR023.T.202311130334.png``.

    The timestamp encoded in the filename is the capture time of the tile and
    is always UTC.
    """
    match = _DATA_FILENAME.match(filename)
    if match is None:
        raise DecodeError(f"{filename} is not a valid radar image file", resource=filename)
    radar_id, type_id, stamp = match.groups()
    try:
        timestamp = pytz.utc.localize(datetime.strptime(stamp, _TIMESTAMP_FORMAT))
    except ValueError as e:
        raise DecodeError(f"Invalid timestamp in {filename}: {e}", resource=filename) from e
    return DataTileName(
        radar_id=int(radar_id),
        radar_type=RadarType.from_id(type_id),
        timestamp=timestamp,
        filename=filename,
    )


def parse_feature_filename(filename: str) -> FeatureLayerName:
    # e.g. IDR023.catchments.png
    match = _FEATURE_FILENAME.match(filename)
    if match is None:
        raise DecodeError(f"{filename} is not a valid radar feature file", resource=filename)
    radar_id, type_id, feature = match.groups()
    try:
        feature = RadarFeature(feature)
    except ValueError as e:
        raise DecodeError(f"Unknown radar feature {feature}", resource=filename) from e
    return FeatureLayerName(
        radar_id=int(radar_id),
        radar_type=RadarType.from_id(type_id),
        feature=feature,
        filename=filename,
    )
