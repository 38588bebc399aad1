from enum import Enum

from sqlalchemy import (
    Column, Integer, Float, String, ForeignKey, DateTime, LargeBinary, Boolean, Index
)
from sqlalchemy.dialects.sqlite import JSON
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


class ResourceKind(str, Enum):
    OBSERVATION = "observation"
    DAILY = "daily"
    HOURLY = "hourly"
    WARNINGS = "warnings"
    RADAR_DATA = "radar_data"
    RADAR_FEATURE = "radar_feature"


class Station(Base):
    __tablename__ = "station"

    id = Column(Integer, primary_key=True, autoincrement=False)
    district_id = Column(String, nullable=False)
    name = Column(String, nullable=False)
    start = Column(Integer, nullable=False)
    end = Column(Integer)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    source = Column(String)
    state = Column(String, nullable=False)
    height = Column(Float)
    barometric_height = Column(Float)
    wmo_id = Column(Integer)

    locations = relationship("Location", back_populates="station")


class Location(Base):
    __tablename__ = "location"

    id = Column(String, primary_key=True)
    geohash = Column(String, nullable=False)
    station_id = Column(Integer, ForeignKey("station.id"), nullable=True)
    has_wave = Column(Boolean, nullable=False, default=False)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    marine_area_id = Column(String)
    name = Column(String, nullable=False)
    state = Column(String, nullable=False)
    postcode = Column(String, nullable=False)
    tidal_point = Column(String)
    timezone = Column(String, nullable=False)
    weather = Column(JSON)  # polling interval overrides, kind -> seconds

    station = relationship("Station", back_populates="locations")
    observations = relationship("Observation", back_populates="location")


class Radar(Base):
    __tablename__ = "radar"

    id = Column(Integer, primary_key=True, autoincrement=False)
    name = Column(String, nullable=False)
    full_name = Column(String)
    latitude = Column(Float)
    longitude = Column(Float)
    state = Column(String)
    type_ = Column(String)
    group_ = Column(Boolean)


class RadarLegend(Base):
    __tablename__ = "radar_legend"

    id = Column(Integer, primary_key=True, autoincrement=False)
    image = Column(LargeBinary, nullable=False)


class RadarDataLayer(Base):
    __tablename__ = "radar_data_layer"

    id = Column(Integer, primary_key=True)
    image = Column(LargeBinary, nullable=False)
    radar_id = Column(Integer, ForeignKey("radar.id"), nullable=False)
    radar_type_id = Column(String, nullable=False)
    timestamp = Column(DateTime, nullable=False)
    filename = Column(String, nullable=False, unique=True)

    __table_args__ = (Index("ix_radar_data_layer_lookup", "radar_id", "radar_type_id", "timestamp"), )


class RadarFeatureLayer(Base):
    __tablename__ = "radar_feature_layer"

    id = Column(Integer, primary_key=True)
    image = Column(LargeBinary, nullable=False)
    radar_id = Column(Integer, ForeignKey("radar.id"), nullable=False)
    feature = Column(String, nullable=False)
    radar_type_id = Column(String, nullable=False)
    filename = Column(String, nullable=False, unique=True)


class Observation(Base):
    __tablename__ = "observation"

    id = Column(Integer, primary_key=True)
    location_id = Column(String, ForeignKey("location.id"), nullable=False)
    kind = Column(String, nullable=False)
    issue_time = Column(DateTime)
    fetched_at = Column(DateTime, nullable=False)
    payload = Column(JSON)

    location = relationship("Location", back_populates="observations")

    __table_args__ = (Index("ix_observation_lookup", "location_id", "kind", "fetched_at"), )


class FreshnessMarker(Base):
    __tablename__ = "freshness_marker"

    kind = Column(String, primary_key=True)
    key = Column(String, primary_key=True)
    last_check = Column(DateTime, nullable=False)
    interval_seconds = Column(Float, nullable=False)
