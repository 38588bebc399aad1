import io
import logging
from typing import Any, Dict, List

import pandas as pd
import pandera.pandas as pa

from .database import models

logger = logging.getLogger(__name__)

# Column layout of https://reg.bom.gov.au/climate/data/lists_by_element/stations.txt
STATION_COLUMNS = [
    "id", "district_id", "name", "start", "end", "latitude", "longitude",
    "source", "state", "height", "barometric_height", "wmo_id",
]
STATION_WIDTHS = [8, 6, 41, 8, 8, 9, 10, 15, 4, 11, 9, 6]
HEADER_LINES = 5

STATION_SCHEMA = pa.DataFrameSchema(
    {
        "id": pa.Column("Int64", nullable=False, unique=True),
        "district_id": pa.Column(str),
        "name": pa.Column(str),
        "start": pa.Column("Int64", nullable=False),
        "end": pa.Column("Int64", nullable=True),
        "latitude": pa.Column(float, pa.Check.in_range(-90, 90)),
        "longitude": pa.Column(float, pa.Check.in_range(-180, 180)),
        "source": pa.Column(object, nullable=True),
        "state": pa.Column(str),
        "height": pa.Column(float, nullable=True),
        "barometric_height": pa.Column(float, nullable=True),
        "wmo_id": pa.Column("Int64", nullable=True),
    },
    strict=True,
)


def _table_body(text: str) -> str:
    """Drop the header lines and everything after the first blank line."""
    body = []
    for line in text.splitlines()[HEADER_LINES:]:
        if not line.strip():
            break
        body.append(line)
    return "\n".join(body)


def parse_stations(text: str) -> pd.DataFrame:
    """
    Parse the fixed-width table of all past and present weather stations.

    Returns a validated DataFrame with one row per station. Missing end years,
    heights and WMO ids become NA; a source starting with '.' is treated as
    missing.
    """
    body = _table_body(text)
    if not body:
        logger.warning("Station table is empty")
        return pd.DataFrame(columns=STATION_COLUMNS)

    df = pd.read_fwf(
        io.StringIO(body),
        widths=STATION_WIDTHS,
        names=STATION_COLUMNS,
        header=None,
        dtype=str,
    )
    for col in ["district_id", "name", "state"]:
        df[col] = df[col].str.strip().astype(object)

    source = df["source"].str.strip()
    df["source"] = source.where(~source.fillna(".").str.startswith("."), None).astype(object)

    for col in ["id", "start", "end", "wmo_id"]:
        df[col] = pd.to_numeric(df[col], errors="coerce").astype("Int64")
    for col in ["latitude", "longitude", "height", "barometric_height"]:
        df[col] = pd.to_numeric(df[col], errors="coerce").astype(float)

    return STATION_SCHEMA.validate(df)


def _optional(value, cast):
    if value is None or pd.isna(value):
        return None
    return cast(value)


def station_records(df: pd.DataFrame) -> List[Dict[str, Any]]:
    records = []
    for row in df.itertuples(index=False):
        records.append({
            "id": int(row.id),
            "district_id": row.district_id,
            "name": row.name,
            "start": int(row.start),
            "end": _optional(row.end, int),
            "latitude": float(row.latitude),
            "longitude": float(row.longitude),
            "source": _optional(row.source, str),
            "state": row.state,
            "height": _optional(row.height, float),
            "barometric_height": _optional(row.barometric_height, float),
            "wmo_id": _optional(row.wmo_id, int),
        })
    return records


def station_rows(text: str) -> List[models.Station]:
    return [models.Station(**record) for record in station_records(parse_stations(text))]
