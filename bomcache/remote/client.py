import asyncio
import httpx
from pydantic import BaseModel, ValidationError

from datetime import datetime
from typing import Any, Dict
import logging

from ..errors import DecodeError, NetworkError
from ..utils import parse_api_time

logger = logging.getLogger(__name__)

URL_BASE = "https://api.weather.bom.gov.au/v1/locations"
STATION_LIST_URL = "https://reg.bom.gov.au/climate/data/lists_by_element/stations.txt"
USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) Chrome/114.0.0.0 Safari/537.36"
)
RETRY_STATUS = {408, 429, 503}


class ResponseMetadata(BaseModel):
    response_timestamp: str | None = None
    issue_time: str | None = None
    next_issue_time: str | None = None
    observation_time: str | None = None
    copyright: str | None = None


class ApiResponse(BaseModel):
    data: Any = None
    metadata: ResponseMetadata = ResponseMetadata()


class WeatherSnapshot(BaseModel):
    """One fetched payload together with the times reported by the API."""
    payload: Any
    issue_time: datetime | None = None
    next_issue_time: datetime | None = None

    @classmethod
    def from_response(cls, response: ApiResponse) -> "WeatherSnapshot":
        return cls(
            payload=response.data,
            issue_time=parse_api_time(response.metadata.issue_time),
            next_issue_time=parse_api_time(response.metadata.next_issue_time),
        )


class WeatherClient:
    """
    Client for the BOM weather API.

    Has to be used as an async context manager; the httpx client is reused
    for every request made inside the block.
    """

    def __init__(
        self,
        timeout: float = 7,
        retry_limit: int = 5,
        retry_delay: float = 7,
        user_agent: str = USER_AGENT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.timeout = timeout
        self.retry_limit = retry_limit
        self.retry_delay = retry_delay
        self.user_agent = user_agent
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self):
        logger.info("Opening API session...")
        self._client = httpx.AsyncClient(
            timeout=self.timeout,
            headers={"User-Agent": self.user_agent},
            transport=self._transport,
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        logger.info("Closing API session...")
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _get(self, url: str) -> httpx.Response:
        if self._client is None:
            raise ValueError("Initialize client before requesting data")

        logger.debug(f"Fetching {url}")
        last_error = None
        for attempt in range(1, self.retry_limit + 1):
            delay = self.retry_delay
            try:
                response = await self._client.get(url)
            except httpx.TransportError as e:
                logger.error(f"{e.__class__.__name__} for {url}: {e}")
                last_error = str(e)
            else:
                if response.is_success:
                    return response
                if response.status_code not in RETRY_STATUS:
                    logger.error(f"{response.status_code} for {url}: {response.text}")
                    raise NetworkError(f"HTTP {response.status_code}", resource=url)
                retry_after = response.headers.get("retry-after")
                if retry_after is not None and retry_after.isdigit():
                    delay = float(retry_after)
                logger.error(f"{response.status_code} for {url}")
                last_error = f"HTTP {response.status_code}"

            if attempt < self.retry_limit:
                logger.debug(f"Retrying in {delay} seconds")
                await asyncio.sleep(delay)

        raise NetworkError(f"Retry limit exceeded. Last error: {last_error}", resource=url)

    async def get_text(self, url: str) -> str:
        response = await self._get(url)
        return response.text

    async def get_json(self, url: str) -> Dict[str, Any]:
        response = await self._get(url)
        try:
            return response.json()
        except ValueError as e:
            logger.debug(response.text)
            raise DecodeError(f"Unable to decode JSON. {e}", resource=url) from e

    async def _get_response(self, url: str) -> ApiResponse:
        content = await self.get_json(url)
        try:
            return ApiResponse.model_validate(content)
        except ValidationError as e:
            raise DecodeError(f"Unexpected response structure: {e}", resource=url) from e

    @staticmethod
    def _location_url(geohash: str, endpoint: str = "") -> str:
        # Search results contain a 7 character geohash but other endpoints expect 6
        url = f"{URL_BASE}/{geohash[:6]}"
        return f"{url}/{endpoint}" if endpoint else url

    async def search(self, term: str) -> list[Dict[str, Any]]:
        response = await self._get_response(f"{URL_BASE}?search={term}")
        results = response.data or []
        logger.debug(f"Search term {term} returned {len(results)} results.")
        return results

    async def get_location(self, geohash: str) -> Dict[str, Any]:
        response = await self._get_response(self._location_url(geohash))
        if not response.data:
            raise DecodeError("Empty location record", resource=geohash)
        return response.data

    async def get_observation(self, geohash: str) -> WeatherSnapshot | None:
        response = await self._get_response(self._location_url(geohash, "observations"))
        if not response.data:
            return None
        return WeatherSnapshot.from_response(response)

    async def get_daily(self, geohash: str) -> WeatherSnapshot:
        response = await self._get_response(self._location_url(geohash, "forecasts/daily"))
        return WeatherSnapshot.from_response(response)

    async def get_hourly(self, geohash: str) -> WeatherSnapshot:
        response = await self._get_response(self._location_url(geohash, "forecasts/hourly"))
        return WeatherSnapshot.from_response(response)

    async def get_warnings(self, geohash: str) -> WeatherSnapshot:
        response = await self._get_response(self._location_url(geohash, "warnings"))
        return WeatherSnapshot.from_response(response)

    async def get_station_list(self) -> str:
        return await self.get_text(STATION_LIST_URL)
