"""
T-Mobile Home Internet gateway client.

Fetches ``/TMI/v1/gateway?get=all`` over plain HTTP and decodes the payload
into typed, immutable `Stats` records. Only the fields tmi-stats stores are
modelled; anything else the firmware reports is ignored.
"""

import asyncio
import json
from typing import Any

import aiohttp
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_serializer
from pydantic.alias_generators import to_camel

from .config_loader import DEFAULT_HOST, GATEWAY_REQUEST_PATH, GATEWAY_SCHEME
from .logging_setup import get_logger

logger = get_logger(__name__)

GENERATIONS = ("4g", "5g")


class GatewayError(Exception):
    """The gateway could not be reached or answered with an error status."""


class TelemetryParseError(GatewayError):
    """The gateway answered, but the payload is not valid telemetry."""


class SignalInfo(BaseModel):
    """One radio generation's reading at poll time."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    bands: frozenset[str] = Field(min_length=1)
    bars: int
    cid: int
    enbid: int | None = Field(default=None, alias="eNBID")
    rsrp: int
    rsrq: int
    rssi: int
    sinr: int

    @field_serializer("bands")
    def _serialize_bands(self, bands: frozenset[str]) -> list[str]:
        # Stable order so identical readings serialize identically
        return sorted(bands)


class SignalMap(BaseModel):
    """Per-generation readings; either generation may be absent."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    g4: SignalInfo | None = Field(default=None, alias="4g")
    g5: SignalInfo | None = Field(default=None, alias="5g")

    def generations(self) -> dict[str, SignalInfo]:
        """Present generations keyed by their wire name ("4g", "5g")."""
        out = {}
        for name, info in zip(GENERATIONS, (self.g4, self.g5)):
            if info is not None:
                out[name] = info
        return out

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)

    @classmethod
    def from_json(cls, raw: str | bytes) -> "SignalMap":
        return cls.model_validate_json(raw)


class DeviceInfo(BaseModel):
    """Gateway identity. Informational only; never affects sampling."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, alias_generator=to_camel)

    friendly_name: str | None = None
    manufacturer: str | None = None
    model: str | None = None
    name: str | None = None
    serial: str | None = None
    software_version: str | None = None
    hardware_version: str | None = None
    mac_id: str | None = None


class Stats(BaseModel):
    """One full poll result."""

    model_config = ConfigDict(frozen=True)

    device: DeviceInfo
    signal: SignalMap


def parse_stats(payload: Any) -> Stats:
    """Validate a decoded JSON payload.

    Raises:
        TelemetryParseError: the payload does not have the expected shape.
    """
    try:
        return Stats.model_validate(payload)
    except ValidationError as e:
        raise TelemetryParseError(f"Invalid gateway payload: {e}") from e


def signal_changed(previous: SignalMap, candidate: SignalMap) -> bool:
    """Structural comparison of the 4g/5g readings only."""
    return previous.g4 != candidate.g4 or previous.g5 != candidate.g5


class GatewayClient:
    """
    Async HTTP client for the gateway's telemetry endpoint.

    Usable as an async context manager; an externally supplied
    ``aiohttp.ClientSession`` is left open on close.
    """

    def __init__(
        self,
        host: str = DEFAULT_HOST,
        timeout: float = 5.0,
        session: aiohttp.ClientSession | None = None,
    ):
        self.host = host
        self.url = f"{GATEWAY_SCHEME}://{host}{GATEWAY_REQUEST_PATH}"
        self.timeout = timeout

        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> "GatewayClient":
        await self._ensure_session()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def _ensure_session(self):
        """Ensure HTTP session exists"""
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.timeout)
            self._session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True

    async def get_raw_json(self) -> Any:
        """GET the telemetry endpoint and return the decoded JSON body."""
        await self._ensure_session()

        try:
            async with self._session.get(self.url) as response:
                if not 200 <= response.status < 300:
                    body = await response.text(errors="replace")
                    raise GatewayError(
                        f"Gateway error ({response.status}) from {self.url}: {body[:200]}"
                    )
                # The firmware's content type is not reliable
                return await response.json(content_type=None)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise TelemetryParseError(f"Malformed JSON from {self.url}: {e}") from e
        except aiohttp.ClientError as e:
            raise GatewayError(f"Connection error: {e}") from e
        except asyncio.TimeoutError as e:
            raise GatewayError(f"Timed out after {self.timeout}s waiting for {self.url}") from e

    async def get_stats(self) -> Stats:
        """Fetch and decode one reading."""
        payload = await self.get_raw_json()
        return parse_stats(payload)

    async def close(self) -> None:
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
        self._session = None
