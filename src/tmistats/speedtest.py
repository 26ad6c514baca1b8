"""
Speed tests via the Ookla ``speedtest`` CLI.

Get the CLI from <https://www.speedtest.net/apps/cli> and run it once by hand
after installing to accept its license.
"""

import asyncio
import subprocess
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .logging_setup import get_logger

logger = get_logger(__name__)

NOT_FOUND_ERR_MSG = """
Couldn't find the "{command}" command in your PATH.

Running the speed test requires the "speedtest" CLI, which
you can get here: https://www.speedtest.net/apps/cli

Make sure to run it once manually after installing to
accept its EULA.
""".strip()


class SpeedTestError(Exception):
    """The speed test ran but failed or produced unusable output."""


class SpeedTestNotInstalledError(SpeedTestError):
    """The speedtest binary is not on PATH."""


class _Result(BaseModel):
    model_config = ConfigDict(frozen=True)


class PingLatency(_Result):
    jitter: float
    latency: float
    low: float
    high: float


class LoadedLatency(_Result):
    jitter: float
    iqm: float
    low: float
    high: float


class UpDownStats(_Result):
    bandwidth: int = Field(description="bytes per second")
    bytes: int
    elapsed: int  # ms
    latency: LoadedLatency


class ServerInfo(_Result):
    id: int
    host: str
    port: int
    name: str
    location: str
    ip: str  # v4 or v6


class ResultLink(_Result):
    url: str
    persisted: bool | None = None


class SpeedTestResult(_Result):
    """Parsed ``speedtest --format=json`` output."""

    model_config = ConfigDict(populate_by_name=True)

    type: Literal["result"]
    ping: PingLatency
    download: UpDownStats
    upload: UpDownStats
    packet_loss: float = Field(alias="packetLoss")
    server: ServerInfo
    result: ResultLink

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)

    @classmethod
    def from_json(cls, raw: str | bytes) -> "SpeedTestResult":
        return cls.model_validate_json(raw)


def parse_result(output: str | bytes) -> SpeedTestResult:
    try:
        return SpeedTestResult.from_json(output)
    except ValidationError as e:
        raise SpeedTestError(f"Unexpected speedtest output: {e}") from e


async def run(command: str = "speedtest") -> SpeedTestResult:
    """Run one speed test and return the parsed result.

    Raises:
        SpeedTestNotInstalledError: ``command`` is not on PATH.
        SpeedTestError: the command cannot be started, exits non-zero or
            prints unparseable output.
    """
    logger.info("Running %s ...", command)
    try:
        proc = await asyncio.create_subprocess_exec(
            command,
            "--format=json-pretty",
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
        )
    except FileNotFoundError as e:
        raise SpeedTestNotInstalledError(NOT_FOUND_ERR_MSG.format(command=command)) from e
    except OSError as e:
        raise SpeedTestError(f'Cannot run "{command}": {e}') from e

    try:
        stdout, stderr = await proc.communicate()
    finally:
        # Cancelled mid-test: don't leave the CLI running in the background
        if proc.returncode is None:
            logger.debug("Stopping %s (pid %s)", command, proc.pid)
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()

    out = stdout.decode("utf-8", errors="replace")
    if proc.returncode != 0:
        err = stderr.decode("utf-8", errors="replace")
        raise SpeedTestError(
            f'Error running "{command}" (exit {proc.returncode}): {out.strip()} {err.strip()}'
        )

    try:
        return parse_result(out)
    except SpeedTestError:
        logger.error("Error parsing output: %s", out)
        raise
