"""
Stabilized sampling of gateway telemetry.

The gateway only refreshes its internal reading about every 10 seconds, and
polling it faster just returns the same numbers again. `GatewayPoller` waits
until a reading could plausibly be new, then keeps polling at a short interval
until the 4g/5g readings actually change, or accepts whatever it has once the
maximum wait has passed so a session never stalls.
"""

import asyncio
import time
from dataclasses import dataclass, replace
from typing import Awaitable, Callable

from .config_loader import PollConfig
from .gateway import GatewayClient, GatewayError, Stats, signal_changed
from .logging_setup import get_logger

logger = get_logger(__name__)

MIN_WAIT_MS = 9000
MAX_WAIT_MS = 10000
DELAY_MS = 500
FETCH_ATTEMPTS = 3
FETCH_RETRY_DELAY_MS = 100


@dataclass(frozen=True)
class Accepted:
    """The last sample handed out, with the clock reading when it was accepted."""

    timestamp: float  # seconds, from the poller's clock
    data: Stats


class GatewayPoller:
    """
    Debounce state machine over a telemetry fetch function.

    ``clock`` must return seconds from a monotonic source and ``sleep`` must be
    an awaitable taking seconds; both are injectable so the timing can be
    driven by tests.
    """

    def __init__(
        self,
        fetch: Callable[[], Awaitable[Stats]],
        *,
        min_wait_ms: int = MIN_WAIT_MS,
        max_wait_ms: int = MAX_WAIT_MS,
        delay_ms: int = DELAY_MS,
        fetch_attempts: int = FETCH_ATTEMPTS,
        fetch_retry_delay_ms: int = FETCH_RETRY_DELAY_MS,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if fetch_attempts < 1:
            raise ValueError("fetch_attempts must be at least 1")
        if max_wait_ms < min_wait_ms:
            raise ValueError("max_wait_ms must not be smaller than min_wait_ms")

        self._fetch = fetch
        self.min_wait_ms = min_wait_ms
        self.max_wait_ms = max_wait_ms
        self.delay_ms = delay_ms
        self.fetch_attempts = fetch_attempts
        self.fetch_retry_delay_ms = fetch_retry_delay_ms
        self._clock = clock
        self._sleep = sleep

        self.last_accepted: Accepted | None = None

    @classmethod
    def from_config(cls, client: GatewayClient, config: PollConfig, **kwargs) -> "GatewayPoller":
        return cls(
            client.get_stats,
            min_wait_ms=config.min_wait_ms,
            max_wait_ms=config.max_wait_ms,
            delay_ms=config.delay_ms,
            fetch_attempts=config.fetch_attempts,
            fetch_retry_delay_ms=config.fetch_retry_delay_ms,
            **kwargs,
        )

    async def fetch_one(self) -> Stats:
        """Fetch one reading, retrying transient failures.

        Intermediate failures are only logged; the last one is re-raised.
        """
        attempt = 1
        while True:
            try:
                return await self._fetch()
            except GatewayError as e:
                if attempt >= self.fetch_attempts:
                    logger.debug("Fetch failed after %d attempts: %s", attempt, e)
                    raise
                logger.debug(
                    "Fetch failed (attempt %d/%d), retrying in %dms: %s",
                    attempt, self.fetch_attempts, self.fetch_retry_delay_ms, e,
                )
            await self._sleep(self.fetch_retry_delay_ms / 1000)
            attempt += 1

    def _elapsed_ms(self, now: float) -> float:
        """Milliseconds since the last accepted sample.

        A clock reading earlier than the last acceptance rebases the last
        acceptance to ``now`` instead of producing a negative wait.
        """
        last = self.last_accepted
        elapsed = (now - last.timestamp) * 1000
        if elapsed < 0:
            logger.warning(
                "Clock moved backwards by %.0fms, restarting the wait", -elapsed
            )
            self.last_accepted = replace(last, timestamp=now)
            return 0.0
        return elapsed

    def _accept(self, now: float, candidate: Stats) -> Stats:
        self.last_accepted = Accepted(timestamp=now, data=candidate)
        return candidate

    async def get_next_stable(self) -> Stats:
        """Return the next reading that differs from the last accepted one.

        Waits at least ``min_wait_ms`` after the previous acceptance before
        polling, then polls every ``delay_ms`` until the signal changes. Once
        ``max_wait_ms`` has passed the current reading is accepted even if it
        is unchanged. The first call accepts the first successful fetch.

        Raises:
            GatewayError: a fetch failed ``fetch_attempts`` times in a row.
        """
        if self.last_accepted is not None:
            while True:
                elapsed = self._elapsed_ms(self._clock())
                if elapsed >= self.min_wait_ms:
                    break
                await self._sleep((self.min_wait_ms - elapsed) / 1000)

        while True:
            candidate = await self.fetch_one()
            now = self._clock()

            if self.last_accepted is None:
                logger.debug("First sample accepted")
                return self._accept(now, candidate)

            elapsed = self._elapsed_ms(now)
            if signal_changed(self.last_accepted.data.signal, candidate.signal):
                logger.debug("New reading after %.0fms", elapsed)
                return self._accept(now, candidate)

            if elapsed >= self.max_wait_ms:
                logger.info(
                    "Reading unchanged after %.1fs, accepting it anyway", elapsed / 1000
                )
                return self._accept(now, candidate)

            await self._sleep(self.delay_ms / 1000)
