"""
Outbound rate limiting and backoff
Cooldown on throttling signals, tenacity retries on transient failures,
fixed pacing between sequential calls. Every wait honours the run's
cancellation event.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from app.core.circuit_breakers import transient_retrying
from app.core.config import Settings
from app.core.errors import RateLimitError, SyncCancelled

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RateLimiter:
    """
    One instance per sync run.

    call(op) runs `op` and:
    - on RateLimitError waits Retry-After (or the configured cooldown) and
      runs the same operation again, up to max_throttle_retries times
    - on TransientNetworkError retries with exponential backoff
    - re-raises anything else untouched
    """

    def __init__(
        self,
        cooldown_seconds: float = 30.0,
        inter_call_delay: float = 0.5,
        max_throttle_retries: int = 5,
        transient_attempts: int = 3,
        transient_max_wait: float = 10.0,
        cancel_event: Optional[asyncio.Event] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None
    ):
        self.cooldown_seconds = cooldown_seconds
        self.inter_call_delay = inter_call_delay
        self.max_throttle_retries = max_throttle_retries
        self.transient_attempts = transient_attempts
        self.transient_max_wait = transient_max_wait
        self.cancel_event = cancel_event
        self._sleep = sleep
        self.throttle_count = 0

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        cancel_event: Optional[asyncio.Event] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None
    ) -> "RateLimiter":
        return cls(
            cooldown_seconds=settings.sync_rate_limit_cooldown_seconds,
            inter_call_delay=settings.sync_inter_call_delay_seconds,
            max_throttle_retries=settings.sync_max_throttle_retries,
            transient_attempts=settings.sync_transient_retry_attempts,
            cancel_event=cancel_event,
            sleep=sleep,
        )

    @property
    def cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    def check_cancelled(self) -> None:
        if self.cancelled:
            raise SyncCancelled("Sync cancelled by caller")

    async def sleep(self, seconds: float) -> None:
        """Wait `seconds`, returning early with SyncCancelled if the run is cancelled."""
        self.check_cancelled()
        if seconds <= 0:
            return

        if self._sleep is not None:
            await self._sleep(seconds)
            self.check_cancelled()
            return

        if self.cancel_event is None:
            await asyncio.sleep(seconds)
            return

        try:
            await asyncio.wait_for(self.cancel_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        raise SyncCancelled("Sync cancelled during wait")

    async def pace(self) -> None:
        """Fixed delay between sequential per-record operations."""
        await self.sleep(self.inter_call_delay)

    async def call(self, operation: Callable[[], Awaitable[T]], description: str = "call") -> T:
        throttles = 0
        while True:
            self.check_cancelled()
            try:
                async for attempt in transient_retrying(
                    self.transient_attempts,
                    min_wait=min(1, self.transient_max_wait),
                    max_wait=self.transient_max_wait,
                    sleep=self.sleep
                ):
                    with attempt:
                        return await operation()
            except RateLimitError as e:
                throttles += 1
                self.throttle_count += 1
                if throttles > self.max_throttle_retries:
                    logger.error(f"❌ {description}: still throttled after {self.max_throttle_retries} cooldowns")
                    raise
                wait = e.retry_after if e.retry_after is not None else self.cooldown_seconds
                logger.warning(f"⏳ {description}: rate limited, cooling down {wait}s (attempt {throttles}/{self.max_throttle_retries})")
                await self.sleep(wait)
