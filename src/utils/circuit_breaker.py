"""
Redis-backed circuit breaker for calls to rate-limited upstream APIs.

States (shared by every worker process through Redis keys):
- closed:    calls pass; consecutive failures are counted in a key that
             expires after the failure window.
- open:      the `open` key exists (TTL = cooldown); calls fail fast.
- half-open: cooldown elapsed but the `tripped` marker remains; exactly one
             caller wins the `probe` key (SET NX) and makes a trial call.
             Success closes the circuit, failure re-opens it.

Redis failure fails open (the call is attempted), matching the rate limiter.
"""
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from src.utils.errors import CircuitOpenError, PermanentProcessingFailure

logger = logging.getLogger(__name__)

T = TypeVar("T")

KEY_PREFIX = "agentpulse:circuit:"

STATE_CLOSED = "closed"
STATE_OPEN = "open"
STATE_HALF_OPEN = "half_open"


class CircuitBreaker:
    """Fail-fast guard around one upstream dependency."""

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        window_seconds: int = 60,
        cooldown_seconds: int = 30,
        probe_timeout_seconds: Optional[int] = None,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.window_seconds = window_seconds
        self.cooldown_seconds = cooldown_seconds
        self.probe_timeout_seconds = probe_timeout_seconds or cooldown_seconds

    @property
    def _failures_key(self) -> str:
        return f"{KEY_PREFIX}{self.name}:failures"

    @property
    def _open_key(self) -> str:
        return f"{KEY_PREFIX}{self.name}:open"

    @property
    def _tripped_key(self) -> str:
        return f"{KEY_PREFIX}{self.name}:tripped"

    @property
    def _probe_key(self) -> str:
        return f"{KEY_PREFIX}{self.name}:probe"

    async def state(self) -> str:
        from src.utils.dedup import get_redis
        redis = await get_redis()
        if await redis.exists(self._open_key):
            return STATE_OPEN
        if await redis.exists(self._tripped_key):
            return STATE_HALF_OPEN
        return STATE_CLOSED

    async def call(self, func: Callable[[], Awaitable[T]]) -> T:
        """
        Run `func` through the breaker.

        Raises CircuitOpenError without calling `func` while open, or while
        half-open and another caller holds the probe.
        PermanentProcessingFailure from `func` does not count as an upstream
        failure (the upstream answered).
        """
        try:
            from src.utils.dedup import get_redis
            redis = await get_redis()
            current = await self.state()
        except Exception as e:
            logger.warning("Circuit '%s' state unavailable: %s. Calling through.", self.name, str(e))
            return await func()

        if current == STATE_OPEN:
            ttl = await redis.ttl(self._open_key)
            raise CircuitOpenError(self.name, retry_after=ttl if ttl and ttl > 0 else None)

        if current == STATE_HALF_OPEN:
            won_probe = await redis.set(self._probe_key, "1", nx=True, ex=self.probe_timeout_seconds)
            if not won_probe:
                raise CircuitOpenError(self.name)
            logger.info("Circuit '%s' half-open: sending trial call", self.name)

        try:
            result = await func()
        except PermanentProcessingFailure:
            await self._record_success(current)
            raise
        except Exception:
            await self._record_failure(current)
            raise

        await self._record_success(current)
        return result

    async def _record_success(self, previous_state: str) -> None:
        try:
            from src.utils.dedup import get_redis
            redis = await get_redis()
            if previous_state == STATE_HALF_OPEN:
                await redis.delete(self._tripped_key, self._probe_key, self._failures_key)
                logger.info("Circuit '%s' closed after successful trial call", self.name)
            else:
                await redis.delete(self._failures_key)
        except Exception as e:
            logger.debug("Circuit '%s' success bookkeeping failed: %s", self.name, str(e))

    async def _record_failure(self, previous_state: str) -> None:
        try:
            from src.utils.dedup import get_redis
            redis = await get_redis()
            if previous_state == STATE_HALF_OPEN:
                await self._trip(redis)
                return

            pipe = redis.pipeline(transaction=True)
            pipe.incr(self._failures_key)
            pipe.expire(self._failures_key, self.window_seconds, nx=True)
            failures = (await pipe.execute())[0]
            if failures >= self.failure_threshold:
                await self._trip(redis)
        except Exception as e:
            logger.debug("Circuit '%s' failure bookkeeping failed: %s", self.name, str(e))

    async def _trip(self, redis) -> None:
        pipe = redis.pipeline(transaction=True)
        pipe.set(self._open_key, "1", ex=self.cooldown_seconds)
        # The tripped marker outlives the cooldown so the next caller probes
        pipe.set(self._tripped_key, "1", ex=self.cooldown_seconds * 10)
        pipe.delete(self._probe_key, self._failures_key)
        await pipe.execute()
        logger.warning(
            "Circuit '%s' OPEN - failing fast for %ds",
            self.name, self.cooldown_seconds,
        )
        from src.utils.alerting import AlertType, send_alert
        await send_alert(
            AlertType.CIRCUIT_OPENED,
            f"Circuit '{self.name}' opened after repeated upstream failures",
            severity="warning",
        )


_breakers: dict[str, CircuitBreaker] = {}


def get_breaker(name: str) -> CircuitBreaker:
    """Configured breaker for a named upstream, one instance per process."""
    breaker = _breakers.get(name)
    if breaker is None:
        from src.config import get_settings
        settings = get_settings()
        breaker = CircuitBreaker(
            name,
            failure_threshold=settings.breaker_failure_threshold,
            window_seconds=settings.breaker_window_seconds,
            cooldown_seconds=settings.breaker_cooldown_seconds,
        )
        _breakers[name] = breaker
    return breaker
