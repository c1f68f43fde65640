"""
Circuit breakers shared by every API and worker process.

Breaker state lives in one Redis hash per breaker so a gateway outage seen by
one worker opens the breaker for all of them. The payment gateway breaker is
the only one in use; reservation theft treats an open breaker as "unknown".
"""
import logging
from datetime import datetime, timezone

import pybreaker
import redis

from cardshop.core.config import settings
from cardshop.utils.metrics import circuit_breaker_state

logger = logging.getLogger(__name__)

STATE_GAUGE_VALUES = {
    pybreaker.STATE_CLOSED: 0,
    pybreaker.STATE_OPEN: 1,
    pybreaker.STATE_HALF_OPEN: 2,
}


class RedisCircuitBreakerStorage(pybreaker.CircuitBreakerStorage):
    """pybreaker storage over a single Redis hash: state, fail/success counters, opened_at."""

    def __init__(self, name: str, client: redis.Redis | None = None) -> None:
        super().__init__(name)
        self._name = name
        self.client = client or redis.Redis.from_url(settings.redis_url, decode_responses=True)
        self._key = f"cardshop:cb:{name}"
        # Outlives the open window so a half-open probe still sees the last state.
        self._ttl = settings.cb_open_seconds * 2

    def _get(self, field: str) -> str | None:
        return self.client.hget(self._key, field)

    def _set(self, field: str, value) -> None:
        pipe = self.client.pipeline()
        pipe.hset(self._key, field, value)
        pipe.expire(self._key, self._ttl)
        pipe.execute()

    def _incr(self, field: str) -> None:
        pipe = self.client.pipeline()
        pipe.hincrby(self._key, field, 1)
        pipe.expire(self._key, self._ttl)
        pipe.execute()

    @property
    def state(self) -> str:
        return self._get("state") or pybreaker.STATE_CLOSED

    @state.setter
    def state(self, value: str) -> None:
        self._set("state", value)
        circuit_breaker_state.labels(name=self._name).set(STATE_GAUGE_VALUES.get(value, 0))

    @property
    def counter(self) -> int:
        return int(self._get("fail_counter") or 0)

    def increment_counter(self) -> None:
        self._incr("fail_counter")

    def reset_counter(self) -> None:
        self.client.hdel(self._key, "fail_counter")

    @property
    def success_counter(self) -> int:
        return int(self._get("success_counter") or 0)

    def increment_success_counter(self) -> None:
        self._incr("success_counter")

    def reset_success_counter(self) -> None:
        self.client.hdel(self._key, "success_counter")

    @property
    def opened_at(self) -> datetime | None:
        raw = self._get("opened_at")
        return datetime.fromtimestamp(float(raw), tz=timezone.utc) if raw else None

    @opened_at.setter
    def opened_at(self, dt: datetime) -> None:
        self._set("opened_at", dt.timestamp())


class CircuitBreakerListener(pybreaker.CircuitBreakerListener):
    def __init__(self, name: str) -> None:
        self.name = name

    def state_change(self, cb: pybreaker.CircuitBreaker, old_state, new_state) -> None:
        new_name = getattr(new_state, "name", new_state)
        log = logger.error if new_name == pybreaker.STATE_OPEN else logger.warning
        log(
            "circuit_breaker_state_change",
            extra={
                "breaker_name": self.name,
                "old_state": getattr(old_state, "name", old_state),
                "new_state": new_name,
            },
        )

    def failure(self, cb: pybreaker.CircuitBreaker, exc: BaseException) -> None:
        logger.warning("circuit_breaker_failure", extra={"breaker_name": self.name, "error": type(exc).__name__})


_breakers: dict[str, pybreaker.CircuitBreaker] = {}


def get_circuit_breaker(name: str) -> pybreaker.CircuitBreaker:
    """Process-wide breaker per name; the state itself is shared through Redis."""
    if name not in _breakers:
        _breakers[name] = pybreaker.CircuitBreaker(
            fail_max=settings.cb_failure_threshold,
            reset_timeout=settings.cb_open_seconds,
            state_storage=RedisCircuitBreakerStorage(name),
            listeners=[CircuitBreakerListener(name)],
            name=name,
        )
    return _breakers[name]
