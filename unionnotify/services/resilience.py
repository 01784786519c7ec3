from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable

from redis.asyncio import Redis
from redis.exceptions import RedisError

from unionnotify.core.config import get_settings
from unionnotify.core.errors import IntegrationUnavailableError
from unionnotify.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)


_redis_pool: Redis | None = None
_redis_loop: asyncio.AbstractEventLoop | None = None
_redis_lock = asyncio.Lock()


async def get_resilience_redis() -> Redis | None:
    # Reuse one Redis client per event loop for breaker state and the drain lock.
    settings = get_settings()
    if not settings.redis_url:
        return None
    try:
        current_loop = asyncio.get_running_loop()
    except RuntimeError:
        return None
    global _redis_pool, _redis_loop
    if _redis_pool is not None and _redis_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_loop != current_loop:
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            try:
                _redis_pool = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
                _redis_loop = current_loop
            except Exception as exc:  # noqa: BLE001 - Redis might be unavailable in dev
                logger.warning("resilience_redis_unavailable", exc_info=exc)
                return None
    return _redis_pool


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int
    open_seconds: int
    half_open_trials: int


@dataclass
class CircuitBreakerState:
    state: str
    failures: int
    opened_at: float | None
    half_open_trials: int


class CircuitBreaker:
    """Closed/open/half-open breaker around one transport.

    State lives in a Redis hash when a client is supplied so every API and
    worker process sees the same breaker; otherwise it is process-local.
    Every save is mirrored locally, and a Redis error degrades the breaker to
    that local copy instead of failing the transport call it guards.
    """

    def __init__(
        self,
        name: str,
        *,
        redis: Redis | None = None,
        config: CircuitBreakerConfig | None = None,
        time_source: Callable[[], float] | None = None,
        on_transition: Callable[[str, str], Awaitable[None]] | None = None,
    ) -> None:
        self._name = name
        self._redis = redis
        self._config = config or CircuitBreakerConfig(
            failure_threshold=get_settings().cb_failure_threshold,
            open_seconds=get_settings().cb_open_seconds,
            half_open_trials=get_settings().cb_half_open_trials,
        )
        self._time = time_source or time.monotonic
        self._on_transition = on_transition
        self._local_state = CircuitBreakerState("closed", 0, None, 0)

    @property
    def name(self) -> str:
        return self._name

    def _key(self) -> str:
        return f"{get_settings().cb_redis_prefix}:{self._name}"

    async def _load(self) -> CircuitBreakerState:
        if self._redis is None:
            return self._local_state
        try:
            raw = await self._redis.hgetall(self._key())
        except RedisError as exc:
            logger.warning("circuit_breaker_redis_unavailable name=%s op=load", self._name, exc_info=exc)
            increment_counter(f"circuit_breaker_redis_errors_total.{self._name}")
            return self._local_state
        if not raw:
            return self._local_state
        return CircuitBreakerState(
            raw.get("state", "closed"),
            int(raw.get("failures", 0)),
            float(raw["opened_at"]) if raw.get("opened_at") else None,
            int(raw.get("half_open_trials", 0)),
        )

    async def _save(self, state: CircuitBreakerState) -> None:
        self._local_state = state
        if self._redis is None:
            return
        payload = {
            "state": state.state,
            "failures": str(state.failures),
            "opened_at": str(state.opened_at or ""),
            "half_open_trials": str(state.half_open_trials),
        }
        try:
            await self._redis.hset(self._key(), mapping=payload)
            await self._redis.expire(self._key(), max(self._config.open_seconds * 4, 60))
        except RedisError as exc:
            logger.warning("circuit_breaker_redis_unavailable name=%s op=save", self._name, exc_info=exc)
            increment_counter(f"circuit_breaker_redis_errors_total.{self._name}")

    async def _transition(self, state: CircuitBreakerState, target: str) -> CircuitBreakerState:
        if state.state != target:
            logger.warning("circuit_breaker_transition name=%s from=%s to=%s", self._name, state.state, target)
            increment_counter(f"circuit_breaker_transition_total.{self._name}.{target}")
            set_gauge(
                f"circuit_breaker_state.{self._name}",
                {"closed": 0.0, "half_open": 0.5, "open": 1.0}.get(target, 0.0),
            )
            if self._on_transition is not None:
                await self._on_transition(self._name, target)
        return CircuitBreakerState(target, 0, self._time() if target == "open" else None, 0)

    async def before_call(self) -> CircuitBreakerState:
        # Raise while open; let a bounded number of trial calls through when half-open.
        state = await self._load()
        now = self._time()
        if state.state == "open":
            if state.opened_at is not None and (now - state.opened_at) >= self._config.open_seconds:
                state = await self._transition(state, "half_open")
                await self._save(state)
            else:
                raise IntegrationUnavailableError(f"{self._name} is temporarily unavailable")
        if state.state == "half_open":
            if state.half_open_trials >= self._config.half_open_trials:
                raise IntegrationUnavailableError(f"{self._name} is temporarily unavailable")
            state.half_open_trials += 1
            await self._save(state)
        return state

    async def record_success(self) -> None:
        state = await self._load()
        if state.state != "closed":
            state = await self._transition(state, "closed")
        else:
            state.failures = 0
            state.half_open_trials = 0
        await self._save(state)

    async def record_failure(self) -> None:
        state = await self._load()
        if state.state == "half_open":
            state = await self._transition(state, "open")
            await self._save(state)
            return
        failures = state.failures + 1
        if failures >= self._config.failure_threshold:
            state = await self._transition(state, "open")
        else:
            state.failures = failures
        await self._save(state)


async def get_circuit_breaker_state(name: str) -> str:
    # Report shared breaker state for the ops metrics route.
    redis = await get_resilience_redis()
    if redis is None:
        return "unknown"
    try:
        raw = await redis.hgetall(f"{get_settings().cb_redis_prefix}:{name}")
    except RedisError as exc:
        logger.warning("circuit_breaker_state_unavailable name=%s", name, exc_info=exc)
        return "unknown"
    if not raw:
        return "closed"
    return raw.get("state", "closed")
