"""
External Service Gateway: circuit breaker, concurrency limiter, timeout, retry.

Wraps outbound calls to Klap, QStash and Telegram:
  1. Circuit breaker (fail-fast when a provider is down)
  2. Concurrency semaphore (bounds the fan-out of export polls)
  3. Timeout enforcement
  4. Retry with exponential backoff + jitter, for services that want it

Klap runs with zero gateway retries: the polling loops own that budget.

Usage:
    gw = ServiceGateway()
    result = await gw.execute("klap", my_async_callable, arg1, kwarg=val)
"""
import asyncio
import random
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Coroutine, Dict, Optional

import httpx

from reeru.errors import ExternalTransient, ReeruError
from reeru.utils.logger import logger
from reeru.utils.metrics import inc, observe


@dataclass(frozen=True)
class ServiceConfig:
    max_concurrent: int = 10
    timeout_seconds: float = 60.0
    max_retries: int = 0
    circuit_failure_threshold: int = 5
    circuit_recovery_seconds: float = 30.0
    base_backoff_seconds: float = 1.0


DEFAULT_GATEWAY_CONFIG: Dict[str, ServiceConfig] = {
    "klap": ServiceConfig(
        max_concurrent=10,
        timeout_seconds=60.0,
        max_retries=0,
        circuit_failure_threshold=8,
        circuit_recovery_seconds=30.0,
    ),
    "qstash": ServiceConfig(
        max_concurrent=5,
        timeout_seconds=15.0,
        max_retries=1,
        circuit_failure_threshold=3,
        circuit_recovery_seconds=60.0,
    ),
    "telegram": ServiceConfig(
        max_concurrent=5,
        timeout_seconds=15.0,
        max_retries=1,
        circuit_failure_threshold=5,
        circuit_recovery_seconds=60.0,
    ),
}


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Per-service circuit breaker (safe under asyncio's single-thread model)."""

    def __init__(self, service: str, config: ServiceConfig):
        self.service = service
        self.config = config
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.last_failure_time: float = 0.0
        self.success_count_half_open = 0

    def allow_request(self) -> bool:
        if self.state == CircuitState.CLOSED:
            return True
        if self.state == CircuitState.OPEN:
            elapsed = time.monotonic() - self.last_failure_time
            if elapsed >= self.config.circuit_recovery_seconds:
                self.state = CircuitState.HALF_OPEN
                self.success_count_half_open = 0
                logger.info("circuit.half_open", extra={"service": self.service})
                return True
            return False
        return True

    def record_success(self) -> None:
        if self.state == CircuitState.HALF_OPEN:
            self.success_count_half_open += 1
            if self.success_count_half_open >= 2:
                self.state = CircuitState.CLOSED
                self.failure_count = 0
                logger.info("circuit.closed", extra={"service": self.service})
        else:
            self.failure_count = 0

    def record_failure(self) -> None:
        self.failure_count += 1
        self.last_failure_time = time.monotonic()
        if self.state == CircuitState.HALF_OPEN:
            self.state = CircuitState.OPEN
            logger.warning("circuit.open", extra={"service": self.service, "error": "half_open probe failed"})
        elif self.failure_count >= self.config.circuit_failure_threshold:
            self.state = CircuitState.OPEN
            logger.warning(
                "circuit.open",
                extra={"service": self.service, "attempt": self.failure_count, "circuit_state": "open"},
            )


def _is_retryable(exc: Exception) -> bool:
    """Transient errors are worth retrying; contract violations are not."""
    if isinstance(exc, ExternalTransient):
        return True
    if isinstance(exc, ReeruError):
        return False
    return isinstance(exc, (asyncio.TimeoutError, httpx.TransportError, ConnectionError))


class CircuitOpenError(ExternalTransient):
    """Raised when a circuit breaker is open and the request is rejected."""

    def __init__(self, service: str):
        self.service = service
        super().__init__(f"{service} is temporarily unavailable")


class ServiceGateway:
    """Central gateway for all external service calls."""

    def __init__(
        self,
        config: Optional[Dict[str, ServiceConfig]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._config = dict(config or DEFAULT_GATEWAY_CONFIG)
        self._sleep = sleep
        self._circuits: Dict[str, CircuitBreaker] = {}
        self._semaphores: Dict[str, asyncio.Semaphore] = {}

        for service, cfg in self._config.items():
            self._circuits[service] = CircuitBreaker(service, cfg)
            self._semaphores[service] = asyncio.Semaphore(cfg.max_concurrent)

    async def execute(
        self,
        service: str,
        fn: Callable[..., Coroutine],
        *args: Any,
        **kwargs: Any,
    ) -> Any:
        """
        Execute an async callable through the gateway.

        Applies: circuit breaker → semaphore → timeout → retry.
        """
        cfg = self._config.get(service)
        if not cfg:
            # Unknown service: pass through without protection
            return await fn(*args, **kwargs)

        cb = self._circuits[service]
        sem = self._semaphores[service]

        if not cb.allow_request():
            inc(f"{service}.rejected")
            raise CircuitOpenError(service)

        start = time.monotonic()
        attempt = 0
        while True:
            try:
                async with sem:
                    result = await asyncio.wait_for(fn(*args, **kwargs), timeout=cfg.timeout_seconds)
            except asyncio.TimeoutError as exc:
                cb.record_failure()
                inc(f"{service}.error")
                error: Exception = ExternalTransient(f"{service} request timed out")
                error.__cause__ = exc
            except Exception as exc:
                cb.record_failure()
                inc(f"{service}.error")
                error = exc
            else:
                cb.record_success()
                inc(f"{service}.success")
                observe(f"{service}.duration_ms", (time.monotonic() - start) * 1000)
                return result

            if attempt >= cfg.max_retries or not _is_retryable(error):
                logger.warning(
                    "gateway.failed",
                    extra={"service": service, "attempt": attempt + 1, "error": str(error)[:200]},
                )
                raise error

            backoff = cfg.base_backoff_seconds * (2 ** attempt)
            wait = backoff + random.uniform(0, backoff * 0.5)
            logger.warning(
                "gateway.retry",
                extra={"service": service, "attempt": attempt + 1, "error": str(error)[:200]},
            )
            await self._sleep(wait)
            attempt += 1
            # Re-check circuit before retry
            if not cb.allow_request():
                raise CircuitOpenError(service) from error

    def get_circuit_states(self) -> Dict[str, str]:
        """Current circuit breaker states (for health check)."""
        return {svc: cb.state.value for svc, cb in self._circuits.items()}
