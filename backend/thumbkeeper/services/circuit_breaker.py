"""
Circuit-Breaker Gateway for the blob store read path.

The emergency serving routes must answer quickly even when the blob store
is struggling. Reads go through a breaker:

    closed     calls pass; consecutive failures are counted, reaching the
               threshold opens the breaker
    open       calls fail immediately without touching the store until the
               cooldown since the last failure has elapsed
    half_open  exactly one probe call is let through; success closes the
               breaker, failure re-opens it. Other callers are rejected
               while the probe is in flight

Every allowed call runs under a hard per-call timeout; a timeout counts as
a failure. A "not found" answer means the store is healthy and counts as
a success.

The breaker is process-local and never persisted; each instance carries
its own lock so tests can build isolated breakers with a fake clock.
"""
import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional

from thumbkeeper.core.config import settings
from thumbkeeper.core.logging_config import set_breaker_state
from thumbkeeper.core.metrics import record_breaker_short_circuit, record_breaker_transition
from thumbkeeper.services.blob_store import BlobNotFoundError, BlobStore, BlobStoreError, get_blob_store

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitOpenError(Exception):
    """Call rejected without contacting the store."""

    def __init__(self, name: str, retry_after: float):
        self.name = name
        self.retry_after = retry_after
        super().__init__(f"Circuit '{name}' is open; retry after {retry_after:.1f}s")


@dataclass
class CircuitBreakerState:
    """Point-in-time view of a breaker."""

    name: str
    state: CircuitState
    consecutive_failures: int
    last_failure_timestamp: Optional[datetime]
    failure_threshold: int
    cooldown_seconds: float
    retry_after: float


class CircuitBreaker:
    """
    Failure-counting breaker with a single half-open probe.

    Args:
        name: Label used in logs and metrics
        failure_threshold: Consecutive failures that open the breaker
        cooldown_seconds: Time after the last failure before a probe is allowed
        clock: Monotonic time source (injectable for tests)
    """

    def __init__(
        self,
        name: str = "blob_read",
        failure_threshold: Optional[int] = None,
        cooldown_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold or settings.BREAKER_FAILURE_THRESHOLD
        self.cooldown_seconds = (
            cooldown_seconds if cooldown_seconds is not None else settings.BREAKER_COOLDOWN_SECONDS
        )
        self._clock = clock
        self._lock = threading.Lock()

        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._last_failure_at: Optional[float] = None
        self._last_failure_wall: Optional[datetime] = None
        self._probe_in_flight = False

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    @property
    def consecutive_failures(self) -> int:
        with self._lock:
            return self._consecutive_failures

    def _transition(self, new_state: CircuitState) -> None:
        # Caller holds the lock
        if new_state == self._state:
            return
        old_state = self._state
        self._state = new_state
        record_breaker_transition(self.name, new_state.value)
        log = logger.warning if new_state == CircuitState.OPEN else logger.info
        log(
            f"Circuit '{self.name}' {old_state.value} -> {new_state.value}",
            extra={
                "event_type": "circuit_breaker_transition",
                "breaker": self.name,
                "from_state": old_state.value,
                "to_state": new_state.value,
                "consecutive_failures": self._consecutive_failures,
            }
        )

    def _remaining_cooldown(self) -> float:
        if self._last_failure_at is None:
            return 0.0
        return max(0.0, self.cooldown_seconds - (self._clock() - self._last_failure_at))

    def before_call(self) -> None:
        """
        Admit or reject a call.

        Raises:
            CircuitOpenError: The breaker is open and cooling down, or a
                half-open probe is already in flight
        """
        with self._lock:
            if self._state == CircuitState.CLOSED:
                return

            if self._state == CircuitState.OPEN:
                remaining = self._remaining_cooldown()
                if remaining > 0:
                    record_breaker_short_circuit(self.name)
                    raise CircuitOpenError(self.name, remaining)
                self._transition(CircuitState.HALF_OPEN)

            if self._probe_in_flight:
                record_breaker_short_circuit(self.name)
                raise CircuitOpenError(self.name, self.cooldown_seconds)
            self._probe_in_flight = True

    def record_success(self) -> None:
        with self._lock:
            self._consecutive_failures = 0
            self._probe_in_flight = False
            self._transition(CircuitState.CLOSED)

    def record_failure(self) -> None:
        with self._lock:
            self._consecutive_failures += 1
            self._last_failure_at = self._clock()
            self._last_failure_wall = datetime.now(timezone.utc)
            self._probe_in_flight = False

            if self._state == CircuitState.HALF_OPEN:
                self._transition(CircuitState.OPEN)
            elif self._consecutive_failures >= self.failure_threshold:
                self._transition(CircuitState.OPEN)

    def release(self) -> None:
        """Give up an admitted call without an outcome (e.g. cancellation)."""
        with self._lock:
            self._probe_in_flight = False

    def snapshot(self) -> CircuitBreakerState:
        with self._lock:
            retry_after = self._remaining_cooldown() if self._state == CircuitState.OPEN else 0.0
            return CircuitBreakerState(
                name=self.name,
                state=self._state,
                consecutive_failures=self._consecutive_failures,
                last_failure_timestamp=self._last_failure_wall,
                failure_threshold=self.failure_threshold,
                cooldown_seconds=self.cooldown_seconds,
                retry_after=retry_after,
            )


class CircuitBreakerGateway:
    """
    Blob store reads guarded by a breaker and a hard per-call timeout.

    Exposes the same async `get(key)` as a BlobStore so the key resolver
    can use either interchangeably.
    """

    def __init__(
        self,
        store: BlobStore,
        breaker: CircuitBreaker,
        call_timeout: Optional[float] = None,
    ):
        self.store = store
        self.breaker = breaker
        self.call_timeout = call_timeout or settings.BREAKER_CALL_TIMEOUT_SECONDS

    async def get(self, key: str) -> bytes:
        """
        Read a key through the breaker.

        Raises:
            CircuitOpenError: Rejected without contacting the store
            BlobNotFoundError: Key does not exist (counted as a success)
            BlobStoreError: Store failure or timeout (counted as a failure)
        """
        try:
            return await self._guarded_get(key)
        finally:
            set_breaker_state(self.breaker.state.value)

    async def _guarded_get(self, key: str) -> bytes:
        self.breaker.before_call()
        try:
            data = await asyncio.wait_for(self.store.get(key), timeout=self.call_timeout)
        except BlobNotFoundError:
            self.breaker.record_success()
            raise
        except asyncio.TimeoutError as e:
            self.breaker.record_failure()
            logger.warning(
                f"Blob read timed out after {self.call_timeout}s: {key}",
                extra={
                    "event_type": "blob_read_timeout",
                    "key": key,
                    "timeout_seconds": self.call_timeout,
                }
            )
            raise BlobStoreError(f"Read of {key} timed out after {self.call_timeout}s") from e
        except BlobStoreError:
            self.breaker.record_failure()
            raise
        except BaseException:
            self.breaker.release()
            raise

        self.breaker.record_success()
        return data


# Global instances
_circuit_breaker: Optional[CircuitBreaker] = None
_storage_gateway: Optional[CircuitBreakerGateway] = None


def get_circuit_breaker() -> CircuitBreaker:
    """Get the process-wide breaker guarding blob reads."""
    global _circuit_breaker
    if _circuit_breaker is None:
        _circuit_breaker = CircuitBreaker()
    return _circuit_breaker


def get_storage_gateway() -> CircuitBreakerGateway:
    """Get the breaker-protected gateway over the configured blob store."""
    global _storage_gateway
    if _storage_gateway is None:
        _storage_gateway = CircuitBreakerGateway(get_blob_store(), get_circuit_breaker())
    return _storage_gateway


def reset_circuit_breaker() -> None:
    """Reset the global breaker and gateway (for testing)."""
    global _circuit_breaker, _storage_gateway
    _circuit_breaker = None
    _storage_gateway = None
