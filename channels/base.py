"""
Messaging clients — base infrastructure for outbound provider sends.

Provides:
- ChannelError: structured error hierarchy
- CircuitBreaker: failure-counting breaker with half-open probe
- ChannelMetrics: per-client send/fail/latency tracking
- OutboundMessage: provider endpoint + JSON payload
- MessagingClient: abstract base wrapping every send with breaker and metrics
"""
from __future__ import annotations

import abc
import time
import structlog
from dataclasses import dataclass, field
from typing import Any, Optional

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class ChannelError(Exception):
    """Base exception for all channel operations."""

    def __init__(self, message: str, channel: str = "", retryable: bool = False):
        self.channel = channel
        self.retryable = retryable
        super().__init__(message)


class ProviderError(ChannelError):
    """The messaging provider rejected or failed a send."""

    def __init__(self, message: str, channel: str = "", status_code: Optional[int] = None,
                 retryable: bool = False):
        self.status_code = status_code
        super().__init__(message, channel, retryable=retryable)


class CircuitOpenError(ChannelError):
    def __init__(self, channel: str = ""):
        super().__init__(f"Circuit breaker open for {channel}", channel, retryable=True)


# ══════════════════════════════════════════════════════════════
#  CIRCUIT BREAKER
# ══════════════════════════════════════════════════════════════

class CircuitBreaker:
    """
    Synchronous circuit breaker with failure counting.

    closed → open (after threshold failures) → half_open (after timeout) →
    closed (on success) or open (on failure).
    """

    def __init__(self, failure_threshold: int = 5, recovery_timeout: float = 60.0):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._state = "closed"
        self._failure_count = 0
        self._opened_at: float = 0.0
        self._total_failures = 0
        self._total_successes = 0

    @property
    def state(self) -> str:
        if self._state == "open":
            if time.monotonic() - self._opened_at >= self.recovery_timeout:
                return "half_open"
        return self._state

    @property
    def is_open(self) -> bool:
        return self.state == "open"

    def record_failure(self):
        self._total_failures += 1
        self._failure_count += 1
        if self.state == "half_open" or self._failure_count >= self.failure_threshold:
            self._open()

    def record_success(self):
        self._total_successes += 1
        if self.state == "half_open":
            self._close()
        else:
            self._failure_count = 0

    def _open(self):
        self._state = "open"
        self._opened_at = time.monotonic()
        logger.warning("circuit_opened", failures=self._failure_count)

    def _close(self):
        self._state = "closed"
        self._failure_count = 0

    def reset(self):
        self._close()

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "state": self.state,
            "failure_count": self._failure_count,
            "total_failures": self._total_failures,
            "total_successes": self._total_successes,
        }


# ══════════════════════════════════════════════════════════════
#  METRICS
# ══════════════════════════════════════════════════════════════

class ChannelMetrics:
    """Tracks send, failure and latency metrics for one client."""

    def __init__(self, channel: str):
        self.channel = channel
        self.messages_sent: int = 0
        self.messages_failed: int = 0
        self._latencies: list[float] = []
        self._errors: list[str] = []

    def record_send(self, latency_ms: float = 0.0):
        self.messages_sent += 1
        if latency_ms > 0:
            self._latencies.append(latency_ms)
            del self._latencies[:-500]

    def record_failure(self, error: str = ""):
        self.messages_failed += 1
        if error:
            self._errors.append(error)
            del self._errors[:-50]

    @property
    def avg_latency_ms(self) -> float:
        return sum(self._latencies) / len(self._latencies) if self._latencies else 0.0

    @property
    def failure_rate(self) -> float:
        total = self.messages_sent + self.messages_failed
        return self.messages_failed / total if total > 0 else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "channel": self.channel,
            "sent": self.messages_sent,
            "failed": self.messages_failed,
            "avg_latency_ms": round(self.avg_latency_ms, 1),
            "failure_rate": round(self.failure_rate, 4),
            "recent_errors": self._errors[-10:],
        }


# ══════════════════════════════════════════════════════════════
#  OUTBOUND MESSAGE
# ══════════════════════════════════════════════════════════════

@dataclass
class OutboundMessage:
    """One provider call: POST {endpoint} with {payload}."""
    endpoint: str
    payload: dict[str, Any]
    kind: str = "text"
    interactive: bool = False
    meta: dict[str, Any] = field(default_factory=dict)

    @property
    def to(self) -> str:
        return str(self.payload.get("to", ""))


# ══════════════════════════════════════════════════════════════
#  MESSAGING CLIENT
# ══════════════════════════════════════════════════════════════

class MessagingClient(abc.ABC):
    """
    Base class for provider clients.

    Subclasses implement _deliver and assign_label. The base class wraps
    every send with the circuit breaker and metrics and always either
    returns the provider message id or raises a ChannelError.
    """

    channel = "whatsapp"

    def __init__(self):
        self._breaker = CircuitBreaker()
        self._metrics = ChannelMetrics(self.channel)

    # ── Abstract hooks ────────────────────────────────────────

    @abc.abstractmethod
    async def _deliver(self, message: OutboundMessage) -> str:
        """Perform the provider call and return its message id."""
        ...

    @abc.abstractmethod
    async def assign_label(self, label_id: str, chat_id: str) -> bool:
        """Best effort: never raises, returns whether the label was applied."""
        ...

    # ── Public send ───────────────────────────────────────────

    async def send(self, message: OutboundMessage) -> str:
        if self._breaker.is_open:
            self._metrics.record_failure("circuit_open")
            raise CircuitOpenError(self.channel)

        start = time.monotonic()
        try:
            message_id = await self._deliver(message)
        except ChannelError as e:
            self._breaker.record_failure()
            self._metrics.record_failure(str(e))
            logger.warning("message_send_failed", endpoint=message.endpoint,
                           to=message.to, error=str(e))
            raise

        self._breaker.record_success()
        self._metrics.record_send((time.monotonic() - start) * 1000)
        logger.info("message_sent", endpoint=message.endpoint, to=message.to,
                    kind=message.kind, message_id=message_id)
        return message_id

    async def send_text(self, to: str, body: str) -> str:
        from channels.payloads import text_message
        return await self.send(text_message(to, body))

    async def send_interactive(self, payload: dict[str, Any]) -> str:
        return await self.send(OutboundMessage(
            "/messages/interactive", payload, kind=payload.get("type", "button"), interactive=True,
        ))

    async def send_carousel(self, payload: dict[str, Any]) -> str:
        return await self.send(OutboundMessage(
            "/messages/carousel", payload, kind="carousel", interactive=True,
        ))

    async def send_media(self, to: str, media_url: str, media_type: str = "image", caption: str = "") -> str:
        from channels.payloads import media_message
        return await self.send(media_message(to, media_url, media_type, caption))

    async def send_location(self, to: str, latitude: float, longitude: float,
                            name: str = "", address: str = "") -> str:
        from channels.payloads import location_message
        return await self.send(location_message(to, latitude, longitude, name, address))

    # ── Health ────────────────────────────────────────────────

    async def health_check(self) -> dict[str, Any]:
        return {
            "channel": self.channel,
            "circuit_breaker": self._breaker.stats,
            "metrics": self._metrics.to_dict(),
        }

    async def aclose(self) -> None:
        pass
