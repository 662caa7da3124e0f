"""Messaging channel: inbound normalization and outbound WHAPI sends."""
from channels.base import (
    ChannelError,
    ProviderError,
    CircuitOpenError,
    CircuitBreaker,
    ChannelMetrics,
    MessagingClient,
    OutboundMessage,
)
from channels.normalizer import normalize_event, logical_reply_id
from channels.whapi_client import WhapiClient, MockMessagingClient, WhapiClientPool

__all__ = [
    "ChannelError", "ProviderError", "CircuitOpenError",
    "CircuitBreaker", "ChannelMetrics", "MessagingClient", "OutboundMessage",
    "normalize_event", "logical_reply_id",
    "WhapiClient", "MockMessagingClient", "WhapiClientPool",
]
