"""
WHAPI gateway client — sends WhatsApp messages through gate.whapi.cloud.

One client per channel token, pooled so the circuit breaker and the
underlying httpx connection pool survive across webhook deliveries.
Sends are retried only when the connection could not be established,
so a request the gateway may have accepted is never sent twice.
"""
from __future__ import annotations

import uuid
import structlog
from typing import Any, Optional

import httpx
from tenacity import (
    retry, retry_if_exception_type, stop_after_attempt, wait_exponential,
)

from channels.base import MessagingClient, OutboundMessage, ProviderError
from config.settings import WhapiConfig, get_settings

logger = structlog.get_logger()


def _auth_header(token: str) -> str:
    return token if token.startswith("Bearer ") else f"Bearer {token}"


def _error_message(response: httpx.Response) -> str:
    """Provider errors arrive in several shapes; take the most specific one."""
    try:
        data = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if error:
            return str(error)
        if data.get("message"):
            return str(data["message"])
    return response.text or response.reason_phrase


def _message_id(data: Any) -> str:
    if isinstance(data, dict):
        message = data.get("message")
        if isinstance(message, dict) and message.get("id"):
            return str(message["id"])
        if data.get("id"):
            return str(data["id"])
        if data.get("message_id"):
            return str(data["message_id"])
    return ""


class WhapiClient(MessagingClient):
    """Messaging client for one WHAPI channel token."""

    def __init__(self, token: str, config: WhapiConfig = None, transport: httpx.AsyncBaseTransport = None):
        super().__init__()
        self.config = config or get_settings().whapi
        self._token = token
        self._transport = transport
        self.client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            self.client = httpx.AsyncClient(
                base_url=self.config.base_url,
                headers={
                    "Authorization": _auth_header(self._token),
                    "Content-Type": "application/json",
                    "Accept": "application/json",
                },
                timeout=self.config.timeout,
                transport=self._transport,
            )
        return self.client

    @retry(
        retry=retry_if_exception_type((httpx.ConnectError, httpx.ConnectTimeout)),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, max=4),
        reraise=True,
    )
    async def _post(self, path: str, payload: dict[str, Any]) -> httpx.Response:
        client = await self._get_client()
        return await client.post(path, json=payload)

    async def _deliver(self, message: OutboundMessage) -> str:
        try:
            response = await self._post(message.endpoint, message.payload)
        except httpx.HTTPError as e:
            raise ProviderError(f"WHAPI request failed: {e}", self.channel, retryable=True) from e

        if response.status_code >= 400:
            raise ProviderError(
                f"WHAPI {response.status_code}: {_error_message(response)}",
                self.channel,
                status_code=response.status_code,
                retryable=response.status_code >= 500,
            )
        try:
            data = response.json()
        except ValueError:
            data = {}
        if isinstance(data, dict) and data.get("sent") is False:
            raise ProviderError(f"WHAPI did not send: {_error_message(response)}", self.channel)
        return _message_id(data)

    async def assign_label(self, label_id: str, chat_id: str) -> bool:
        if not label_id or not chat_id:
            return False
        try:
            response = await self._post(f"/labels/{label_id}/{chat_id}", {})
        except httpx.HTTPError as e:
            logger.warning("whapi_label_failed", label_id=label_id, chat_id=chat_id, error=str(e))
            return False
        if response.status_code >= 400:
            logger.warning("whapi_label_failed", label_id=label_id, chat_id=chat_id,
                           status=response.status_code, error=_error_message(response))
            return False
        return True

    async def aclose(self) -> None:
        if self.client:
            await self.client.aclose()


class MockMessagingClient(MessagingClient):
    """
    Records sends instead of calling the gateway.
    Used for local development (whapi.mock: true) and tests.
    """

    def __init__(self):
        super().__init__()
        self.sent: list[OutboundMessage] = []
        self.labels: list[tuple[str, str]] = []
        self.fail_with: Optional[ProviderError] = None

    async def _deliver(self, message: OutboundMessage) -> str:
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append(message)
        message_id = f"mock.{uuid.uuid4().hex[:20]}"
        logger.info("whapi_mock_sent", endpoint=message.endpoint, to=message.to, message_id=message_id)
        return message_id

    async def assign_label(self, label_id: str, chat_id: str) -> bool:
        self.labels.append((label_id, chat_id))
        return True

    def texts(self) -> list[str]:
        return [m.payload.get("body", "") for m in self.sent if m.endpoint == "/messages/text"]


class WhapiClientPool:
    """Hands out one messaging client per channel token."""

    def __init__(self, config: WhapiConfig = None):
        self.config = config or get_settings().whapi
        self._clients: dict[str, MessagingClient] = {}

    def get(self, token: str) -> MessagingClient:
        client = self._clients.get(token)
        if client is None:
            client = MockMessagingClient() if self.config.mock else WhapiClient(token, self.config)
            self._clients[token] = client
        return client

    async def health_check(self) -> dict[str, Any]:
        return {
            "clients": len(self._clients),
            "mock": self.config.mock,
            "open_circuits": sum(1 for c in self._clients.values() if c._breaker.is_open),
        }

    async def aclose(self) -> None:
        for client in self._clients.values():
            await client.aclose()
        self._clients.clear()
