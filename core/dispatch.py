"""
Message dispatcher — sends through the account's channel and keeps the
bookkeeping every send needs (response log, sent-message records).
"""
from __future__ import annotations

import structlog
from typing import Optional, Protocol

from channels.base import MessagingClient, OutboundMessage
from core.errors import NoChannelError
from core.run import ExecutionRun
from database.store_base import BaseWorkflowStore
from models.schemas import SentMessageRecord

logger = structlog.get_logger()


class ClientProvider(Protocol):
    def get(self, token: str) -> MessagingClient:
        ...


class MessageDispatcher:

    def __init__(self, store: BaseWorkflowStore, clients: ClientProvider):
        self.store = store
        self.clients = clients

    async def client_for_account(self, account_id: str) -> MessagingClient:
        channel = await self.store.get_active_channel(account_id)
        if channel is None:
            raise NoChannelError(account_id)
        return self.clients.get(channel.token)

    async def client_for(self, run: ExecutionRun) -> MessagingClient:
        if run.client is None:
            run.client = await self.client_for_account(run.account_id)
        return run.client

    async def send(self, run: ExecutionRun, message: OutboundMessage, node_id: str = "") -> str:
        """Send, log the response and, for interactive messages, record ownership."""
        client = await self.client_for(run)
        message_id = await client.send(message)
        run.responses.append({
            "nodeId": node_id,
            "kind": message.kind,
            "endpoint": message.endpoint,
            "to": message.to,
            "messageId": message_id,
        })
        if message.interactive and message_id:
            await self._record_sent(run, message_id, message.kind)
        return message_id

    async def _record_sent(self, run: ExecutionRun, message_id: str, kind: str) -> None:
        try:
            await self.store.record_sent_message(SentMessageRecord(
                workflow_id=run.workflow.id, message_id=message_id,
                phone=run.phone, message_kind=kind,
            ))
        except Exception as e:
            logger.warning("sent_message_record_failed", workflow_id=run.workflow.id,
                           message_id=message_id, error=str(e))

    async def assign_label(self, account_id: str, label_id: str, chat_id: str) -> bool:
        """Best effort; failures are logged only."""
        if not label_id:
            return False
        try:
            client = await self.client_for_account(account_id)
        except NoChannelError:
            logger.info("label_skipped_no_channel", account_id=account_id)
            return False
        applied = await client.assign_label(label_id, chat_id)
        logger.info("label_assigned" if applied else "label_not_assigned",
                    label_id=label_id, chat_id=chat_id)
        return applied
