"""
Ownership disambiguation for interactive replies.

Several workflows of one account can share a phone number's chat. A
reply quoting a message that another workflow sent belongs to that
workflow; this workflow must leave it alone.
"""
from __future__ import annotations

import structlog
from enum import Enum
from typing import Optional

from database.store_base import BaseWorkflowStore

logger = structlog.get_logger()


class Ownership(str, Enum):
    OWNED = "owned"            # quoted message was sent by this workflow
    FOREIGN = "foreign"        # quoted message was sent by another workflow
    UNTRACKED = "untracked"    # nothing quoted, or the message is not on record


class OwnershipResolver:
    """Read-only lookup of SentMessageRecords; replays give the same answer."""

    def __init__(self, store: BaseWorkflowStore):
        self.store = store

    async def check(self, workflow_id: str, quoted_message_id: Optional[str]) -> Ownership:
        if not quoted_message_id:
            return Ownership.UNTRACKED
        record = await self.store.find_sent_message(quoted_message_id)
        if record is None:
            return Ownership.UNTRACKED
        if record.workflow_id == workflow_id:
            return Ownership.OWNED
        logger.info("reply_owned_elsewhere", workflow_id=workflow_id,
                    owner_workflow_id=record.workflow_id, quoted_message_id=quoted_message_id)
        return Ownership.FOREIGN
