"""
Conversation Tracker — per-(workflow, phone) state with serialized updates.

Every webhook delivery that reads and then writes a conversation's state
does so inside `tracker.hold(workflow_id, phone)`, so two deliveries for
the same participant of the same workflow never interleave their
read-modify-write. Different keys proceed concurrently.

Usage:
    async with tracker.hold(workflow.id, phone):
        state = await tracker.load(workflow.id, phone)
        state.current_node_id = "n2"
        await tracker.save(state)
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Optional
from zoneinfo import ZoneInfo

from database.store_base import BaseWorkflowStore
from models.schemas import BookingState, CaptureState, ConversationState
from utils.locks import KeyedLock

logger = structlog.get_logger()


class ConversationTracker:
    """Loads, creates and persists ConversationState rows."""

    def __init__(self, store: BaseWorkflowStore, timezone: str = "Asia/Bahrain"):
        self.store = store
        self.zone = ZoneInfo(timezone)
        self._locks = KeyedLock()

    @asynccontextmanager
    async def hold(self, workflow_id: str, phone: str) -> AsyncIterator[None]:
        async with self._locks.hold((workflow_id, phone)):
            yield

    async def load(self, workflow_id: str, phone: str) -> ConversationState:
        """Existing state, or a fresh unsaved one for a first interaction."""
        state = await self.store.get_conversation_state(workflow_id, phone)
        if state is None:
            state = ConversationState(workflow_id=workflow_id, phone=phone)
            logger.debug("conversation_state_new", workflow_id=workflow_id, phone=phone)
        return state

    async def save(self, state: ConversationState) -> ConversationState:
        return await self.store.save_conversation_state(state)

    def local_date(self, ts: datetime) -> str:
        """Calendar date of ts in the reference zone (YYYY-MM-DD)."""
        return ts.astimezone(self.zone).date().isoformat()

    def touch(self, state: ConversationState, ts: datetime) -> None:
        state.last_message_at = ts
        state.last_message_date = self.local_date(ts)

    # ── Sub-state replacement ─────────────────────────────────

    @staticmethod
    def replace_booking_state(state: ConversationState, booking: Optional[BookingState]) -> None:
        state.context = state.context.model_copy(update={"booking_state": booking})

    @staticmethod
    def replace_capture_state(state: ConversationState, capture: Optional[CaptureState]) -> None:
        state.context = state.context.model_copy(update={"capture_state": capture})
