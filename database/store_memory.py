"""
InMemoryStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database)
  - Full interface compatibility with SqlStore
  - Safe under concurrent coroutines on one event loop: methods never
    await between reading and writing shared dicts
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Optional

from database.store_base import BaseStore
from models.schemas import (
    Booking, BookingStatus, CapturedData, ChannelRecord, ConversationState,
    Department, ExecutionLogEntry, SentMessageRecord, Staff, WeeklySlot, Workflow,
)

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryStore(BaseStore):
    """
    Full-featured in-memory store with the same interface as SqlStore.
    Returns deep copies so callers never share mutable state with the store.
    """

    def __init__(self):
        self._workflows: dict[str, Workflow] = {}                           # id → workflow
        self._states: dict[tuple[str, str], ConversationState] = {}         # (workflow, phone) → state
        self._first_message_flags: dict[tuple[str, str], datetime] = {}     # (phone, date) → ts
        self._sent_messages: dict[str, SentMessageRecord] = {}              # provider id → record
        self._executions: list[ExecutionLogEntry] = []
        self._settings: dict[str, Any] = {}
        self._channels: dict[str, ChannelRecord] = {}
        self._captured: list[CapturedData] = []

        self._departments: dict[str, Department] = {}
        self._staff: dict[str, Staff] = {}
        self._weekly_slots: dict[str, WeeklySlot] = {}
        self._bookings: dict[str, Booking] = {}

    # ── Workflows ─────────────────────────────────────────────

    async def save_workflow(self, workflow: Workflow) -> Workflow:
        self._workflows[workflow.id] = workflow.model_copy(deep=True)
        return workflow

    async def get_workflow(self, workflow_id: str) -> Optional[Workflow]:
        wf = self._workflows.get(workflow_id)
        return wf.model_copy(deep=True) if wf else None

    async def get_workflow_by_token(self, account_id: str, webhook_token: str) -> Optional[Workflow]:
        for wf in self._workflows.values():
            if wf.account_id == account_id and wf.webhook_token == webhook_token:
                return wf.model_copy(deep=True)
        return None

    async def list_active_workflows(self, account_id: str) -> list[Workflow]:
        return [
            wf.model_copy(deep=True) for wf in self._workflows.values()
            if wf.account_id == account_id and wf.is_active
        ]

    # ── Conversation state ────────────────────────────────────

    async def get_conversation_state(self, workflow_id: str, phone: str) -> Optional[ConversationState]:
        state = self._states.get((workflow_id, phone))
        return state.model_copy(deep=True) if state else None

    async def save_conversation_state(self, state: ConversationState) -> ConversationState:
        key = (state.workflow_id, state.phone)
        existing = self._states.get(key)
        stored = state.model_copy(deep=True)
        if existing is not None:
            stored.created_at = existing.created_at
        stored.updated_at = _utcnow()
        self._states[key] = stored
        return state

    # ── First-message-of-day flags ────────────────────────────

    async def claim_first_message(self, phone: str, date_local: str, first_message_at: datetime) -> bool:
        key = (phone, date_local)
        if key in self._first_message_flags:
            return False
        self._first_message_flags[key] = first_message_at
        return True

    # ── Sent messages ─────────────────────────────────────────

    async def record_sent_message(self, record: SentMessageRecord) -> None:
        self._sent_messages[record.message_id] = record.model_copy()

    async def find_sent_message(self, message_id: str) -> Optional[SentMessageRecord]:
        record = self._sent_messages.get(message_id)
        return record.model_copy() if record else None

    # ── Execution log ─────────────────────────────────────────

    async def append_execution_log(self, entry: ExecutionLogEntry) -> None:
        self._executions.append(entry.model_copy(deep=True))

    async def list_execution_logs(self, workflow_id: str, limit: int = 50) -> list[ExecutionLogEntry]:
        entries = [e for e in self._executions if e.workflow_id == workflow_id]
        entries.sort(key=lambda e: e.created_at, reverse=True)
        return [e.model_copy(deep=True) for e in entries[:limit]]

    # ── Settings ──────────────────────────────────────────────

    async def get_setting(self, key: str) -> Any:
        return self._settings.get(key)

    async def set_setting(self, key: str, value: Any) -> None:
        self._settings[key] = value

    # ── Channels ──────────────────────────────────────────────

    async def save_channel(self, channel: ChannelRecord) -> ChannelRecord:
        self._channels[channel.id] = channel.model_copy()
        return channel

    async def get_active_channel(self, account_id: str) -> Optional[ChannelRecord]:
        for ch in self._channels.values():
            if ch.account_id == account_id and ch.is_usable:
                return ch.model_copy()
        return None

    # ── Captured data ─────────────────────────────────────────

    async def save_captured_data(self, data: CapturedData) -> None:
        self._captured.append(data.model_copy(deep=True))

    async def list_captured_data(self, workflow_id: str) -> list[CapturedData]:
        return [d.model_copy(deep=True) for d in self._captured if d.workflow_id == workflow_id]

    # ── Departments & staff ───────────────────────────────────

    async def save_department(self, department: Department) -> Department:
        self._departments[department.id] = department.model_copy()
        return department

    async def get_department(self, department_id: str) -> Optional[Department]:
        dept = self._departments.get(department_id)
        return dept.model_copy() if dept else None

    async def list_departments(self, account_id: str, active_only: bool = True) -> list[Department]:
        return [
            d.model_copy() for d in self._departments.values()
            if d.account_id == account_id and (d.is_active or not active_only)
        ]

    async def save_staff(self, staff: Staff) -> Staff:
        self._staff[staff.id] = staff.model_copy()
        return staff

    async def get_staff(self, staff_id: str) -> Optional[Staff]:
        member = self._staff.get(staff_id)
        return member.model_copy() if member else None

    async def list_staff(self, department_id: str, active_only: bool = True) -> list[Staff]:
        return [
            s.model_copy() for s in self._staff.values()
            if s.department_id == department_id and (s.is_active or not active_only)
        ]

    # ── Weekly slots ──────────────────────────────────────────

    async def save_weekly_slot(self, slot: WeeklySlot) -> WeeklySlot:
        self._weekly_slots[slot.id] = slot.model_copy()
        return slot

    async def list_weekly_slots(self, staff_id: str, active_only: bool = True) -> list[WeeklySlot]:
        slots = [
            s.model_copy() for s in self._weekly_slots.values()
            if s.staff_id == staff_id and (s.is_active or not active_only)
        ]
        slots.sort(key=lambda s: (s.day_of_week, s.start_time))
        return slots

    # ── Bookings ──────────────────────────────────────────────

    async def create_booking(self, booking: Booking) -> Booking:
        self._bookings[booking.id] = booking.model_copy(deep=True)
        logger.info("booking_created", booking_id=booking.id, staff_id=booking.staff_id,
                    slot_date=booking.slot_date, start_time=booking.start_time)
        return booking

    async def get_booking(self, booking_id: str) -> Optional[Booking]:
        booking = self._bookings.get(booking_id)
        return booking.model_copy(deep=True) if booking else None

    async def update_booking(self, booking_id: str, **fields) -> Optional[Booking]:
        booking = self._bookings.get(booking_id)
        if booking is None:
            return None
        updated = booking.model_copy(update=fields, deep=True)
        self._bookings[booking_id] = updated
        return updated.model_copy(deep=True)

    async def list_customer_bookings(
        self, account_id: str, phone: str, statuses: Optional[list[BookingStatus]] = None,
    ) -> list[Booking]:
        result = [
            b.model_copy(deep=True) for b in self._bookings.values()
            if b.account_id == account_id and b.customer_phone == phone
            and (statuses is None or b.status in statuses)
        ]
        result.sort(key=lambda b: (b.slot_date, b.start_time))
        return result

    async def count_bookings_at(
        self, staff_id: str, slot_date: str, start_time: str,
        excluding_booking_id: Optional[str] = None,
    ) -> int:
        return sum(
            1 for b in self._bookings.values()
            if b.staff_id == staff_id and b.slot_date == slot_date
            and b.start_time == start_time and b.status == BookingStatus.CONFIRMED
            and b.id != excluding_booking_id
        )
