"""
Abstract stores — Interfaces for all storage backends.

Implementations:
  - SqlStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryStore (dict-based, single-process, no persistence)

Both backends implement the workflow-side interface (workflows,
conversation state, first-message flags, sent-message records, execution
log, settings, channels, captured data) and the booking data interface.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional

from models.schemas import (
    Booking, BookingStatus, CapturedData, ChannelRecord, ConversationState,
    Department, ExecutionLogEntry, SentMessageRecord, SlotAvailability, Staff,
    WeeklySlot, Workflow,
)


class PersistenceError(Exception):
    """A storage backend failed; the current unit of work cannot be trusted."""


class BaseWorkflowStore(ABC):
    """Interface that all workflow store backends must implement."""

    # ── Workflows ─────────────────────────────────────────────

    @abstractmethod
    async def save_workflow(self, workflow: Workflow) -> Workflow:
        ...

    @abstractmethod
    async def get_workflow(self, workflow_id: str) -> Optional[Workflow]:
        ...

    @abstractmethod
    async def get_workflow_by_token(self, account_id: str, webhook_token: str) -> Optional[Workflow]:
        ...

    @abstractmethod
    async def list_active_workflows(self, account_id: str) -> list[Workflow]:
        ...

    # ── Conversation state ────────────────────────────────────

    @abstractmethod
    async def get_conversation_state(self, workflow_id: str, phone: str) -> Optional[ConversationState]:
        ...

    @abstractmethod
    async def save_conversation_state(self, state: ConversationState) -> ConversationState:
        """Insert or replace the state for (workflow_id, phone)."""
        ...

    # ── First-message-of-day flags ────────────────────────────

    @abstractmethod
    async def claim_first_message(self, phone: str, date_local: str, first_message_at: datetime) -> bool:
        """Atomically claim (phone, date). True only for the first caller."""
        ...

    # ── Sent messages ─────────────────────────────────────────

    @abstractmethod
    async def record_sent_message(self, record: SentMessageRecord) -> None:
        ...

    @abstractmethod
    async def find_sent_message(self, message_id: str) -> Optional[SentMessageRecord]:
        ...

    # ── Execution log ─────────────────────────────────────────

    @abstractmethod
    async def append_execution_log(self, entry: ExecutionLogEntry) -> None:
        ...

    @abstractmethod
    async def list_execution_logs(self, workflow_id: str, limit: int = 50) -> list[ExecutionLogEntry]:
        """Most recent first."""
        ...

    # ── Settings ──────────────────────────────────────────────

    @abstractmethod
    async def get_setting(self, key: str) -> Any:
        ...

    @abstractmethod
    async def set_setting(self, key: str, value: Any) -> None:
        ...

    # ── Channels ──────────────────────────────────────────────

    @abstractmethod
    async def save_channel(self, channel: ChannelRecord) -> ChannelRecord:
        ...

    @abstractmethod
    async def get_active_channel(self, account_id: str) -> Optional[ChannelRecord]:
        """First channel for the account that is active, authorized and has a token."""
        ...

    # ── Captured data ─────────────────────────────────────────

    @abstractmethod
    async def save_captured_data(self, data: CapturedData) -> None:
        ...

    @abstractmethod
    async def list_captured_data(self, workflow_id: str) -> list[CapturedData]:
        ...


class BaseBookingStore(ABC):
    """Booking data: departments, staff, weekly slots and bookings."""

    # ── Departments & staff ───────────────────────────────────

    @abstractmethod
    async def save_department(self, department: Department) -> Department:
        ...

    @abstractmethod
    async def get_department(self, department_id: str) -> Optional[Department]:
        ...

    @abstractmethod
    async def list_departments(self, account_id: str, active_only: bool = True) -> list[Department]:
        ...

    @abstractmethod
    async def save_staff(self, staff: Staff) -> Staff:
        ...

    @abstractmethod
    async def get_staff(self, staff_id: str) -> Optional[Staff]:
        ...

    @abstractmethod
    async def list_staff(self, department_id: str, active_only: bool = True) -> list[Staff]:
        ...

    # ── Weekly slots ──────────────────────────────────────────

    @abstractmethod
    async def save_weekly_slot(self, slot: WeeklySlot) -> WeeklySlot:
        ...

    @abstractmethod
    async def list_weekly_slots(self, staff_id: str, active_only: bool = True) -> list[WeeklySlot]:
        ...

    # ── Bookings ──────────────────────────────────────────────

    @abstractmethod
    async def create_booking(self, booking: Booking) -> Booking:
        ...

    @abstractmethod
    async def get_booking(self, booking_id: str) -> Optional[Booking]:
        ...

    @abstractmethod
    async def update_booking(self, booking_id: str, **fields) -> Optional[Booking]:
        ...

    @abstractmethod
    async def list_customer_bookings(
        self, account_id: str, phone: str, statuses: Optional[list[BookingStatus]] = None,
    ) -> list[Booking]:
        """Bookings for a customer ordered by date and time."""
        ...

    @abstractmethod
    async def count_bookings_at(
        self, staff_id: str, slot_date: str, start_time: str,
        excluding_booking_id: Optional[str] = None,
    ) -> int:
        """Confirmed bookings occupying a staff member's slot."""
        ...

    async def check_slot_availability(
        self, staff_id: str, slot_date: str, start_time: str,
        excluding_booking_id: Optional[str] = None,
    ) -> SlotAvailability:
        """Capacity comes from the weekly slot covering the requested time."""
        from booking.slots import find_covering_slot

        slots = await self.list_weekly_slots(staff_id)
        covering = find_covering_slot(slots, slot_date, start_time)
        if covering is None:
            return SlotAvailability(available=False, existing_count=0, capacity=0)
        existing = await self.count_bookings_at(
            staff_id, slot_date, start_time, excluding_booking_id=excluding_booking_id,
        )
        return SlotAvailability(
            available=existing < covering.capacity,
            existing_count=existing,
            capacity=covering.capacity,
        )


class BaseStore(BaseWorkflowStore, BaseBookingStore, ABC):
    """Full store: workflow engine data plus booking data."""
