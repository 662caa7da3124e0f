"""
SqlStore — Portable SQL queries for PostgreSQL, MySQL, SQLite.

The first-message claim and the conversation-state upsert lean on unique
constraints (IntegrityError on conflict) instead of read-then-write checks.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import and_, func, select
from sqlalchemy.exc import IntegrityError

from database.models import (
    BookingRow, CapturedDataRow, ChannelRow, ConversationStateRow, DepartmentRow,
    FirstMessageFlagRow, SentMessageRow, SettingRow, StaffRow, WeeklySlotRow,
    WorkflowExecutionRow, WorkflowRow,
)
from database.session import get_session
from database.store_base import BaseStore, PersistenceError
from models.schemas import (
    Booking, BookingStatus, CapturedClick, CapturedData, ChannelRecord,
    ConversationContext, ConversationState, Department, ExecutionLogEntry,
    ExecutionStatus, MessageKind, SentMessageRecord, Staff, WeeklySlot, Workflow,
)

logger = structlog.get_logger()


def _aware(ts: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo; everything stored is UTC."""
    if ts is not None and ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts


class SqlStore(BaseStore):
    """
    Persistent store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.
    """

    # ── Workflows ─────────────────────────────────────────────

    async def save_workflow(self, workflow: Workflow) -> Workflow:
        async with get_session() as db:
            row = await db.get(WorkflowRow, workflow.id)
            if row is None:
                row = WorkflowRow(id=workflow.id, created_at=workflow.created_at)
                db.add(row)
            row.account_id = workflow.account_id
            row.name = workflow.name
            row.webhook_token = workflow.webhook_token
            row.is_active = workflow.is_active
            row.entry_node_id = workflow.entry_node_id
            row.definition = workflow.definition
        return workflow

    async def get_workflow(self, workflow_id: str) -> Optional[Workflow]:
        async with get_session() as db:
            row = await db.get(WorkflowRow, workflow_id)
            return self._row_to_workflow(row) if row else None

    async def get_workflow_by_token(self, account_id: str, webhook_token: str) -> Optional[Workflow]:
        async with get_session() as db:
            stmt = select(WorkflowRow).where(and_(
                WorkflowRow.account_id == account_id,
                WorkflowRow.webhook_token == webhook_token,
            ))
            row = (await db.execute(stmt)).scalar_one_or_none()
            return self._row_to_workflow(row) if row else None

    async def list_active_workflows(self, account_id: str) -> list[Workflow]:
        async with get_session() as db:
            stmt = (
                select(WorkflowRow)
                .where(and_(WorkflowRow.account_id == account_id, WorkflowRow.is_active.is_(True)))
                .order_by(WorkflowRow.created_at)
            )
            result = await db.execute(stmt)
            return [self._row_to_workflow(r) for r in result.scalars()]

    # ── Conversation state ────────────────────────────────────

    async def get_conversation_state(self, workflow_id: str, phone: str) -> Optional[ConversationState]:
        async with get_session() as db:
            row = await self._state_row(db, workflow_id, phone)
            return self._row_to_state(row) if row else None

    async def save_conversation_state(self, state: ConversationState) -> ConversationState:
        try:
            await self._write_state(state)
        except PersistenceError as e:
            if not isinstance(e.__cause__, IntegrityError):
                raise
            # Lost an insert race for the same key; the row exists now.
            await self._write_state(state)
        return state

    async def _write_state(self, state: ConversationState) -> None:
        async with get_session() as db:
            row = await self._state_row(db, state.workflow_id, state.phone)
            if row is None:
                row = ConversationStateRow(
                    workflow_id=state.workflow_id, phone=state.phone,
                    created_at=state.created_at,
                )
                db.add(row)
            row.current_node_id = state.current_node_id
            row.context = state.context.to_storage()
            row.last_message_at = state.last_message_at
            row.last_message_date = state.last_message_date
            row.updated_at = datetime.now(timezone.utc)

    @staticmethod
    async def _state_row(db, workflow_id: str, phone: str) -> Optional[ConversationStateRow]:
        stmt = select(ConversationStateRow).where(and_(
            ConversationStateRow.workflow_id == workflow_id,
            ConversationStateRow.phone == phone,
        ))
        return (await db.execute(stmt)).scalar_one_or_none()

    # ── First-message-of-day flags ────────────────────────────

    async def claim_first_message(self, phone: str, date_local: str, first_message_at: datetime) -> bool:
        try:
            async with get_session() as db:
                db.add(FirstMessageFlagRow(
                    phone=phone, date_local=date_local, first_message_at=first_message_at,
                ))
                await db.flush()
        except PersistenceError as e:
            if isinstance(e.__cause__, IntegrityError):
                return False
            raise
        return True

    # ── Sent messages ─────────────────────────────────────────

    async def record_sent_message(self, record: SentMessageRecord) -> None:
        async with get_session() as db:
            db.add(SentMessageRow(
                workflow_id=record.workflow_id,
                message_id=record.message_id,
                phone=record.phone,
                message_kind=record.message_kind,
                sent_at=record.sent_at,
            ))

    async def find_sent_message(self, message_id: str) -> Optional[SentMessageRecord]:
        async with get_session() as db:
            stmt = (
                select(SentMessageRow)
                .where(SentMessageRow.message_id == message_id)
                .order_by(SentMessageRow.sent_at.desc())
                .limit(1)
            )
            row = (await db.execute(stmt)).scalar_one_or_none()
            if row is None:
                return None
            return SentMessageRecord(
                workflow_id=row.workflow_id, message_id=row.message_id,
                phone=row.phone, message_kind=row.message_kind,
                sent_at=_aware(row.sent_at),
            )

    # ── Execution log ─────────────────────────────────────────

    async def append_execution_log(self, entry: ExecutionLogEntry) -> None:
        async with get_session() as db:
            db.add(WorkflowExecutionRow(
                id=entry.id,
                workflow_id=entry.workflow_id,
                phone=entry.phone,
                message_kind=entry.message_kind.value,
                trigger=entry.trigger,
                responses=entry.responses,
                status=entry.status.value,
                error=entry.error,
                created_at=entry.created_at,
            ))

    async def list_execution_logs(self, workflow_id: str, limit: int = 50) -> list[ExecutionLogEntry]:
        async with get_session() as db:
            stmt = (
                select(WorkflowExecutionRow)
                .where(WorkflowExecutionRow.workflow_id == workflow_id)
                .order_by(WorkflowExecutionRow.created_at.desc())
                .limit(limit)
            )
            result = await db.execute(stmt)
            return [
                ExecutionLogEntry(
                    id=r.id, workflow_id=r.workflow_id, phone=r.phone,
                    message_kind=MessageKind(r.message_kind), trigger=r.trigger or {},
                    responses=r.responses or [], status=ExecutionStatus(r.status),
                    error=r.error, created_at=_aware(r.created_at),
                )
                for r in result.scalars()
            ]

    # ── Settings ──────────────────────────────────────────────

    async def get_setting(self, key: str) -> Any:
        async with get_session() as db:
            row = await db.get(SettingRow, key)
            return row.value if row else None

    async def set_setting(self, key: str, value: Any) -> None:
        async with get_session() as db:
            row = await db.get(SettingRow, key)
            if row is None:
                db.add(SettingRow(key=key, value=value))
            else:
                row.value = value

    # ── Channels ──────────────────────────────────────────────

    async def save_channel(self, channel: ChannelRecord) -> ChannelRecord:
        async with get_session() as db:
            row = await db.get(ChannelRow, channel.id)
            if row is None:
                row = ChannelRow(id=channel.id)
                db.add(row)
            row.account_id = channel.account_id
            row.token = channel.token
            row.status = channel.status
            row.auth_status = channel.auth_status
        return channel

    async def get_active_channel(self, account_id: str) -> Optional[ChannelRecord]:
        async with get_session() as db:
            stmt = (
                select(ChannelRow)
                .where(and_(
                    ChannelRow.account_id == account_id,
                    ChannelRow.status == "ACTIVE",
                    ChannelRow.auth_status == "AUTHORIZED",
                ))
                .order_by(ChannelRow.created_at)
            )
            for row in (await db.execute(stmt)).scalars():
                if row.token:
                    return ChannelRecord(
                        id=row.id, account_id=row.account_id, token=row.token,
                        status=row.status, auth_status=row.auth_status,
                    )
        return None

    # ── Captured data ─────────────────────────────────────────

    async def save_captured_data(self, data: CapturedData) -> None:
        async with get_session() as db:
            db.add(CapturedDataRow(
                id=data.id,
                workflow_id=data.workflow_id,
                workflow_name=data.workflow_name,
                sequence_name=data.sequence_name,
                phone=data.phone,
                clicks=[c.model_dump(mode="json") for c in data.clicks],
                captured_at=data.captured_at,
            ))

    async def list_captured_data(self, workflow_id: str) -> list[CapturedData]:
        async with get_session() as db:
            stmt = (
                select(CapturedDataRow)
                .where(CapturedDataRow.workflow_id == workflow_id)
                .order_by(CapturedDataRow.captured_at)
            )
            result = await db.execute(stmt)
            return [
                CapturedData(
                    id=r.id, workflow_id=r.workflow_id, workflow_name=r.workflow_name,
                    sequence_name=r.sequence_name, phone=r.phone,
                    clicks=[CapturedClick.model_validate(c) for c in (r.clicks or [])],
                    captured_at=_aware(r.captured_at),
                )
                for r in result.scalars()
            ]

    # ── Departments & staff ───────────────────────────────────

    async def save_department(self, department: Department) -> Department:
        async with get_session() as db:
            await db.merge(DepartmentRow(**department.model_dump()))
        return department

    async def get_department(self, department_id: str) -> Optional[Department]:
        async with get_session() as db:
            row = await db.get(DepartmentRow, department_id)
            return self._to_model(Department, row) if row else None

    async def list_departments(self, account_id: str, active_only: bool = True) -> list[Department]:
        async with get_session() as db:
            stmt = select(DepartmentRow).where(DepartmentRow.account_id == account_id)
            if active_only:
                stmt = stmt.where(DepartmentRow.is_active.is_(True))
            result = await db.execute(stmt.order_by(DepartmentRow.name))
            return [self._to_model(Department, r) for r in result.scalars()]

    async def save_staff(self, staff: Staff) -> Staff:
        async with get_session() as db:
            await db.merge(StaffRow(**staff.model_dump()))
        return staff

    async def get_staff(self, staff_id: str) -> Optional[Staff]:
        async with get_session() as db:
            row = await db.get(StaffRow, staff_id)
            return self._to_model(Staff, row) if row else None

    async def list_staff(self, department_id: str, active_only: bool = True) -> list[Staff]:
        async with get_session() as db:
            stmt = select(StaffRow).where(StaffRow.department_id == department_id)
            if active_only:
                stmt = stmt.where(StaffRow.is_active.is_(True))
            result = await db.execute(stmt.order_by(StaffRow.name))
            return [self._to_model(Staff, r) for r in result.scalars()]

    # ── Weekly slots ──────────────────────────────────────────

    async def save_weekly_slot(self, slot: WeeklySlot) -> WeeklySlot:
        async with get_session() as db:
            await db.merge(WeeklySlotRow(**slot.model_dump()))
        return slot

    async def list_weekly_slots(self, staff_id: str, active_only: bool = True) -> list[WeeklySlot]:
        async with get_session() as db:
            stmt = select(WeeklySlotRow).where(WeeklySlotRow.staff_id == staff_id)
            if active_only:
                stmt = stmt.where(WeeklySlotRow.is_active.is_(True))
            stmt = stmt.order_by(WeeklySlotRow.day_of_week, WeeklySlotRow.start_time)
            result = await db.execute(stmt)
            return [self._to_model(WeeklySlot, r) for r in result.scalars()]

    # ── Bookings ──────────────────────────────────────────────

    async def create_booking(self, booking: Booking) -> Booking:
        async with get_session() as db:
            db.add(BookingRow(**booking.model_dump(mode="json", exclude={"created_at"}),
                              created_at=booking.created_at))
        logger.info("booking_created", booking_id=booking.id, staff_id=booking.staff_id,
                    slot_date=booking.slot_date, start_time=booking.start_time)
        return booking

    async def get_booking(self, booking_id: str) -> Optional[Booking]:
        async with get_session() as db:
            row = await db.get(BookingRow, booking_id)
            return self._row_to_booking(row) if row else None

    async def update_booking(self, booking_id: str, **fields) -> Optional[Booking]:
        async with get_session() as db:
            row = await db.get(BookingRow, booking_id)
            if row is None:
                return None
            for name, value in fields.items():
                if isinstance(value, BookingStatus):
                    value = value.value
                setattr(row, name, value)
            await db.flush()
            return self._row_to_booking(row)

    async def list_customer_bookings(
        self, account_id: str, phone: str, statuses: Optional[list[BookingStatus]] = None,
    ) -> list[Booking]:
        async with get_session() as db:
            stmt = select(BookingRow).where(and_(
                BookingRow.account_id == account_id,
                BookingRow.customer_phone == phone,
            ))
            if statuses is not None:
                stmt = stmt.where(BookingRow.status.in_([s.value for s in statuses]))
            stmt = stmt.order_by(BookingRow.slot_date, BookingRow.start_time)
            result = await db.execute(stmt)
            return [self._row_to_booking(r) for r in result.scalars()]

    async def count_bookings_at(
        self, staff_id: str, slot_date: str, start_time: str,
        excluding_booking_id: Optional[str] = None,
    ) -> int:
        async with get_session() as db:
            stmt = select(func.count(BookingRow.id)).where(and_(
                BookingRow.staff_id == staff_id,
                BookingRow.slot_date == slot_date,
                BookingRow.start_time == start_time,
                BookingRow.status == BookingStatus.CONFIRMED.value,
            ))
            if excluding_booking_id:
                stmt = stmt.where(BookingRow.id != excluding_booking_id)
            return int((await db.execute(stmt)).scalar_one())

    # ── Row → model helpers ───────────────────────────────────

    @staticmethod
    def _row_to_workflow(row: WorkflowRow) -> Workflow:
        return Workflow(
            id=row.id, account_id=row.account_id, name=row.name,
            webhook_token=row.webhook_token, is_active=row.is_active,
            entry_node_id=row.entry_node_id, definition=row.definition or {},
            created_at=_aware(row.created_at),
        )

    @staticmethod
    def _row_to_state(row: ConversationStateRow) -> ConversationState:
        return ConversationState(
            workflow_id=row.workflow_id,
            phone=row.phone,
            current_node_id=row.current_node_id,
            context=ConversationContext.from_storage(row.context),
            last_message_at=_aware(row.last_message_at),
            last_message_date=row.last_message_date,
            created_at=_aware(row.created_at),
            updated_at=_aware(row.updated_at),
        )

    @staticmethod
    def _row_to_booking(row: BookingRow) -> Booking:
        return Booking(
            id=row.id, account_id=row.account_id, workflow_id=row.workflow_id,
            department_id=row.department_id, staff_id=row.staff_id,
            slot_date=row.slot_date, start_time=row.start_time, end_time=row.end_time,
            customer_phone=row.customer_phone, customer_name=row.customer_name,
            status=BookingStatus(row.status), booking_label=row.booking_label,
            custom_answers=row.custom_answers or {}, created_at=_aware(row.created_at),
        )

    @staticmethod
    def _to_model(model, row):
        return model.model_validate(
            {c.key: getattr(row, c.key) for c in row.__table__.columns}
        )
