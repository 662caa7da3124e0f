"""
Core data models for the FlowRelay engine.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Optional

import structlog
from pydantic import BaseModel, Field, ValidationError

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class EventKind(str, Enum):
    IGNORABLE = "ignorable"
    TEXT = "text"
    INTERACTIVE = "interactive"


class MessageKind(str, Enum):
    """Classification written to the execution log."""
    TEXT = "text"
    INQUIRY = "inquiry"
    BUTTON_REPLY = "button_reply"
    OTHER = "other"


class ExecutionStatus(str, Enum):
    SUCCESS = "SUCCESS"
    ERROR = "ERROR"


class BookingStep(str, Enum):
    SELECT_DEPARTMENT = "select_department"
    SELECT_STAFF = "select_staff"
    SELECT_SLOT = "select_slot"
    ENTER_NAME = "enter_name"
    ENTER_CUSTOM1 = "enter_custom1"
    ENTER_CUSTOM2 = "enter_custom2"
    SELECT_CANCEL = "select_cancel"
    SELECT_RESCHEDULE = "select_reschedule"
    SELECT_NEW_SLOT = "select_new_slot"


TEXT_CAPTURE_STEPS = frozenset({
    BookingStep.ENTER_NAME, BookingStep.ENTER_CUSTOM1, BookingStep.ENTER_CUSTOM2,
})


class BookingStatus(str, Enum):
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


# ──────────────────────────────────────────────────────────────
#  Workflow
# ──────────────────────────────────────────────────────────────

class Workflow(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:16])
    account_id: str
    name: str = ""
    webhook_token: str = Field(default_factory=lambda: uuid.uuid4().hex)
    is_active: bool = True
    entry_node_id: Optional[str] = None
    definition: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)


class ChannelRecord(BaseModel):
    """A messaging channel connected for an account."""
    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:16])
    account_id: str
    token: str = ""
    status: str = "ACTIVE"
    auth_status: str = "AUTHORIZED"

    @property
    def is_usable(self) -> bool:
        return self.status == "ACTIVE" and self.auth_status == "AUTHORIZED" and bool(self.token)


# ──────────────────────────────────────────────────────────────
#  Inbound events
# ──────────────────────────────────────────────────────────────

class InboundEvent(BaseModel):
    """One normalized provider message event."""
    kind: EventKind
    phone: str = ""
    chat_id: str = ""
    text: str = ""
    raw_reply_id: str = ""
    reply_id: str = ""              # logical id, provider prefix stripped
    reply_title: str = ""
    message_id: str = ""
    quoted_message_id: str = ""
    timestamp: datetime = Field(default_factory=_utcnow)
    ignore_reason: str = ""

    @property
    def is_ignorable(self) -> bool:
        return self.kind == EventKind.IGNORABLE


# ──────────────────────────────────────────────────────────────
#  Conversation context & sub-flow state
# ──────────────────────────────────────────────────────────────

class BookingState(BaseModel):
    """Scratch state of an in-progress booking sub-flow. Replaced as a whole."""
    step: BookingStep
    node_id: str
    node_kind: str = "booking.book_appointment"
    config: dict[str, Any] = Field(default_factory=dict)
    department_id: Optional[str] = None
    staff_id: Optional[str] = None
    slot_date: Optional[str] = None         # YYYY-MM-DD
    start_time: Optional[str] = None        # HH:MM
    end_time: Optional[str] = None
    booking_id: Optional[str] = None        # reschedule target
    customer_name: Optional[str] = None
    custom_answers: dict[str, str] = Field(default_factory=dict)
    started_at: datetime = Field(default_factory=_utcnow)


class CapturedClick(BaseModel):
    button_id: str
    button_title: str = ""
    node_id: str = ""
    timestamp: datetime = Field(default_factory=_utcnow)


class CaptureState(BaseModel):
    sequence_name: str
    start_node_id: str
    clicks: list[CapturedClick] = Field(default_factory=list)


_RESERVED_KEYS = ("http", "bookingState", "captureState")


class ConversationContext(BaseModel):
    """
    Typed view over the stored context map.

    Storage shape: ``{...variables, "http": {...}, "bookingState": {...},
    "captureState": {...}}``. Sub-states are replaced or cleared whole.
    """
    variables: dict[str, Any] = Field(default_factory=dict)
    http: dict[str, Any] = Field(default_factory=dict)
    booking_state: Optional[BookingState] = None
    capture_state: Optional[CaptureState] = None

    @classmethod
    def from_storage(cls, raw: Any) -> "ConversationContext":
        if not isinstance(raw, dict):
            return cls()
        variables = {k: v for k, v in raw.items() if k not in _RESERVED_KEYS}
        http = raw.get("http") if isinstance(raw.get("http"), dict) else {}
        return cls(
            variables=variables,
            http=http,
            booking_state=_load_sub_state(BookingState, raw.get("bookingState")),
            capture_state=_load_sub_state(CaptureState, raw.get("captureState")),
        )

    def to_storage(self) -> dict[str, Any]:
        data: dict[str, Any] = dict(self.variables)
        if self.http:
            data["http"] = self.http
        if self.booking_state is not None:
            data["bookingState"] = self.booking_state.model_dump(mode="json")
        if self.capture_state is not None:
            data["captureState"] = self.capture_state.model_dump(mode="json")
        return data


def _load_sub_state(model: type[BaseModel], raw: Any):
    if raw is None:
        return None
    try:
        return model.model_validate(raw)
    except ValidationError as e:
        logger.warning("context_sub_state_dropped", model=model.__name__, error=str(e))
        return None


class ConversationState(BaseModel):
    workflow_id: str
    phone: str
    current_node_id: Optional[str] = None
    context: ConversationContext = Field(default_factory=ConversationContext)
    last_message_at: Optional[datetime] = None
    last_message_date: Optional[str] = None     # YYYY-MM-DD in the reference zone
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


# ──────────────────────────────────────────────────────────────
#  Records
# ──────────────────────────────────────────────────────────────

class SentMessageRecord(BaseModel):
    workflow_id: str
    message_id: str
    phone: str
    message_kind: str = ""
    sent_at: datetime = Field(default_factory=_utcnow)


class ExecutionLogEntry(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:16])
    workflow_id: str
    phone: str = ""
    message_kind: MessageKind = MessageKind.OTHER
    trigger: dict[str, Any] = Field(default_factory=dict)
    responses: list[dict[str, Any]] = Field(default_factory=list)
    status: ExecutionStatus = ExecutionStatus.SUCCESS
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)


class CapturedData(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:16])
    workflow_id: str
    workflow_name: str = ""
    sequence_name: str
    phone: str
    clicks: list[CapturedClick] = Field(default_factory=list)
    captured_at: datetime = Field(default_factory=_utcnow)


# ──────────────────────────────────────────────────────────────
#  Booking data
# ──────────────────────────────────────────────────────────────

class Department(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:16])
    account_id: str
    name: str
    description: str = ""
    is_active: bool = True


class Staff(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:16])
    account_id: str
    department_id: str
    name: str
    phone: str = ""
    email: str = ""
    is_active: bool = True


class WeeklySlot(BaseModel):
    """Recurring availability window; expanded into bookable times."""
    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:16])
    staff_id: str
    day_of_week: int                # 0 = Sunday
    start_time: str                 # HH:MM
    end_time: str
    slot_duration: int = 30         # minutes
    capacity: int = 1
    is_active: bool = True


class Booking(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:16])
    account_id: str
    workflow_id: Optional[str] = None
    department_id: str
    staff_id: str
    slot_date: str                  # YYYY-MM-DD
    start_time: str                 # HH:MM
    end_time: str
    customer_phone: str
    customer_name: str = ""
    status: BookingStatus = BookingStatus.CONFIRMED
    booking_label: str = ""
    custom_answers: dict[str, str] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)

    @property
    def slot_day(self) -> date:
        return date.fromisoformat(self.slot_date)


class SlotAvailability(BaseModel):
    available: bool
    existing_count: int = 0
    capacity: int = 0
