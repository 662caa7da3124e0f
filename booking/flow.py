"""
Booking sub-flow — a multi-step appointment dialogue inside one node.

book_appointment:
  select_department → select_staff → select_slot
    → (enter_name) → (enter_custom1) → (enter_custom2) → booked
check_bookings:
  my_bookings                       → formatted list, first outgoing edge
  cancel_booking   → select_cancel  → updated
  reschedule → select_reschedule → select_new_slot → updated

Scratch state lives in `context.bookingState` and is replaced or cleared
as a whole. List row ids are namespaced "booking_<kind>_<value>"; the
provider may strip or re-prefix them ("ListV3:dept_7"), so replies are
matched with or without the "booking_" prefix.
"""
from __future__ import annotations

import re
import structlog
from datetime import datetime
from typing import Any, Callable, Optional
from zoneinfo import ZoneInfo

from booking.slots import (
    SlotOption, end_time_for, find_covering_slot, format_slot_date, format_slot_title,
    slot_has_started, upcoming_slot_options,
)
from channels.payloads import list_message, text_message
from config.settings import BookingConfig, get_settings
from context.tracker import ConversationTracker
from core.dispatch import MessageDispatcher
from core.edge_resolver import follow_handle
from core.run import ExecutionRun
from database.store_base import BaseBookingStore
from models.graph import BookAppointmentConfig, CheckBookingsConfig, Node, NodeKind
from models.schemas import (
    Booking, BookingState, BookingStatus, BookingStep, TEXT_CAPTURE_STEPS,
)
from utils.locks import KeyedLock
from utils.templating import resolve_template

logger = structlog.get_logger()

ID_PREFIX = "booking_"

_DATE = r"(?P<date>\d{4}-\d{2}-\d{2})"
_TIME = r"(?P<time>\d{4})"

_STEP_PATTERNS: dict[BookingStep, re.Pattern] = {
    BookingStep.SELECT_DEPARTMENT: re.compile(r"^dept_(?P<id>[\w-]+)$"),
    BookingStep.SELECT_STAFF: re.compile(r"^staff_(?P<id>[\w-]+)$"),
    BookingStep.SELECT_SLOT: re.compile(rf"^slot_{_DATE}_{_TIME}$"),
    BookingStep.SELECT_CANCEL: re.compile(r"^cancel_(?P<id>[\w-]+)$"),
    BookingStep.SELECT_RESCHEDULE: re.compile(r"^resched_(?P<id>[\w-]+)$"),
    BookingStep.SELECT_NEW_SLOT: re.compile(rf"^newslot_{_DATE}_{_TIME}$"),
}

_ROW_TITLE_MAX = 24
_ROW_DESCRIPTION_MAX = 72


def row_id(kind: str, *parts: str) -> str:
    return ID_PREFIX + "_".join([kind, *parts])


def slot_row_id(kind: str, option: SlotOption) -> str:
    return row_id(kind, option.slot_date, option.start_time.replace(":", ""))


def parse_reply(step: BookingStep, reply_id: str) -> Optional[dict[str, str]]:
    """Fields of a booking reply id for the given step, or None."""
    pattern = _STEP_PATTERNS.get(step)
    if pattern is None or not reply_id:
        return None
    bare = reply_id[len(ID_PREFIX):] if reply_id.startswith(ID_PREFIX) else reply_id
    match = pattern.match(bare)
    if match is None:
        return None
    fields = match.groupdict()
    if "time" in fields:
        fields["time"] = f"{fields['time'][:2]}:{fields['time'][2:]}"
    return fields


def _row(row_id_: str, title: str, description: str = "") -> dict[str, str]:
    return {
        "id": row_id_,
        "title": title[:_ROW_TITLE_MAX],
        "description": description[:_ROW_DESCRIPTION_MAX],
    }


class BookingOutcome:
    """
    Result of one booking step.

    handled=False means the reply was not a valid booking reply and the
    caller should fall through to normal edge resolution.
    """

    def __init__(self, node_id: str = "", handled: bool = True, wait: bool = False,
                 handle: Optional[str] = None, follow_default: bool = False):
        self.node_id = node_id
        self.handled = handled
        self.wait = wait
        self.handle = handle
        self.follow_default = follow_default

    @classmethod
    def waiting(cls, node_id: str) -> "BookingOutcome":
        return cls(node_id, wait=True)

    @classmethod
    def stop(cls, node_id: str) -> "BookingOutcome":
        return cls(node_id)

    @classmethod
    def follow(cls, node_id: str, handle: str) -> "BookingOutcome":
        return cls(node_id, handle=handle)

    @classmethod
    def default(cls, node_id: str) -> "BookingOutcome":
        return cls(node_id, follow_default=True)

    @classmethod
    def not_handled(cls) -> "BookingOutcome":
        return cls(handled=False)

    @property
    def continues(self) -> bool:
        return self.handled and not self.wait and bool(self.handle or self.follow_default)

    def __repr__(self):
        return (f"<BookingOutcome node={self.node_id} handled={self.handled} wait={self.wait} "
                f"handle={self.handle} default={self.follow_default}>")


class BookingFlow:
    """Drives book_appointment and check_bookings nodes."""

    def __init__(
        self,
        store: BaseBookingStore,
        dispatcher: MessageDispatcher,
        config: BookingConfig = None,
        timezone: str = None,
        now: Callable[[], datetime] = None,
        tracker: ConversationTracker = None,
    ):
        settings = get_settings()
        self.store = store
        self.dispatcher = dispatcher
        self.tracker = tracker
        self.config = config or settings.booking
        self.zone = ZoneInfo(timezone or settings.timezone)
        self._now = now or (lambda: datetime.now(self.zone))
        self._slot_locks = KeyedLock()

    def now(self) -> datetime:
        return self._now().astimezone(self.zone)

    # ══════════════════════════════════════════════════════════
    #  ENTRY
    # ══════════════════════════════════════════════════════════

    async def start(self, run: ExecutionRun, node: Node) -> BookingOutcome:
        if run.state.context.booking_state is not None:
            logger.info("booking_restarted", workflow_id=run.workflow.id, node_id=node.id,
                        previous_step=run.state.context.booking_state.step.value)
            self._clear(run)

        if node.kind == NodeKind.CHECK_BOOKINGS:
            return await self._start_check(run, node, node.config)
        return await self._start_appointment(run, node, node.config)

    async def _start_appointment(self, run: ExecutionRun, node: Node,
                                 cfg: BookAppointmentConfig) -> BookingOutcome:
        if not cfg.allow_multiple and await self._has_upcoming(run, cfg.booking_label):
            await self._send_text(run, node.id, self.config.already_booked_message)
            logger.info("booking_already_booked", workflow_id=run.workflow.id, phone=run.phone)
            return BookingOutcome.stop(node.id)

        departments = await self.store.list_departments(run.account_id)
        if not departments:
            return await self._no_slots(run, node.id, cfg.no_slots_message)

        rows = [_row(row_id("dept", d.id), d.name, d.description)
                for d in departments[: self.config.max_list_rows]]
        await self._send_list(run, node.id, cfg.prompt_message, rows, cfg.department_button_label)
        self._set(run, BookingState(
            step=BookingStep.SELECT_DEPARTMENT, node_id=node.id, node_kind=node.kind.value,
            config=cfg.model_dump(),
        ))
        return BookingOutcome.waiting(node.id)

    async def _start_check(self, run: ExecutionRun, node: Node,
                           cfg: CheckBookingsConfig) -> BookingOutcome:
        bookings = await self._customer_bookings(run, cfg)

        if cfg.check_type == "my_bookings":
            if bookings:
                lines = [await self._format_booking(b, cfg.booking_list_format) for b in bookings]
                body = "\n\n".join([cfg.list_header_message, *lines]) if cfg.list_header_message \
                    else "\n\n".join(lines)
            else:
                body = cfg.no_bookings_message
            await self._send_text(run, node.id, body)
            return BookingOutcome.default(node.id)

        if cfg.check_type == "cancel_booking":
            step, kind = BookingStep.SELECT_CANCEL, "cancel"
            prompt, label = cfg.cancel_prompt_message, cfg.cancel_button_label
        elif cfg.check_type == "reschedule":
            step, kind = BookingStep.SELECT_RESCHEDULE, "resched"
            prompt, label = cfg.reschedule_prompt_message, cfg.reschedule_button_label
        else:
            logger.warning("booking_check_type_unknown", node_id=node.id, check_type=cfg.check_type)
            return BookingOutcome.stop(node.id)

        actionable = [b for b in bookings if b.status == BookingStatus.CONFIRMED]
        if not actionable:
            await self._send_text(run, node.id, cfg.no_bookings_message)
            return BookingOutcome.stop(node.id)

        rows = []
        for b in actionable[: self.config.max_list_rows]:
            names = await self._names(b)
            rows.append(_row(row_id(kind, b.id), format_slot_title(b.slot_date, b.start_time),
                             f"{names['staff']} ({names['department']})"))
        await self._send_list(run, node.id, prompt, rows, label)
        self._set(run, BookingState(step=step, node_id=node.id, node_kind=node.kind.value,
                                    config=cfg.model_dump()))
        return BookingOutcome.waiting(node.id)

    # ══════════════════════════════════════════════════════════
    #  REPLIES
    # ══════════════════════════════════════════════════════════

    def claims(self, run: ExecutionRun, reply_id: str) -> bool:
        """Whether a reply should be routed here before edge resolution."""
        state = run.state.context.booking_state
        if state is None or not reply_id:
            return False
        return reply_id.startswith(ID_PREFIX) or parse_reply(state.step, reply_id) is not None

    async def handle_reply(self, run: ExecutionRun, reply_id: str) -> BookingOutcome:
        state = run.state.context.booking_state
        if state is None:
            return BookingOutcome.not_handled()
        fields = parse_reply(state.step, reply_id)
        if fields is None:
            return self._reject(run, state, reply_id, "step_mismatch")

        if state.step == BookingStep.SELECT_DEPARTMENT:
            return await self._on_department(run, state, fields["id"])
        elif state.step == BookingStep.SELECT_STAFF:
            return await self._on_staff(run, state, fields["id"])
        elif state.step == BookingStep.SELECT_SLOT:
            return await self._on_slot(run, state, fields["date"], fields["time"])
        elif state.step == BookingStep.SELECT_CANCEL:
            return await self._on_cancel(run, state, fields["id"])
        elif state.step == BookingStep.SELECT_RESCHEDULE:
            return await self._on_reschedule(run, state, fields["id"])
        elif state.step == BookingStep.SELECT_NEW_SLOT:
            return await self._on_new_slot(run, state, fields["date"], fields["time"])
        return self._reject(run, state, reply_id, "step_mismatch")

    async def handle_text(self, run: ExecutionRun, text: str) -> BookingOutcome:
        """Free-text answer for the name / custom-question steps."""
        state = run.state.context.booking_state
        if state is None or state.step not in TEXT_CAPTURE_STEPS:
            return BookingOutcome.not_handled()

        answer = (text or "").strip()
        cfg = BookAppointmentConfig.model_validate(state.config)
        if not answer:
            await self._send_text(run, state.node_id, self._prompt_for(state.step, cfg))
            return BookingOutcome.waiting(state.node_id)

        if state.step == BookingStep.ENTER_NAME:
            state = state.model_copy(update={"customer_name": answer})
        else:
            key = "custom1" if state.step == BookingStep.ENTER_CUSTOM1 else "custom2"
            state = state.model_copy(update={"custom_answers": {**state.custom_answers, key: answer}})
        self._set(run, state)
        return await self._next_question(run, state, cfg)

    # ── book_appointment steps ────────────────────────────────

    async def _on_department(self, run: ExecutionRun, state: BookingState, department_id: str) -> BookingOutcome:
        department = await self.store.get_department(department_id)
        if department is None or department.account_id != run.account_id or not department.is_active:
            return self._reject(run, state, department_id, "unknown_department")

        cfg = BookAppointmentConfig.model_validate(state.config)
        staff = await self.store.list_staff(department.id)
        if not staff:
            return await self._no_slots(run, state.node_id, cfg.no_slots_message)

        rows = [_row(row_id("staff", s.id), s.name) for s in staff[: self.config.max_list_rows]]
        await self._send_list(run, state.node_id, cfg.staff_prompt_message, rows, cfg.staff_button_label)
        self._set(run, state.model_copy(update={
            "step": BookingStep.SELECT_STAFF, "department_id": department.id,
        }))
        return BookingOutcome.waiting(state.node_id)

    async def _on_staff(self, run: ExecutionRun, state: BookingState, staff_id: str) -> BookingOutcome:
        staff = await self.store.get_staff(staff_id)
        if (staff is None or staff.account_id != run.account_id or not staff.is_active
                or staff.department_id != state.department_id):
            return self._reject(run, state, staff_id, "unknown_staff")

        cfg = BookAppointmentConfig.model_validate(state.config)
        options = await self._available_options(staff.id, cfg.max_advance_days, cfg.start_today)
        if not options:
            return await self._no_slots(run, state.node_id, cfg.no_slots_message)

        rows = [_row(slot_row_id("slot", o), o.title) for o in options]
        await self._send_list(run, state.node_id, cfg.slot_prompt_message, rows, cfg.slot_button_label)
        self._set(run, state.model_copy(update={"step": BookingStep.SELECT_SLOT, "staff_id": staff.id}))
        return BookingOutcome.waiting(state.node_id)

    async def _on_slot(self, run: ExecutionRun, state: BookingState,
                       slot_date: str, start_time: str) -> BookingOutcome:
        weekly = await self.store.list_weekly_slots(state.staff_id) if state.staff_id else []
        covering = find_covering_slot(weekly, slot_date, start_time)
        if covering is None or slot_has_started(slot_date, start_time, self.now()):
            return self._reject(run, state, f"{slot_date} {start_time}", "unknown_slot")

        cfg = BookAppointmentConfig.model_validate(state.config)
        state = state.model_copy(update={
            "slot_date": slot_date,
            "start_time": start_time,
            "end_time": end_time_for(covering, start_time),
        })
        self._set(run, state)
        return await self._next_question(run, state, cfg)

    async def _next_question(self, run: ExecutionRun, state: BookingState,
                             cfg: BookAppointmentConfig) -> BookingOutcome:
        if cfg.require_name and not state.customer_name:
            step = BookingStep.ENTER_NAME
        elif cfg.custom_question1_enabled and "custom1" not in state.custom_answers:
            step = BookingStep.ENTER_CUSTOM1
        elif cfg.custom_question2_enabled and "custom2" not in state.custom_answers:
            step = BookingStep.ENTER_CUSTOM2
        else:
            return await self._create_booking(run, state, cfg)

        await self._send_text(run, state.node_id, self._prompt_for(step, cfg))
        self._set(run, state.model_copy(update={"step": step}))
        return BookingOutcome.waiting(state.node_id)

    @staticmethod
    def _prompt_for(step: BookingStep, cfg: BookAppointmentConfig) -> str:
        if step == BookingStep.ENTER_NAME:
            return cfg.name_prompt
        if step == BookingStep.ENTER_CUSTOM1:
            return cfg.custom_question1_prompt or cfg.custom_question1_label or "Please answer:"
        return cfg.custom_question2_prompt or cfg.custom_question2_label or "Please answer:"

    async def _create_booking(self, run: ExecutionRun, state: BookingState,
                              cfg: BookAppointmentConfig) -> BookingOutcome:
        key = (state.staff_id, state.slot_date, state.start_time)
        async with self._slot_locks.hold(key):
            availability = await self.store.check_slot_availability(
                state.staff_id, state.slot_date, state.start_time,
            )
            if not availability.available:
                logger.info("booking_slot_unavailable", staff_id=state.staff_id, date=state.slot_date,
                            time=state.start_time, existing=availability.existing_count,
                            capacity=availability.capacity)
                self._clear(run)
                await self._send_text(run, state.node_id, self.config.slot_unavailable_message)
                return BookingOutcome.stop(state.node_id)

            answers = {}
            if "custom1" in state.custom_answers:
                answers[cfg.custom_question1_label or "custom1"] = state.custom_answers["custom1"]
            if "custom2" in state.custom_answers:
                answers[cfg.custom_question2_label or "custom2"] = state.custom_answers["custom2"]
            booking = await self.store.create_booking(Booking(
                account_id=run.account_id,
                workflow_id=run.workflow.id,
                department_id=state.department_id,
                staff_id=state.staff_id,
                slot_date=state.slot_date,
                start_time=state.start_time,
                end_time=state.end_time or state.start_time,
                customer_phone=run.phone,
                customer_name=state.customer_name or "",
                booking_label=cfg.booking_label,
                custom_answers=answers,
            ))

        logger.info("booking_confirmed", booking_id=booking.id, workflow_id=run.workflow.id,
                    staff_id=booking.staff_id, date=booking.slot_date, time=booking.start_time)
        await self._settle(run)
        message = resolve_template(cfg.success_message, await self._booking_vars(booking))
        await self._send_text(run, state.node_id, message)
        return BookingOutcome.follow(state.node_id, "booked")

    # ── check_bookings steps ──────────────────────────────────

    async def _owned_booking(self, run: ExecutionRun, booking_id: str) -> Optional[Booking]:
        booking = await self.store.get_booking(booking_id)
        if (booking is None or booking.account_id != run.account_id
                or booking.customer_phone != run.phone
                or booking.status != BookingStatus.CONFIRMED):
            return None
        return booking

    async def _on_cancel(self, run: ExecutionRun, state: BookingState, booking_id: str) -> BookingOutcome:
        booking = await self._owned_booking(run, booking_id)
        if booking is None:
            return self._reject(run, state, booking_id, "unknown_booking")

        cfg = CheckBookingsConfig.model_validate(state.config)
        updated = await self.store.update_booking(booking.id, status=BookingStatus.CANCELLED)
        logger.info("booking_cancelled", booking_id=booking.id, workflow_id=run.workflow.id)
        await self._settle(run)
        message = resolve_template(cfg.cancel_success_message, await self._booking_vars(updated or booking))
        await self._send_text(run, state.node_id, message)
        return BookingOutcome.follow(state.node_id, "updated")

    async def _on_reschedule(self, run: ExecutionRun, state: BookingState, booking_id: str) -> BookingOutcome:
        booking = await self._owned_booking(run, booking_id)
        if booking is None:
            return self._reject(run, state, booking_id, "unknown_booking")

        cfg = CheckBookingsConfig.model_validate(state.config)
        options = await self._available_options(
            booking.staff_id, cfg.max_advance_days, True, excluding_booking_id=booking.id,
        )
        options = [o for o in options
                   if (o.slot_date, o.start_time) != (booking.slot_date, booking.start_time)]
        if not options:
            return await self._no_slots(run, state.node_id, cfg.no_slots_message)

        rows = [_row(slot_row_id("newslot", o), o.title) for o in options]
        await self._send_list(run, state.node_id, cfg.slot_prompt_message, rows, cfg.slot_button_label)
        self._set(run, state.model_copy(update={
            "step": BookingStep.SELECT_NEW_SLOT,
            "booking_id": booking.id,
            "staff_id": booking.staff_id,
            "department_id": booking.department_id,
        }))
        return BookingOutcome.waiting(state.node_id)

    async def _on_new_slot(self, run: ExecutionRun, state: BookingState,
                           slot_date: str, start_time: str) -> BookingOutcome:
        booking = await self._owned_booking(run, state.booking_id or "")
        if booking is None:
            return self._reject(run, state, state.booking_id or "", "unknown_booking")
        weekly = await self.store.list_weekly_slots(booking.staff_id)
        covering = find_covering_slot(weekly, slot_date, start_time)
        if covering is None or slot_has_started(slot_date, start_time, self.now()):
            return self._reject(run, state, f"{slot_date} {start_time}", "unknown_slot")

        cfg = CheckBookingsConfig.model_validate(state.config)
        key = (booking.staff_id, slot_date, start_time)
        async with self._slot_locks.hold(key):
            availability = await self.store.check_slot_availability(
                booking.staff_id, slot_date, start_time, excluding_booking_id=booking.id,
            )
            if not availability.available:
                self._clear(run)
                await self._send_text(run, state.node_id, self.config.slot_unavailable_message)
                return BookingOutcome.stop(state.node_id)
            updated = await self.store.update_booking(
                booking.id, slot_date=slot_date, start_time=start_time,
                end_time=end_time_for(covering, start_time),
            )

        logger.info("booking_rescheduled", booking_id=booking.id, date=slot_date, time=start_time)
        await self._settle(run)
        message = resolve_template(cfg.reschedule_success_message, await self._booking_vars(updated or booking))
        await self._send_text(run, state.node_id, message)
        return BookingOutcome.follow(state.node_id, "updated")

    # ══════════════════════════════════════════════════════════
    #  HELPERS
    # ══════════════════════════════════════════════════════════

    def _set(self, run: ExecutionRun, state: BookingState) -> None:
        ConversationTracker.replace_booking_state(run.state, state)

    def _clear(self, run: ExecutionRun) -> None:
        ConversationTracker.replace_booking_state(run.state, None)

    async def _settle(self, run: ExecutionRun) -> None:
        """Clear the sub-state and persist it right after a booking write, before any send."""
        self._clear(run)
        if self.tracker is not None:
            await self.tracker.save(run.state)

    def _reject(self, run: ExecutionRun, state: BookingState, value: str, reason: str) -> BookingOutcome:
        """Stale or forged reference: drop the sub-flow without telling the participant."""
        logger.warning("booking_reply_rejected", workflow_id=run.workflow.id, phone=run.phone,
                       step=state.step.value, value=value, reason=reason)
        self._clear(run)
        return BookingOutcome.not_handled()

    async def _no_slots(self, run: ExecutionRun, node_id: str, message: str) -> BookingOutcome:
        self._clear(run)
        if follow_handle(run.graph, node_id, "no_slots") is not None:
            return BookingOutcome.follow(node_id, "no_slots")
        await self._send_text(run, node_id, message)
        return BookingOutcome.stop(node_id)

    async def _send_text(self, run: ExecutionRun, node_id: str, body: str) -> str:
        return await self.dispatcher.send(run, text_message(run.phone, body), node_id)

    async def _send_list(self, run: ExecutionRun, node_id: str, body: str,
                         rows: list[dict[str, str]], label: str) -> str:
        message = list_message(run.phone, body, rows, label=label)
        message.kind = "booking_list"
        return await self.dispatcher.send(run, message, node_id)

    async def _available_options(self, staff_id: str, max_advance_days: int, start_today: bool,
                                 excluding_booking_id: Optional[str] = None) -> list[SlotOption]:
        weekly = await self.store.list_weekly_slots(staff_id)
        horizon = min(max_advance_days or self.config.max_advance_days, self.config.max_advance_days)
        options: list[SlotOption] = []
        for option in upcoming_slot_options(weekly, self.now(), horizon, start_today):
            taken = await self.store.count_bookings_at(
                staff_id, option.slot_date, option.start_time,
                excluding_booking_id=excluding_booking_id,
            )
            if taken < option.capacity:
                options.append(option)
            if len(options) >= self.config.max_list_rows:
                break
        return options

    async def _has_upcoming(self, run: ExecutionRun, label: str) -> bool:
        today = self.now().date().isoformat()
        bookings = await self.store.list_customer_bookings(
            run.account_id, run.phone, [BookingStatus.CONFIRMED],
        )
        return any(b.slot_date >= today and (not label or b.booking_label == label) for b in bookings)

    async def _customer_bookings(self, run: ExecutionRun, cfg: CheckBookingsConfig) -> list[Booking]:
        status_filter = (cfg.status_filter or "upcoming").lower()
        if status_filter == "all":
            statuses = None
        elif status_filter == "upcoming":
            statuses = [BookingStatus.CONFIRMED]
        else:
            try:
                statuses = [BookingStatus(status_filter)]
            except ValueError:
                statuses = [BookingStatus.CONFIRMED]

        bookings = await self.store.list_customer_bookings(run.account_id, run.phone, statuses)
        if status_filter == "upcoming" or cfg.check_type != "my_bookings":
            today = self.now().date().isoformat()
            bookings = [b for b in bookings if b.slot_date >= today]
        if cfg.max_bookings and cfg.max_bookings > 0:
            bookings = bookings[: cfg.max_bookings]
        return bookings

    async def _names(self, booking: Booking) -> dict[str, str]:
        department = await self.store.get_department(booking.department_id)
        staff = await self.store.get_staff(booking.staff_id)
        return {
            "department": department.name if department else "",
            "staff": staff.name if staff else "",
        }

    async def _booking_vars(self, booking: Booking) -> dict[str, Any]:
        return {
            **await self._names(booking),
            "date": format_slot_date(booking.slot_date),
            "time": booking.start_time,
            "name": booking.customer_name,
            "status": booking.status.value,
            "label": booking.booking_label,
        }

    async def _format_booking(self, booking: Booking, template: str) -> str:
        return resolve_template(template, await self._booking_vars(booking))
