"""
Store contract tests, run against every backend.

The SQL backend runs on a throwaway SQLite file per test.
"""
from datetime import datetime, timedelta, timezone

import pytest

from database.session import close_db, init_db
from database.store_factory import create_store
from database.store import SqlStore
from database.store_memory import InMemoryStore
from models.schemas import (
    Booking, BookingState, BookingStatus, BookingStep, CapturedClick, CapturedData,
    CaptureState, ChannelRecord, ConversationContext, ConversationState, Department,
    ExecutionLogEntry, ExecutionStatus, MessageKind, SentMessageRecord, WeeklySlot, Workflow,
)
from tests.factories import ACCOUNT, PHONE


@pytest.fixture(params=["memory", "sqlite"])
async def backend(request, tmp_path):
    if request.param == "memory":
        yield InMemoryStore()
        return
    await init_db(f"sqlite:///{tmp_path}/flowrelay.db")
    try:
        yield SqlStore()
    finally:
        await close_db()


def booking(**overrides) -> Booking:
    fields = dict(
        account_id=ACCOUNT, department_id="7", staff_id="s1",
        slot_date="2026-10-26", start_time="09:00", end_time="09:30", customer_phone=PHONE,
    )
    fields.update(overrides)
    return Booking(**fields)


class TestWorkflows:
    @pytest.mark.asyncio
    async def test_lookup_by_token(self, backend):
        wf = await backend.save_workflow(Workflow(account_id=ACCOUNT, name="Main",
                                                  definition={"nodes": [], "edges": []}))
        found = await backend.get_workflow_by_token(ACCOUNT, wf.webhook_token)
        assert found.id == wf.id
        assert found.definition == {"nodes": [], "edges": []}
        assert await backend.get_workflow_by_token("acct-2", wf.webhook_token) is None
        assert await backend.get_workflow_by_token(ACCOUNT, "wrong") is None

    @pytest.mark.asyncio
    async def test_active_workflows(self, backend):
        active = await backend.save_workflow(Workflow(account_id=ACCOUNT, name="On"))
        await backend.save_workflow(Workflow(account_id=ACCOUNT, name="Off", is_active=False))
        await backend.save_workflow(Workflow(account_id="acct-2", name="Elsewhere"))
        assert [w.id for w in await backend.list_active_workflows(ACCOUNT)] == [active.id]


class TestConversationState:
    @pytest.mark.asyncio
    async def test_round_trip(self, backend):
        ts = datetime(2026, 10, 19, 5, 0, tzinfo=timezone.utc)
        state = ConversationState(
            workflow_id="wf-1", phone=PHONE, current_node_id="menu",
            context=ConversationContext(
                variables={"customerId": "c-1"},
                http={"h": {"status": 200}},
                booking_state=BookingState(step=BookingStep.SELECT_STAFF, node_id="book",
                                           department_id="7"),
                capture_state=CaptureState(sequence_name="order", start_node_id="size",
                                           clicks=[CapturedClick(button_id="large", timestamp=ts)]),
            ),
            last_message_at=ts, last_message_date="2026-10-19",
        )
        await backend.save_conversation_state(state)

        loaded = await backend.get_conversation_state("wf-1", PHONE)
        assert loaded.current_node_id == "menu"
        assert loaded.context.variables == {"customerId": "c-1"}
        assert loaded.context.http == {"h": {"status": 200}}
        assert loaded.context.booking_state.step == BookingStep.SELECT_STAFF
        assert loaded.context.booking_state.department_id == "7"
        assert loaded.context.capture_state.clicks[0].button_id == "large"
        assert loaded.last_message_at == ts
        assert loaded.last_message_date == "2026-10-19"

    @pytest.mark.asyncio
    async def test_upsert_keeps_one_row(self, backend):
        state = ConversationState(workflow_id="wf-1", phone=PHONE, current_node_id="a")
        await backend.save_conversation_state(state)
        state.current_node_id = "b"
        state.context = ConversationContext()
        await backend.save_conversation_state(state)

        loaded = await backend.get_conversation_state("wf-1", PHONE)
        assert loaded.current_node_id == "b"
        assert loaded.context.booking_state is None
        assert await backend.get_conversation_state("wf-2", PHONE) is None


class TestFirstMessageClaim:
    @pytest.mark.asyncio
    async def test_one_claim_per_phone_and_day(self, backend):
        now = datetime.now(timezone.utc)
        assert await backend.claim_first_message(PHONE, "2026-10-19", now) is True
        assert await backend.claim_first_message(PHONE, "2026-10-19", now) is False
        assert await backend.claim_first_message(PHONE, "2026-10-20", now) is True
        assert await backend.claim_first_message("97333000002", "2026-10-19", now) is True


class TestRecords:
    @pytest.mark.asyncio
    async def test_sent_messages(self, backend):
        await backend.record_sent_message(SentMessageRecord(
            workflow_id="wf-1", message_id="wamid.1", phone=PHONE, message_kind="listMessage",
        ))
        record = await backend.find_sent_message("wamid.1")
        assert (record.workflow_id, record.message_kind) == ("wf-1", "listMessage")
        assert await backend.find_sent_message("wamid.2") is None

    @pytest.mark.asyncio
    async def test_execution_log_newest_first(self, backend):
        base = datetime(2026, 10, 19, 5, 0, tzinfo=timezone.utc)
        for i in range(3):
            await backend.append_execution_log(ExecutionLogEntry(
                workflow_id="wf-1", phone=PHONE, message_kind=MessageKind.TEXT,
                trigger={"n": i}, responses=[{"nodeId": f"n{i}"}],
                created_at=base + timedelta(minutes=i),
            ))
        await backend.append_execution_log(ExecutionLogEntry(
            workflow_id="wf-1", status=ExecutionStatus.ERROR, error="boom",
            created_at=base - timedelta(days=1),
        ))

        entries = await backend.list_execution_logs("wf-1", limit=2)
        assert [e.trigger["n"] for e in entries] == [2, 1]
        everything = await backend.list_execution_logs("wf-1")
        assert everything[-1].status == ExecutionStatus.ERROR
        assert everything[-1].error == "boom"

    @pytest.mark.asyncio
    async def test_settings(self, backend):
        assert await backend.get_setting("http_allowed_domains") is None
        await backend.set_setting("http_allowed_domains", ["example.com"])
        await backend.set_setting("http_allowed_domains", ["example.com", "api.test"])
        assert await backend.get_setting("http_allowed_domains") == ["example.com", "api.test"]

    @pytest.mark.asyncio
    async def test_active_channel(self, backend):
        await backend.save_channel(ChannelRecord(account_id=ACCOUNT, token="t-old", auth_status="EXPIRED"))
        assert await backend.get_active_channel(ACCOUNT) is None
        await backend.save_channel(ChannelRecord(account_id=ACCOUNT, token="t-new"))
        assert (await backend.get_active_channel(ACCOUNT)).token == "t-new"

    @pytest.mark.asyncio
    async def test_captured_data(self, backend):
        await backend.save_captured_data(CapturedData(
            workflow_id="wf-1", sequence_name="order", phone=PHONE,
            clicks=[CapturedClick(button_id="large", button_title="Large", node_id="size")],
        ))
        [data] = await backend.list_captured_data("wf-1")
        assert data.clicks[0].button_title == "Large"


class TestBookings:
    @pytest.fixture
    async def slots(self, backend):
        await backend.save_department(Department(id="7", account_id=ACCOUNT, name="Dental"))
        await backend.save_weekly_slot(WeeklySlot(staff_id="s1", day_of_week=1, start_time="09:00",
                                                  end_time="10:00", capacity=2))
        return backend

    @pytest.mark.asyncio
    async def test_capacity(self, slots):
        store = slots
        first = await store.create_booking(booking())
        availability = await store.check_slot_availability("s1", "2026-10-26", "09:00")
        assert (availability.available, availability.existing_count, availability.capacity) == (True, 1, 2)

        await store.create_booking(booking(customer_phone="97333000002"))
        assert not (await store.check_slot_availability("s1", "2026-10-26", "09:00")).available
        assert (await store.check_slot_availability(
            "s1", "2026-10-26", "09:00", excluding_booking_id=first.id)).available

    @pytest.mark.asyncio
    async def test_uncovered_time_is_unavailable(self, slots):
        # Tuesday, and a time that is not on the 30 minute grid
        assert not (await slots.check_slot_availability("s1", "2026-10-27", "09:00")).available
        assert not (await slots.check_slot_availability("s1", "2026-10-26", "09:15")).available

    @pytest.mark.asyncio
    async def test_cancelled_bookings_free_the_slot(self, slots):
        store = slots
        b = await store.create_booking(booking())
        updated = await store.update_booking(b.id, status=BookingStatus.CANCELLED)
        assert updated.status == BookingStatus.CANCELLED
        assert await store.count_bookings_at("s1", "2026-10-26", "09:00") == 0
        assert await store.update_booking("missing", status=BookingStatus.CANCELLED) is None

    @pytest.mark.asyncio
    async def test_customer_bookings(self, slots):
        store = slots
        late = await store.create_booking(booking(start_time="09:30", end_time="10:00"))
        early = await store.create_booking(booking())
        cancelled = await store.create_booking(booking(slot_date="2026-11-02", status=BookingStatus.CANCELLED))

        assert [b.id for b in await store.list_customer_bookings(ACCOUNT, PHONE)] == \
            [early.id, late.id, cancelled.id]
        confirmed = await store.list_customer_bookings(ACCOUNT, PHONE, [BookingStatus.CONFIRMED])
        assert [b.id for b in confirmed] == [early.id, late.id]
        assert await store.list_customer_bookings("acct-2", PHONE) == []


class TestStoreFactory:
    def test_backends(self):
        assert isinstance(create_store({"store_backend": "sql"}), SqlStore)
        assert isinstance(create_store({"store_backend": "memory"}), InMemoryStore)
        assert isinstance(create_store(), InMemoryStore)

    def test_unknown_backend_falls_back_to_memory(self):
        assert isinstance(create_store({"store_backend": "redis"}), InMemoryStore)

    def test_each_call_builds_a_fresh_store(self):
        assert create_store() is not create_store()
