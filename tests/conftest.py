"""Shared test fixtures for FlowRelay."""
import pytest

from channels.whapi_client import WhapiClientPool
from config.settings import Settings, WhapiConfig
from core.orchestrator import WebhookOrchestrator
from database.store_memory import InMemoryStore
from models.schemas import ChannelRecord, Department, Staff, WeeklySlot, Workflow
from tests.factories import ACCOUNT, CHANNEL_TOKEN, NOW


@pytest.fixture
def settings() -> Settings:
    return Settings(whapi=WhapiConfig(mock=True, inquiry_label_id="label-inquiry"))


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def pool(settings) -> WhapiClientPool:
    return WhapiClientPool(settings.whapi)


@pytest.fixture
def client(pool):
    """The mock messaging client the account's channel resolves to."""
    return pool.get(CHANNEL_TOKEN)


@pytest.fixture
def orchestrator(store, pool, settings) -> WebhookOrchestrator:
    return WebhookOrchestrator(store, pool, settings, booking_clock=lambda: NOW)


@pytest.fixture
async def channel(store) -> ChannelRecord:
    return await store.save_channel(ChannelRecord(account_id=ACCOUNT, token=CHANNEL_TOKEN))


@pytest.fixture
def make_workflow(store, channel):
    async def _make(nodes, edges, entry_node_id=None, is_active=True, name="Main", **kwargs) -> Workflow:
        workflow = Workflow(
            account_id=ACCOUNT,
            name=name,
            is_active=is_active,
            entry_node_id=entry_node_id,
            definition={"nodes": nodes, "edges": edges},
            **kwargs,
        )
        return await store.save_workflow(workflow)
    return _make


@pytest.fixture
async def clinic(store):
    """One department, one doctor, Mondays 09:00-10:00 in 30 minute slots."""
    dept = await store.save_department(Department(id="7", account_id=ACCOUNT, name="Dental"))
    doctor = await store.save_staff(Staff(id="s1", account_id=ACCOUNT, department_id="7", name="Dr Amal"))
    await store.save_weekly_slot(WeeklySlot(
        staff_id="s1", day_of_week=1, start_time="09:00", end_time="10:00", slot_duration=30,
    ))
    return {"department": dept, "staff": doctor}
