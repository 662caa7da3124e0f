"""
Tests for WebhookOrchestrator routing.

Covers:
  - Authentication and ignorable deliveries
  - Inactive workflows (log only)
  - Interactive replies: edge resolution, unmatched replies, chain errors
  - Capture sequences
  - Persistence failures escaping to the caller
"""
from unittest.mock import AsyncMock, patch

import pytest

from channels.base import ProviderError
from core.errors import WebhookAuthError
from core.orchestrator import INACTIVE_NOTE
from database.store_base import PersistenceError
from database.store_memory import InMemoryStore
from models.schemas import ExecutionStatus, MessageKind
from tests.factories import (
    ACCOUNT, PHONE, edge, node, quick_reply, reply_payload, text_node, text_payload,
)


class TestAuthentication:
    @pytest.mark.asyncio
    async def test_unknown_token(self, orchestrator, make_workflow):
        await make_workflow([text_node("a", "hi")], [])
        with pytest.raises(WebhookAuthError):
            await orchestrator.handle_webhook(ACCOUNT, "not-a-token", text_payload("hi"))

    @pytest.mark.asyncio
    async def test_token_of_other_account(self, orchestrator, make_workflow):
        wf = await make_workflow([text_node("a", "hi")], [])
        with pytest.raises(WebhookAuthError):
            await orchestrator.handle_webhook("acct-2", wf.webhook_token, text_payload("hi"))


class TestIgnorable:
    @pytest.mark.asyncio
    async def test_outbound_echo(self, orchestrator, make_workflow, store, client):
        wf = await make_workflow([text_node("a", "hi")], [], entry_node_id="a")
        payload = text_payload("hi")
        payload["messages"][0]["from_me"] = True

        result = await orchestrator.handle_webhook(ACCOUNT, wf.webhook_token, payload)

        assert result == {"success": True, "ignored": True, "reason": "outbound_echo"}
        assert client.sent == []
        assert await store.list_execution_logs(wf.id) == []

    @pytest.mark.asyncio
    async def test_status_event(self, orchestrator, make_workflow):
        wf = await make_workflow([text_node("a", "hi")], [])
        result = await orchestrator.handle_webhook(ACCOUNT, wf.webhook_token, {"statuses": [{"id": "x"}]})
        assert result["ignored"] is True

    @pytest.mark.asyncio
    async def test_malformed_message_is_acknowledged(self, orchestrator, make_workflow, client):
        wf = await make_workflow([text_node("a", "hi")], [], entry_node_id="a")
        payload = text_payload("hi")
        payload["messages"][0]["text"] = "hi"

        result = await orchestrator.handle_webhook(ACCOUNT, wf.webhook_token, payload)

        assert result == {"success": True, "ignored": True, "reason": "no_content"}
        assert client.sent == []


class TestInactiveWorkflow:
    @pytest.mark.asyncio
    async def test_logged_only(self, orchestrator, make_workflow, store, client):
        wf = await make_workflow([text_node("a", "hi")], [], entry_node_id="a", is_active=False)

        result = await orchestrator.handle_webhook(ACCOUNT, wf.webhook_token, text_payload("hello"))

        assert result == {"success": True, "handled": False, "message": INACTIVE_NOTE}
        assert client.sent == []
        [entry] = await store.list_execution_logs(wf.id)
        assert entry.message_kind == MessageKind.TEXT
        assert entry.responses == [{"note": INACTIVE_NOTE}]
        assert await store.get_conversation_state(wf.id, PHONE) is None

    @pytest.mark.asyncio
    async def test_reply_logged_as_button_reply(self, orchestrator, make_workflow, store):
        wf = await make_workflow([text_node("a", "hi")], [], is_active=False)
        await orchestrator.handle_webhook(ACCOUNT, wf.webhook_token, reply_payload("yes"))
        [entry] = await store.list_execution_logs(wf.id)
        assert entry.message_kind == MessageKind.BUTTON_REPLY


class TestReplies:
    @pytest.fixture
    async def workflow(self, make_workflow):
        return await make_workflow(
            [quick_reply("menu", "Pick one", ("opt_a", "A"), ("opt_b", "B")),
             text_node("a1", "You chose A"), text_node("a2", "Great choice"),
             text_node("b1", "You chose B")],
            [edge("menu", "a1", "opt_a"), edge("a1", "a2"), edge("menu", "b1", "opt_b")],
            entry_node_id="menu",
        )

    @pytest.mark.asyncio
    async def test_reply_runs_chain(self, orchestrator, workflow, client, store):
        await orchestrator.handle_webhook(ACCOUNT, workflow.webhook_token, text_payload("hi"))
        result = await orchestrator.handle_webhook(ACCOUNT, workflow.webhook_token, reply_payload("opt_a", "A"))

        assert result == {"success": True, "handled": True, "status": "SUCCESS"}
        assert client.texts() == ["You chose A", "Great choice"]
        state = await store.get_conversation_state(workflow.id, PHONE)
        assert state.current_node_id == "a2"

        entries = await store.list_execution_logs(workflow.id)
        reply_entry = next(e for e in entries if e.message_kind == MessageKind.BUTTON_REPLY)
        assert [r["nodeId"] for r in reply_entry.responses] == ["a1", "a2"]
        assert reply_entry.trigger["messages"][0]["reply"]["buttons_reply"]["id"] == "opt_a"

    @pytest.mark.asyncio
    async def test_reply_without_prior_state(self, orchestrator, workflow, client):
        result = await orchestrator.handle_webhook(ACCOUNT, workflow.webhook_token, reply_payload("opt_b"))
        assert result["handled"] is True
        assert client.texts() == ["You chose B"]

    @pytest.mark.asyncio
    async def test_unmatched_reply(self, orchestrator, workflow, store):
        result = await orchestrator.handle_webhook(ACCOUNT, workflow.webhook_token, reply_payload("opt_z"))
        assert result == {"success": True, "handled": False, "reason": "no_matching_edge"}
        assert await store.list_execution_logs(workflow.id) == []

    @pytest.mark.asyncio
    async def test_chain_error_is_logged_and_acknowledged(self, orchestrator, make_workflow, store, client):
        wf = await make_workflow(
            [quick_reply("menu", "Go?", ("go", "Go")), text_node("t", "Working"), node("bad", "ai.agent")],
            [edge("menu", "t", "go"), edge("t", "bad")],
        )
        result = await orchestrator.handle_webhook(ACCOUNT, wf.webhook_token, reply_payload("go"))

        assert result == {"success": True, "handled": True, "status": "ERROR"}
        [entry] = await store.list_execution_logs(wf.id)
        assert entry.status == ExecutionStatus.ERROR
        assert entry.error == "Unsupported node type: ai.agent"
        assert [r["nodeId"] for r in entry.responses] == ["t"]
        assert client.texts() == ["Working"]

    @pytest.mark.asyncio
    async def test_provider_failure_is_logged(self, orchestrator, workflow, client, store):
        client.fail_with = ProviderError("gateway down")
        result = await orchestrator.handle_webhook(ACCOUNT, workflow.webhook_token, reply_payload("opt_a"))

        assert result["status"] == "ERROR"
        [entry] = await store.list_execution_logs(workflow.id)
        assert "gateway down" in entry.error


class TestCapture:
    @pytest.mark.asyncio
    async def test_sequence_is_saved(self, orchestrator, make_workflow, store):
        wf = await make_workflow(
            [quick_reply("size", "Size?", ("small", "Small"), ("large", "Large"),
                         isCaptureStart=True, captureSequenceName="order"),
             quick_reply("colour", "Colour?", ("red", "Red"), isCaptureEnd=True),
             text_node("thanks", "Thanks!")],
            [edge("size", "colour", "large"), edge("colour", "thanks", "red")],
            entry_node_id="size", name="Shop",
        )
        token = wf.webhook_token
        await orchestrator.handle_webhook(ACCOUNT, token, text_payload("hi"))
        await orchestrator.handle_webhook(ACCOUNT, token, reply_payload("large", "Large"))

        state = await store.get_conversation_state(wf.id, PHONE)
        assert [c.button_id for c in state.context.capture_state.clicks] == ["large"]

        await orchestrator.handle_webhook(ACCOUNT, token, reply_payload("red"))

        [captured] = await store.list_captured_data(wf.id)
        assert captured.sequence_name == "order"
        assert captured.workflow_name == "Shop"
        assert [(c.button_id, c.button_title, c.node_id) for c in captured.clicks] == [
            ("large", "Large", "size"), ("red", "Red", "colour"),
        ]
        state = await store.get_conversation_state(wf.id, PHONE)
        assert state.context.capture_state is None

    @pytest.mark.asyncio
    async def test_reply_outside_sequence_is_not_captured(self, orchestrator, make_workflow, store):
        wf = await make_workflow(
            [quick_reply("q", "Ok?", ("ok", "Ok"), isCaptureEnd=True), text_node("t", "Done")],
            [edge("q", "t", "ok")],
        )
        await orchestrator.handle_webhook(ACCOUNT, wf.webhook_token, reply_payload("ok"))
        assert await store.list_captured_data(wf.id) == []


class FailingStore(InMemoryStore):
    async def save_conversation_state(self, state):
        raise PersistenceError("database unavailable")


class TestPersistenceFailure:
    @pytest.fixture
    def store(self):
        return FailingStore()

    @pytest.mark.asyncio
    async def test_propagates(self, orchestrator, make_workflow):
        wf = await make_workflow(
            [quick_reply("q", "Ok?", ("ok", "Ok")), text_node("t", "Done")],
            [edge("q", "t", "ok")],
        )
        with pytest.raises(PersistenceError):
            await orchestrator.handle_webhook(ACCOUNT, wf.webhook_token, reply_payload("ok"))


class TestExecutionLogWrites:
    @pytest.mark.asyncio
    async def test_log_failure_does_not_fail_delivery(self, orchestrator, make_workflow, store, client):
        wf = await make_workflow(
            [quick_reply("q", "Ok?", ("ok", "Ok")), text_node("t", "Done")],
            [edge("q", "t", "ok")],
        )
        with patch.object(store, "append_execution_log",
                          AsyncMock(side_effect=PersistenceError("log table locked"))) as append:
            result = await orchestrator.handle_webhook(ACCOUNT, wf.webhook_token, reply_payload("ok"))

        assert result["handled"] is True
        assert client.texts() == ["Done"]
        append.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_label_failure_does_not_fail_inquiry(self, orchestrator, make_workflow, client):
        wf = await make_workflow([text_node("a", "hi")], [], entry_node_id="a")
        await orchestrator.handle_webhook(ACCOUNT, wf.webhook_token, text_payload("hi"))

        with patch.object(client, "assign_label", AsyncMock(return_value=False)) as assign:
            result = await orchestrator.handle_webhook(ACCOUNT, wf.webhook_token, text_payload("again"))

        assert result["inquiry"] is True
        assign.assert_awaited_once_with("label-inquiry", f"{PHONE}@s.whatsapp.net")
