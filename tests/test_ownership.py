"""Tests for reply ownership between workflows sharing a chat."""
import pytest

from core.ownership import Ownership, OwnershipResolver
from models.schemas import SentMessageRecord
from tests.factories import ACCOUNT, PHONE, edge, quick_reply, reply_payload, text_node, text_payload


class TestOwnershipResolver:
    @pytest.fixture
    async def resolver(self, store):
        await store.record_sent_message(SentMessageRecord(
            workflow_id="wf-a", message_id="wamid.sent-by-a", phone=PHONE, message_kind="quickReply",
        ))
        return OwnershipResolver(store)

    @pytest.mark.asyncio
    async def test_owned(self, resolver):
        assert await resolver.check("wf-a", "wamid.sent-by-a") == Ownership.OWNED

    @pytest.mark.asyncio
    async def test_foreign(self, resolver):
        assert await resolver.check("wf-b", "wamid.sent-by-a") == Ownership.FOREIGN

    @pytest.mark.asyncio
    async def test_untracked(self, resolver):
        assert await resolver.check("wf-a", None) == Ownership.UNTRACKED
        assert await resolver.check("wf-a", "") == Ownership.UNTRACKED
        assert await resolver.check("wf-a", "wamid.unknown") == Ownership.UNTRACKED

    @pytest.mark.asyncio
    async def test_replay_gives_same_answer(self, resolver):
        first = await resolver.check("wf-b", "wamid.sent-by-a")
        second = await resolver.check("wf-b", "wamid.sent-by-a")
        assert first == second == Ownership.FOREIGN


class TestSharedChat:
    """Two workflows of one account both greet the participant with the same button id."""

    @pytest.fixture
    async def workflows(self, make_workflow):
        a = await make_workflow(
            [quick_reply("qa", "Sales?", ("yes", "Yes")), text_node("ta", "Sales here")],
            [edge("qa", "ta", "yes")], entry_node_id="qa", name="Sales",
        )
        b = await make_workflow(
            [quick_reply("qb", "Support?", ("yes", "Yes")), text_node("tb", "Support here")],
            [edge("qb", "tb", "yes")], entry_node_id="qb", name="Support",
        )
        return a, b

    @pytest.mark.asyncio
    async def test_each_workflow_handles_only_its_own_reply(self, orchestrator, workflows, client, store):
        a, b = workflows
        await orchestrator.handle_webhook(ACCOUNT, a.webhook_token, text_payload("hi"))
        sent = {r["nodeId"]: r["messageId"]
                for wf in (a, b) for e in await store.list_execution_logs(wf.id) for r in e.responses}

        quoted_a = reply_payload("yes", "Yes", quoted=sent["qa"])
        foreign = await orchestrator.handle_webhook(ACCOUNT, b.webhook_token, quoted_a)
        assert foreign == {"success": True, "handled": False, "reason": "owned_by_other_workflow"}
        state_b = await store.get_conversation_state(b.id, PHONE)
        assert state_b.current_node_id == "qb"

        owned = await orchestrator.handle_webhook(ACCOUNT, a.webhook_token, quoted_a)
        assert owned["handled"] is True
        assert client.texts() == ["Sales here"]

    @pytest.mark.asyncio
    async def test_unquoted_reply_is_handled_by_token_workflow(self, orchestrator, workflows, client):
        a, b = workflows
        await orchestrator.handle_webhook(ACCOUNT, a.webhook_token, text_payload("hi"))
        result = await orchestrator.handle_webhook(ACCOUNT, b.webhook_token, reply_payload("yes", "Yes"))
        assert result["handled"] is True
        assert client.texts() == ["Support here"]
