"""ExecutionRun — everything one inbound event's chain execution touches."""
from __future__ import annotations

from typing import Any, Optional

from models.graph import WorkflowGraph
from models.schemas import ConversationState, InboundEvent, Workflow


class ExecutionRun:
    """
    Mutable working set for one (workflow, phone) while handling one event.
    `responses` accumulates every message sent and ends up in the
    execution log entry for the triggering event.
    """

    def __init__(
        self,
        workflow: Workflow,
        graph: WorkflowGraph,
        state: ConversationState,
        event: InboundEvent,
    ):
        self.workflow = workflow
        self.graph = graph
        self.state = state
        self.event = event
        self.responses: list[dict[str, Any]] = []
        self.visited: list[str] = []
        self.client = None          # messaging client, resolved lazily by the dispatcher
        self.stop_reason: Optional[str] = None

    @property
    def account_id(self) -> str:
        return self.workflow.account_id

    @property
    def phone(self) -> str:
        return self.state.phone

    def template_context(self) -> dict[str, Any]:
        """Stored context plus inbound-event fields, for {{...}} resolution."""
        stored = self.state.context.to_storage()
        return {
            **stored,
            "phone": self.phone,
            "name": stored.get("name", ""),
            "email": stored.get("email", ""),
            "message": {
                "text": self.event.text or self.event.reply_title,
                "from": self.event.phone,
                "timestamp": self.event.timestamp.isoformat(),
                "replyId": self.event.reply_id,
            },
        }

    def __repr__(self):
        return (f"<ExecutionRun workflow={self.workflow.id} phone={self.phone} "
                f"visited={len(self.visited)} responses={len(self.responses)}>")
