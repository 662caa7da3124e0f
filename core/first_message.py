"""
First-message-of-day trigger.

The first text a phone sends on a local calendar day (reference time
zone) starts every active workflow of the account at its entry node.
Any later text that day is an inquiry: no node runs, and the chat is
labelled for a human instead.

The claim is a single insert against the unique (phone, date) flag, so
of several concurrent deliveries exactly one wins.
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass, field
from typing import Any

from context.tracker import ConversationTracker
from core.errors import NodeExecutionError
from core.executor import NodeExecutor
from core.run import ExecutionRun
from database.store_base import BaseWorkflowStore, PersistenceError
from models.graph import WorkflowGraph
from models.schemas import (
    ExecutionLogEntry, ExecutionStatus, InboundEvent, MessageKind, Workflow,
)

logger = structlog.get_logger()


@dataclass
class FirstMessageOutcome:
    claimed: bool
    date_local: str
    entries: list[ExecutionLogEntry] = field(default_factory=list)

    def entry_for(self, workflow_id: str):
        for entry in self.entries:
            if entry.workflow_id == workflow_id:
                return entry
        return None


class FirstMessageTrigger:

    def __init__(self, store: BaseWorkflowStore, tracker: ConversationTracker, executor: NodeExecutor):
        self.store = store
        self.tracker = tracker
        self.executor = executor

    async def handle(self, account_id: str, event: InboundEvent,
                     trigger: dict[str, Any] = None) -> FirstMessageOutcome:
        date_local = self.tracker.local_date(event.timestamp)
        claimed = await self.store.claim_first_message(event.phone, date_local, event.timestamp)
        outcome = FirstMessageOutcome(claimed=claimed, date_local=date_local)
        if not claimed:
            logger.info("first_message_already_claimed", phone=event.phone, date=date_local)
            return outcome

        workflows = [w for w in await self.store.list_active_workflows(account_id) if w.entry_node_id]
        logger.info("first_message_claimed", account_id=account_id, phone=event.phone,
                    date=date_local, workflows=len(workflows))
        for workflow in workflows:
            outcome.entries.append(await self._start_workflow(workflow, event, trigger or {}))
        return outcome

    async def _start_workflow(self, workflow: Workflow, event: InboundEvent,
                              trigger: dict[str, Any]) -> ExecutionLogEntry:
        entry = ExecutionLogEntry(
            workflow_id=workflow.id, phone=event.phone,
            message_kind=MessageKind.TEXT, trigger=trigger,
        )
        graph = WorkflowGraph.from_definition(workflow.definition)
        run = None
        try:
            async with self.tracker.hold(workflow.id, event.phone):
                state = await self.tracker.load(workflow.id, event.phone)
                run = ExecutionRun(workflow, graph, state, event)
                node = graph.get_node(workflow.entry_node_id)
                if node is None:
                    raise NodeExecutionError(f"Entry node not found: {workflow.entry_node_id}",
                                             workflow.entry_node_id)
                self.tracker.touch(state, event.timestamp)
                await self.executor.run_single(run, node)
        except PersistenceError:
            raise
        except Exception as e:
            logger.error("first_message_workflow_failed", workflow_id=workflow.id,
                         phone=event.phone, error=str(e))
            entry.status = ExecutionStatus.ERROR
            entry.error = str(e)

        if run is not None:
            entry.responses = run.responses
        return entry
