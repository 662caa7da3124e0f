"""
Webhook Orchestrator — the entry point for every inbound WHAPI delivery.

Architecture:
  POST /webhooks/whapi/{account_id}/{token}
    → authenticate (account, token) → workflow
    → normalize payload → InboundEvent
    → ignorable?            ack, nothing else
    → workflow inactive?    log only
    → text:
        booking name/answer capture   → BookingFlow.handle_text
        first message of the day      → FirstMessageTrigger (all workflows), chatbot label
        otherwise                     → inquiry (inquiry label)
    → interactive:
        ownership FOREIGN             → ack, not handled
        booking reply                 → BookingFlow.handle_reply
        edge resolution               → EdgeResolver → capture → NodeExecutor
    → execution log entry

Only authentication and persistence failures escape to the caller.
Node, provider and configuration failures become an ERROR log entry and
the delivery is still acknowledged, so the provider does not retry it.
"""
from __future__ import annotations

import structlog
from datetime import datetime
from typing import Any, Callable, Optional

from booking.flow import BookingFlow
from config.settings import Settings, get_settings
from context.tracker import ConversationTracker
from core.capture import CaptureRecorder
from core.dispatch import ClientProvider, MessageDispatcher
from core.edge_resolver import EdgeResolver
from core.errors import WebhookAuthError
from core.executor import NodeExecutor
from core.first_message import FirstMessageTrigger
from core.http_action import SecureHttpAction
from core.ownership import Ownership, OwnershipResolver
from core.run import ExecutionRun
from channels.normalizer import normalize_event
from database.store_base import BaseStore, PersistenceError
from models.graph import WorkflowGraph
from models.schemas import (
    EventKind, ExecutionLogEntry, ExecutionStatus, InboundEvent, MessageKind,
    TEXT_CAPTURE_STEPS, Workflow,
)

logger = structlog.get_logger()

INACTIVE_NOTE = "Workflow inactive - message logged only"


class WebhookOrchestrator:
    """
    Wires the engine components together and routes one delivery at a time.
    Deliveries may run concurrently; per-conversation ordering is enforced
    by the tracker's keyed locks.
    """

    def __init__(
        self,
        store: BaseStore,
        clients: ClientProvider,
        settings: Settings = None,
        http_action: SecureHttpAction = None,
        resolver: EdgeResolver = None,
        booking_clock: Callable[[], datetime] = None,
    ):
        self.settings = settings or get_settings()
        self.store = store
        self.tracker = ConversationTracker(store, self.settings.timezone)
        self.dispatcher = MessageDispatcher(store, clients)
        self.http_action = http_action or SecureHttpAction(store, self.settings.http_action)
        self.booking = BookingFlow(
            store, self.dispatcher, self.settings.booking, self.settings.timezone,
            now=booking_clock, tracker=self.tracker,
        )
        self.executor = NodeExecutor(self.tracker, self.dispatcher, self.http_action, self.booking)
        self.resolver = resolver or EdgeResolver()
        self.ownership = OwnershipResolver(store)
        self.capture = CaptureRecorder(store)
        self.first_message = FirstMessageTrigger(store, self.tracker, self.executor)

    # ══════════════════════════════════════════════════════════
    #  MAIN ENTRY POINT
    # ══════════════════════════════════════════════════════════

    async def handle_webhook(self, account_id: str, webhook_token: str,
                             payload: dict[str, Any]) -> dict[str, Any]:
        workflow = await self.store.get_workflow_by_token(account_id, webhook_token)
        if workflow is None:
            logger.warning("webhook_unauthorized", account_id=account_id)
            raise WebhookAuthError(account_id)

        event = normalize_event(payload)
        if event.is_ignorable:
            logger.debug("webhook_ignored", workflow_id=workflow.id, reason=event.ignore_reason)
            return {"success": True, "ignored": True, "reason": event.ignore_reason}

        logger.info("webhook_received", workflow_id=workflow.id, phone=event.phone,
                    kind=event.kind.value, reply_id=event.reply_id or None)

        if not workflow.is_active:
            await self._write_log(ExecutionLogEntry(
                workflow_id=workflow.id, phone=event.phone,
                message_kind=self._log_kind(event), trigger=payload,
                responses=[{"note": INACTIVE_NOTE}],
            ))
            return {"success": True, "handled": False, "message": INACTIVE_NOTE}

        graph = WorkflowGraph.from_definition(workflow.definition)
        if event.kind == EventKind.TEXT:
            return await self._handle_text(workflow, graph, event, payload)
        return await self._handle_interactive(workflow, graph, event, payload)

    # ══════════════════════════════════════════════════════════
    #  TEXT
    # ══════════════════════════════════════════════════════════

    async def _handle_text(self, workflow: Workflow, graph: WorkflowGraph,
                           event: InboundEvent, payload: dict[str, Any]) -> dict[str, Any]:
        booking_result = await self._booking_text(workflow, graph, event, payload)
        if booking_result is not None:
            return booking_result

        outcome = await self.first_message.handle(workflow.account_id, event, payload)
        if outcome.claimed:
            for entry in outcome.entries:
                await self._write_log(entry)
            if outcome.entry_for(workflow.id) is None:
                await self._write_log(ExecutionLogEntry(
                    workflow_id=workflow.id, phone=event.phone,
                    message_kind=MessageKind.TEXT, trigger=payload,
                ))
            await self.dispatcher.assign_label(
                workflow.account_id, self.settings.whapi.chatbot_label_id, event.chat_id,
            )
            return {
                "success": True,
                "handled": True,
                "firstMessage": True,
                "workflowsStarted": len(outcome.entries),
            }

        await self.dispatcher.assign_label(
            workflow.account_id, self.settings.whapi.inquiry_label_id, event.chat_id,
        )
        await self._write_log(ExecutionLogEntry(
            workflow_id=workflow.id, phone=event.phone,
            message_kind=MessageKind.INQUIRY, trigger=payload,
        ))
        return {"success": True, "handled": True, "inquiry": True}

    async def _booking_text(self, workflow: Workflow, graph: WorkflowGraph,
                            event: InboundEvent, payload: dict[str, Any]) -> Optional[dict[str, Any]]:
        """Free text answering a booking question; None when no such question is open."""
        entry = ExecutionLogEntry(workflow_id=workflow.id, phone=event.phone,
                                  message_kind=MessageKind.TEXT, trigger=payload)
        async with self.tracker.hold(workflow.id, event.phone):
            state = await self.tracker.load(workflow.id, event.phone)
            booking = state.context.booking_state
            if booking is None or booking.step not in TEXT_CAPTURE_STEPS:
                return None

            run = ExecutionRun(workflow, graph, state, event)
            try:
                self.tracker.touch(state, event.timestamp)
                outcome = await self.booking.handle_text(run, event.text)
                await self.tracker.save(run.state)
                if outcome.continues:
                    await self.executor.continue_from(run, outcome.node_id, outcome.handle)
            except PersistenceError:
                raise
            except Exception as e:
                self._fail(entry, run, e)
            entry.responses = run.responses

        await self._write_log(entry)
        return {"success": True, "handled": True, "booking": True, "status": entry.status.value}

    # ══════════════════════════════════════════════════════════
    #  INTERACTIVE
    # ══════════════════════════════════════════════════════════

    async def _handle_interactive(self, workflow: Workflow, graph: WorkflowGraph,
                                  event: InboundEvent, payload: dict[str, Any]) -> dict[str, Any]:
        ownership = await self.ownership.check(workflow.id, event.quoted_message_id)
        if ownership == Ownership.FOREIGN:
            return {"success": True, "handled": False, "reason": "owned_by_other_workflow"}

        entry = ExecutionLogEntry(workflow_id=workflow.id, phone=event.phone,
                                  message_kind=MessageKind.BUTTON_REPLY, trigger=payload)
        async with self.tracker.hold(workflow.id, event.phone):
            state = await self.tracker.load(workflow.id, event.phone)
            run = ExecutionRun(workflow, graph, state, event)
            try:
                handled = await self._route_reply(run)
            except PersistenceError:
                raise
            except Exception as e:
                self._fail(entry, run, e)
                handled = True
            entry.responses = run.responses

        if not handled:
            return {"success": True, "handled": False, "reason": "no_matching_edge"}
        await self._write_log(entry)
        return {"success": True, "handled": True, "status": entry.status.value}

    async def _route_reply(self, run: ExecutionRun) -> bool:
        reply_id = run.event.reply_id

        if self.booking.claims(run, reply_id):
            self.tracker.touch(run.state, run.event.timestamp)
            outcome = await self.booking.handle_reply(run, reply_id)
            await self.tracker.save(run.state)
            if outcome.handled:
                if outcome.continues:
                    await self.executor.continue_from(run, outcome.node_id, outcome.handle)
                return True

        resolution = self.resolver.resolve(run.graph, reply_id)
        if resolution is None:
            logger.info("reply_unmatched", workflow_id=run.workflow.id, reply_id=reply_id)
            return False

        edge = resolution.edge
        logger.info("reply_matched", workflow_id=run.workflow.id, reply_id=reply_id,
                    strategy=resolution.strategy, source=edge.source, target=edge.target)
        await self.capture.record_reply(run, run.graph.get_node(edge.source))
        self.tracker.touch(run.state, run.event.timestamp)
        await self.tracker.save(run.state)
        await self.executor.run_chain(run, edge.target)
        return True

    # ══════════════════════════════════════════════════════════
    #  EXECUTION LOG
    # ══════════════════════════════════════════════════════════

    @staticmethod
    def _log_kind(event: InboundEvent) -> MessageKind:
        if event.kind == EventKind.INTERACTIVE:
            return MessageKind.BUTTON_REPLY
        if event.kind == EventKind.TEXT:
            return MessageKind.TEXT
        return MessageKind.OTHER

    @staticmethod
    def _fail(entry: ExecutionLogEntry, run: ExecutionRun, error: Exception) -> None:
        logger.error("workflow_execution_failed", workflow_id=run.workflow.id, phone=run.phone,
                     node_id=getattr(error, "node_id", None) or run.state.current_node_id,
                     error=str(error), error_type=type(error).__name__)
        entry.status = ExecutionStatus.ERROR
        entry.error = str(error)

    async def _write_log(self, entry: ExecutionLogEntry) -> None:
        """Never raises; the delivery outcome is already decided."""
        try:
            await self.store.append_execution_log(entry)
        except Exception as e:
            logger.error("execution_log_write_failed", workflow_id=entry.workflow_id, error=str(e))
