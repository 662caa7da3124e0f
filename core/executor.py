"""
Node Executor — walks a workflow graph from a node until it must wait.

Architecture:
  Orchestrator → NodeExecutor.run_chain(run, start_node_id)
    → execute node: message / interactive / http_request / booking
    → persist ConversationState at the node boundary
    → follow the node's next edge, or stop
  A chain stops when:
    - an interactive node was sent (the participant must reply)
    - a booking sub-flow is waiting for input
    - a node has no edge to follow
    - a node fails (NodeExecutionError propagates to the orchestrator)

Every chain is bounded: visiting more nodes than the graph contains
raises CycleGuardError, so a cyclic definition can never loop forever.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Optional

from channels.payloads import build_node_message
from context.tracker import ConversationTracker
from core.dispatch import MessageDispatcher
from core.edge_resolver import first_outgoing, follow_handle
from core.errors import CycleGuardError, NodeConfigError, NodeExecutionError
from core.http_action import SecureHttpAction, build_request
from core.run import ExecutionRun
from models.graph import (
    BOOKING_KINDS, INTERACTIVE_KINDS, MESSAGE_KINDS, Edge, HttpRequestConfig, Node, NodeKind,
)
from models.schemas import CaptureState

logger = structlog.get_logger()


class NodeOutcome:
    """What happened at one node and where the chain goes next."""

    def __init__(self, wait: bool = False, next_edge: Optional[Edge] = None):
        self.wait = wait
        self.next_edge = next_edge

    @property
    def next_node_id(self) -> Optional[str]:
        return self.next_edge.target if self.next_edge else None

    def __repr__(self):
        return f"<NodeOutcome wait={self.wait} next={self.next_node_id}>"


class NodeExecutor:
    """
    Executes nodes against an ExecutionRun.

    The booking sub-flow is optional; booking nodes fail without one.
    """

    def __init__(
        self,
        tracker: ConversationTracker,
        dispatcher: MessageDispatcher,
        http_action: SecureHttpAction,
        booking=None,
    ):
        self.tracker = tracker
        self.dispatcher = dispatcher
        self.http_action = http_action
        self.booking = booking

    # ══════════════════════════════════════════════════════════
    #  MAIN ENTRY POINTS
    # ══════════════════════════════════════════════════════════

    async def run_chain(self, run: ExecutionRun, start_node_id: str) -> None:
        """Execute from start_node_id until the chain waits or ends."""
        limit = run.graph.node_count
        node_id: Optional[str] = start_node_id
        steps = 0

        while node_id:
            node = run.graph.get_node(node_id)
            if node is None:
                logger.warning("chain_target_missing", workflow_id=run.workflow.id, node_id=node_id)
                run.stop_reason = "missing_node"
                return
            if steps >= limit:
                logger.error("chain_cycle_guard", workflow_id=run.workflow.id,
                             node_id=node_id, visited=run.visited[-limit:])
                raise CycleGuardError(node_id, limit)
            steps += 1

            outcome = await self.execute_node(run, node)
            await self.tracker.save(run.state)
            if outcome.wait:
                run.stop_reason = "waiting"
                return
            node_id = outcome.next_node_id

        run.stop_reason = run.stop_reason or "end_of_chain"

    async def run_single(self, run: ExecutionRun, node: Node) -> NodeOutcome:
        """Execute one node without following its edges."""
        outcome = await self.execute_node(run, node)
        await self.tracker.save(run.state)
        return outcome

    async def continue_from(self, run: ExecutionRun, node_id: str, handle: Optional[str] = None) -> None:
        """Resume after a node resolved out-of-band (booking reply)."""
        if handle:
            edge = follow_handle(run.graph, node_id, handle)
        else:
            edge = first_outgoing(run.graph, node_id)
        if edge is None:
            logger.debug("chain_no_continuation", node_id=node_id, handle=handle)
            return
        await self.run_chain(run, edge.target)

    # ══════════════════════════════════════════════════════════
    #  NODE DISPATCH
    # ══════════════════════════════════════════════════════════

    async def execute_node(self, run: ExecutionRun, node: Node) -> NodeOutcome:
        if node.config_error:
            raise NodeConfigError(f"Invalid config for node {node.id}: {node.config_error}", node.id)

        run.visited.append(node.id)
        run.state.current_node_id = node.id
        logger.debug("node_executing", workflow_id=run.workflow.id, node_id=node.id, kind=node.kind.value)

        kind = node.kind
        if kind in MESSAGE_KINDS:
            await self._send_node(run, node)
            return NodeOutcome(next_edge=first_outgoing(run.graph, node.id))

        elif kind in INTERACTIVE_KINDS:
            await self._send_node(run, node)
            self._open_capture(run, node)
            return NodeOutcome(wait=True)

        elif kind == NodeKind.HTTP_REQUEST:
            return await self._execute_http(run, node)

        elif kind in BOOKING_KINDS:
            if self.booking is None:
                raise NodeExecutionError("Booking is not configured", node.id)
            result = await self.booking.start(run, node)
            return self._from_booking(run, node.id, result)

        else:
            raise NodeExecutionError(f"Unsupported node type: {node.raw_type or 'missing'}", node.id)

    # ── Message nodes ─────────────────────────────────────────

    async def _send_node(self, run: ExecutionRun, node: Node) -> str:
        message = build_node_message(node, run.phone)
        if message is None:
            raise NodeConfigError(f"Node {node.id} has no sendable message", node.id)
        return await self.dispatcher.send(run, message, node.id)

    def _open_capture(self, run: ExecutionRun, node: Node) -> None:
        flags = node.capture
        if flags is None or not flags.is_capture_start:
            return
        capture = CaptureState(
            sequence_name=flags.capture_sequence_name or node.id,
            start_node_id=node.id,
        )
        self.tracker.replace_capture_state(run.state, capture)
        logger.info("capture_started", workflow_id=run.workflow.id,
                    sequence=capture.sequence_name, node_id=node.id)

    # ── HTTP nodes ────────────────────────────────────────────

    async def _execute_http(self, run: ExecutionRun, node: Node) -> NodeOutcome:
        cfg = node.config
        if not isinstance(cfg, HttpRequestConfig) or not cfg.url:
            raise NodeConfigError(f"HTTP node {node.id} has no URL", node.id)

        request = build_request(cfg, run.template_context())
        result = await self.http_action.perform(request)

        context = run.state.context
        http = dict(context.http)
        http[node.id] = result.to_context(datetime.now(timezone.utc))
        variables = {**context.variables, **result.mapped_variables}
        run.state.context = context.model_copy(update={"http": http, "variables": variables})

        handle = "success" if result.success else "error"
        run.responses.append({
            "nodeId": node.id,
            "kind": node.kind.value,
            "status": result.status,
            "success": result.success,
            "error": result.error,
        })
        logger.info("http_node_completed", workflow_id=run.workflow.id, node_id=node.id,
                    handle=handle, status=result.status)
        return NodeOutcome(next_edge=follow_handle(run.graph, node.id, handle))

    # ── Booking nodes ─────────────────────────────────────────

    def _from_booking(self, run: ExecutionRun, node_id: str, result) -> NodeOutcome:
        if result.wait:
            return NodeOutcome(wait=True)
        if result.handle:
            return NodeOutcome(next_edge=follow_handle(run.graph, node_id, result.handle))
        if result.follow_default:
            return NodeOutcome(next_edge=first_outgoing(run.graph, node_id))
        return NodeOutcome()
