"""
Edge Resolver — which outgoing edge fires for an interactive reply id.

Strategies are pure functions ``(graph, reply_id) -> Optional[Edge]``
tried in order; the first hit wins:

  1. exact_handle          edge whose source handle equals the id
  2. legacy_button_scan    quick-reply / buttons / list node listing the id
  3. carousel_card_scan    carousel card button with the id
  4. any_interactive_scan  any interactive node listing the id

Older workflows were saved without per-button handles, which is what
strategies 2–4 recover from. No match means the reply is not for this
graph; that is not an error.
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass
from typing import Callable, Optional

from models.graph import (
    BUTTON_LIST_KINDS, CarouselConfig, Edge, Node, NodeKind, WorkflowGraph,
)

logger = structlog.get_logger()

Strategy = Callable[[WorkflowGraph, str], Optional[Edge]]


@dataclass(frozen=True)
class Resolution:
    edge: Edge
    strategy: str


def _edge_from_node(graph: WorkflowGraph, node: Node, handle: str) -> Optional[Edge]:
    """Edge from node with the given handle, else its first outgoing edge."""
    outgoing = graph.outgoing(node.id)
    for edge in outgoing:
        if edge.source_handle == handle:
            return edge
    return outgoing[0] if outgoing else None


def _lists_reply(node: Node, reply_id: str) -> bool:
    return any(option_id == reply_id for option_id, _ in node.reply_options())


# ── Strategies ────────────────────────────────────────────────

def exact_handle(graph: WorkflowGraph, reply_id: str) -> Optional[Edge]:
    for edge in graph.edges:
        if edge.source_handle == reply_id:
            return edge
    return None


def legacy_button_scan(graph: WorkflowGraph, reply_id: str) -> Optional[Edge]:
    for node in graph.nodes:
        if node.kind in BUTTON_LIST_KINDS and _lists_reply(node, reply_id):
            edge = _edge_from_node(graph, node, reply_id)
            if edge:
                return edge
    return None


def carousel_card_scan(graph: WorkflowGraph, reply_id: str) -> Optional[Edge]:
    for node in graph.nodes:
        if node.kind != NodeKind.CAROUSEL or not isinstance(node.config, CarouselConfig):
            continue

        owning_card = None
        button = None
        for card in node.config.cards:
            for b in card.buttons:
                if b.id == reply_id:
                    owning_card, button = card, b
                    break
            if button:
                break
        if button is None:
            continue

        outgoing = graph.outgoing(node.id)
        for edge in outgoing:
            if edge.source_handle == reply_id:
                return edge
        if owning_card.id:
            for edge in outgoing:
                if edge.source_handle == owning_card.id:
                    return edge
        if button.title:
            for edge in outgoing:
                if edge.source_handle and button.title in edge.source_handle:
                    return edge

        quick_replies = [
            b.id for card in node.config.cards for b in card.buttons
            if b.type == "quick_reply" and b.id
        ]
        if reply_id in quick_replies and len(outgoing) == len(quick_replies):
            return outgoing[quick_replies.index(reply_id)]
    return None


def any_interactive_scan(graph: WorkflowGraph, reply_id: str) -> Optional[Edge]:
    for node in graph.nodes:
        if node.is_interactive and _lists_reply(node, reply_id):
            edge = _edge_from_node(graph, node, reply_id)
            if edge:
                return edge
    return None


DEFAULT_STRATEGIES: list[tuple[str, Strategy]] = [
    ("exact_handle", exact_handle),
    ("legacy_button_scan", legacy_button_scan),
    ("carousel_card_scan", carousel_card_scan),
    ("any_interactive_scan", any_interactive_scan),
]


# ── Resolver ──────────────────────────────────────────────────

class EdgeResolver:
    """First-match composition of resolution strategies."""

    def __init__(self, strategies: list[tuple[str, Strategy]] = None):
        self.strategies = list(strategies or DEFAULT_STRATEGIES)

    def resolve(self, graph: WorkflowGraph, reply_id: str) -> Optional[Resolution]:
        if not reply_id:
            return None
        for name, strategy in self.strategies:
            edge = strategy(graph, reply_id)
            if edge is not None:
                logger.debug("edge_resolved", reply_id=reply_id, strategy=name,
                             source=edge.source, target=edge.target)
                return Resolution(edge=edge, strategy=name)
        return None


def follow_handle(graph: WorkflowGraph, node_id: str, handle: str) -> Optional[Edge]:
    """
    Named outcome edge (success, error, booked, ...) of one node. The
    editor also writes these handles as "{node_id}-{handle}".
    """
    scoped = f"{node_id}-{handle}"
    for edge in graph.outgoing(node_id):
        if edge.source_handle in (handle, scoped):
            return edge
    return None


def first_outgoing(graph: WorkflowGraph, node_id: str) -> Optional[Edge]:
    outgoing = graph.outgoing(node_id)
    return outgoing[0] if outgoing else None
