"""
Workflow graph model — nodes, edges and per-kind node configuration.

The editor stores a workflow as ``{"nodes": [...], "edges": [...]}`` where
each node looks like ``{"id": ..., "type": ..., "data": {"type": ..., "config": {...}}}``.
`WorkflowGraph.from_definition` turns that JSON into typed models once per
inbound event; the graph is never mutated afterwards.
"""
from __future__ import annotations

from enum import Enum
from typing import Any, Optional, Union

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Node kinds
# ──────────────────────────────────────────────────────────────

class NodeKind(str, Enum):
    TEXT_MESSAGE = "message.text"
    MEDIA_MESSAGE = "message.media"
    LOCATION_MESSAGE = "message.location"
    QUICK_REPLY = "quickReply"
    QUICK_REPLY_IMAGE = "quickReplyImage"
    QUICK_REPLY_VIDEO = "quickReplyVideo"
    LIST_MESSAGE = "listMessage"
    BUTTONS = "buttons"
    CALL_BUTTON = "callButton"
    URL_BUTTON = "urlButton"
    COPY_BUTTON = "copyButton"
    CAROUSEL = "carousel"
    HTTP_REQUEST = "action.http_request"
    BOOK_APPOINTMENT = "booking.book_appointment"
    CHECK_BOOKINGS = "booking.check_bookings"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Any) -> "NodeKind":
        try:
            return cls(value)
        except ValueError:
            return cls.UNKNOWN


MESSAGE_KINDS = frozenset({
    NodeKind.TEXT_MESSAGE, NodeKind.MEDIA_MESSAGE, NodeKind.LOCATION_MESSAGE,
})

# Nodes the legacy button/row scan looks into
BUTTON_LIST_KINDS = frozenset({
    NodeKind.QUICK_REPLY, NodeKind.QUICK_REPLY_IMAGE, NodeKind.QUICK_REPLY_VIDEO,
    NodeKind.LIST_MESSAGE, NodeKind.BUTTONS,
})

INTERACTIVE_KINDS = BUTTON_LIST_KINDS | frozenset({
    NodeKind.CALL_BUTTON, NodeKind.URL_BUTTON, NodeKind.COPY_BUTTON, NodeKind.CAROUSEL,
})

BOOKING_KINDS = frozenset({NodeKind.BOOK_APPOINTMENT, NodeKind.CHECK_BOOKINGS})


# ──────────────────────────────────────────────────────────────
#  Node configuration
# ──────────────────────────────────────────────────────────────

class NodeConfig(BaseModel):
    """Base for all node configs. Stored JSON uses camelCase keys."""
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="ignore",
    )


class CaptureFlags(NodeConfig):
    is_capture_start: bool = False
    is_capture_end: bool = False
    capture_sequence_name: str = ""


class TextMessageConfig(NodeConfig):
    text: str = ""


class MediaMessageConfig(NodeConfig):
    media_url: str = ""
    media_type: str = "image"       # image, video, gif, audio, voice, document, sticker
    caption: str = ""


class LocationMessageConfig(NodeConfig):
    latitude: float = 0.0
    longitude: float = 0.0
    name: str = ""
    address: str = ""

    @field_validator("latitude", "longitude", mode="before")
    @classmethod
    def _blank_is_zero(cls, v):
        if v is None or (isinstance(v, str) and not v.strip()):
            return 0.0
        return v


class ReplyButton(NodeConfig):
    id: str = ""
    title: str = ""
    type: str = "quick_reply"       # carousel buttons: quick_reply | url
    kind: str = ""                  # mixed buttons: phone_number | url
    value: str = ""
    url: str = ""


class QuickReplyConfig(CaptureFlags):
    header_text: str = ""
    body_text: str = ""
    footer_text: str = ""
    media_url: str = ""
    buttons: list[ReplyButton] = Field(default_factory=list)


class ListRow(NodeConfig):
    id: str = ""
    title: str = ""
    description: str = ""


class ListSection(NodeConfig):
    title: str = ""
    rows: list[ListRow] = Field(default_factory=list)


class ListMessageConfig(CaptureFlags):
    header_text: str = ""
    body_text: str = ""
    footer_text: str = ""
    button_label: str = ""
    sections: list[ListSection] = Field(default_factory=list)


class SingleButtonConfig(CaptureFlags):
    """Call, URL and copy-code buttons share one layout."""
    header_text: str = ""
    body_text: str = ""
    footer_text: str = ""
    button_title: str = ""
    button_id: str = ""
    phone_number: str = ""
    url: str = ""
    copy_code: str = ""


class CarouselCard(NodeConfig):
    id: str = ""
    media: str = ""
    text: str = ""
    buttons: list[ReplyButton] = Field(default_factory=list)


class CarouselConfig(CaptureFlags):
    body_text: str = ""
    cards: list[CarouselCard] = Field(default_factory=list)


class KeyValue(NodeConfig):
    name: str = ""
    value: str = ""


class ResponseMapping(NodeConfig):
    json_path: str = ""
    variable_name: str = ""


class HttpRequestConfig(NodeConfig):
    method: str = "GET"
    url: str = ""
    auth_type: str = "none"         # none | bearer | basic
    bearer_token: str = ""
    basic_username: str = ""
    basic_password: str = ""
    headers: list[KeyValue] = Field(default_factory=list)
    query_params: list[KeyValue] = Field(default_factory=list)
    body_content_type: str = "json"     # json | form
    body: str = ""
    response_mapping: list[ResponseMapping] = Field(default_factory=list)
    timeout: Optional[float] = None     # seconds


class BookAppointmentConfig(NodeConfig):
    booking_label: str = "Appointment"
    prompt_message: str = "Please select a department:"
    department_button_label: str = "Select Department"
    staff_prompt_message: str = "Please select a staff member:"
    staff_button_label: str = "Select Staff"
    slot_prompt_message: str = "Please select an available time slot:"
    slot_button_label: str = "Select Time"
    success_message: str = (
        "Your booking is confirmed for {{date}} at {{time}} with {{staff}} ({{department}})."
    )
    no_slots_message: str = "Sorry, there are no available slots at the moment."
    require_name: bool = False
    name_prompt: str = "Please enter your name:"
    custom_question1_enabled: bool = False
    custom_question1_label: str = ""
    custom_question1_prompt: str = ""
    custom_question2_enabled: bool = False
    custom_question2_label: str = ""
    custom_question2_prompt: str = ""
    allow_multiple: bool = True
    max_advance_days: int = 30
    start_today: bool = True


class CheckBookingsConfig(NodeConfig):
    check_type: str = "my_bookings"     # my_bookings | cancel_booking | reschedule
    status_filter: str = "upcoming"     # upcoming | all | confirmed | completed | cancelled
    max_bookings: int = 5
    no_bookings_message: str = "You have no bookings."
    list_header_message: str = "Your bookings:"
    booking_list_format: str = "{{date}} at {{time}} with {{staff}} ({{department}}) - {{status}}"
    cancel_prompt_message: str = "Select the booking you want to cancel:"
    cancel_button_label: str = "Cancel Booking"
    cancel_success_message: str = "Your booking on {{date}} at {{time}} has been cancelled."
    reschedule_prompt_message: str = "Select the booking you want to reschedule:"
    reschedule_button_label: str = "Reschedule"
    slot_prompt_message: str = "Please select a new time slot:"
    slot_button_label: str = "Select Time"
    reschedule_success_message: str = "Your booking has been moved to {{date}} at {{time}}."
    no_slots_message: str = "Sorry, there are no available slots at the moment."
    max_advance_days: int = 30


class GenericConfig(NodeConfig):
    model_config = ConfigDict(extra="allow")


CONFIG_MODELS: dict[NodeKind, type[NodeConfig]] = {
    NodeKind.TEXT_MESSAGE: TextMessageConfig,
    NodeKind.MEDIA_MESSAGE: MediaMessageConfig,
    NodeKind.LOCATION_MESSAGE: LocationMessageConfig,
    NodeKind.QUICK_REPLY: QuickReplyConfig,
    NodeKind.QUICK_REPLY_IMAGE: QuickReplyConfig,
    NodeKind.QUICK_REPLY_VIDEO: QuickReplyConfig,
    NodeKind.BUTTONS: QuickReplyConfig,
    NodeKind.LIST_MESSAGE: ListMessageConfig,
    NodeKind.CALL_BUTTON: SingleButtonConfig,
    NodeKind.URL_BUTTON: SingleButtonConfig,
    NodeKind.COPY_BUTTON: SingleButtonConfig,
    NodeKind.CAROUSEL: CarouselConfig,
    NodeKind.HTTP_REQUEST: HttpRequestConfig,
    NodeKind.BOOK_APPOINTMENT: BookAppointmentConfig,
    NodeKind.CHECK_BOOKINGS: CheckBookingsConfig,
}

AnyNodeConfig = Union[
    TextMessageConfig, MediaMessageConfig, LocationMessageConfig, QuickReplyConfig,
    ListMessageConfig, SingleButtonConfig, CarouselConfig, HttpRequestConfig,
    BookAppointmentConfig, CheckBookingsConfig, GenericConfig,
]


# ──────────────────────────────────────────────────────────────
#  Nodes and edges
# ──────────────────────────────────────────────────────────────

class Node(BaseModel):
    id: str
    kind: NodeKind
    raw_type: str = ""
    config: AnyNodeConfig = Field(default_factory=GenericConfig)
    config_error: Optional[str] = None

    @classmethod
    def from_raw(cls, raw: dict[str, Any]) -> "Node":
        data = raw.get("data") or {}
        raw_type = data.get("type") or data.get("nodeType") or raw.get("type") or ""
        kind = NodeKind.parse(raw_type)
        raw_config = data.get("config")
        if raw_config is None:
            raw_config = {}

        model = CONFIG_MODELS.get(kind, GenericConfig)
        try:
            if not isinstance(raw_config, dict):
                raise TypeError(f"config must be an object, got {type(raw_config).__name__}")
            config = model.model_validate(raw_config)
            error = None
        except (ValidationError, TypeError) as e:
            config = GenericConfig()
            error = str(e)
        return cls(id=str(raw["id"]), kind=kind, raw_type=str(raw_type),
                   config=config, config_error=error)

    @property
    def is_interactive(self) -> bool:
        return self.kind in INTERACTIVE_KINDS

    @property
    def capture(self) -> Optional[CaptureFlags]:
        return self.config if isinstance(self.config, CaptureFlags) else None

    def reply_options(self) -> list[tuple[str, str]]:
        """All (id, title) pairs a participant can reply with from this node."""
        cfg = self.config
        if isinstance(cfg, QuickReplyConfig):
            return [(b.id, b.title) for b in cfg.buttons if b.id]
        if isinstance(cfg, ListMessageConfig):
            return [(r.id, r.title) for s in cfg.sections for r in s.rows if r.id]
        if isinstance(cfg, SingleButtonConfig):
            return [(cfg.button_id, cfg.button_title)] if cfg.button_id else []
        if isinstance(cfg, CarouselConfig):
            return [(b.id, b.title) for card in cfg.cards for b in card.buttons if b.id]
        return []

    def reply_title(self, reply_id: str) -> str:
        for option_id, title in self.reply_options():
            if option_id == reply_id:
                return title
        return ""


class Edge(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    id: str = ""
    source: str
    target: str
    source_handle: Optional[str] = None

    @classmethod
    def from_raw(cls, raw: dict[str, Any]) -> "Edge":
        """Editor ids may arrive as numbers; every reference is kept as a string."""
        handle = raw.get("sourceHandle", raw.get("source_handle"))
        return cls(
            id=str(raw.get("id") or ""),
            source=str(raw["source"]),
            target=str(raw["target"]),
            source_handle=None if handle is None else str(handle),
        )


class WorkflowGraph(BaseModel):
    """Read-only view over one workflow definition."""

    nodes: list[Node] = Field(default_factory=list)
    edges: list[Edge] = Field(default_factory=list)

    @classmethod
    def from_definition(cls, definition: Any) -> "WorkflowGraph":
        if not isinstance(definition, dict):
            return cls()
        nodes = []
        for raw in definition.get("nodes") or []:
            if not isinstance(raw, dict) or not raw.get("id"):
                logger.warning("graph_node_skipped", reason="missing id")
                continue
            nodes.append(Node.from_raw(raw))
        edges = []
        for raw in definition.get("edges") or []:
            if not isinstance(raw, dict) or not raw.get("source") or not raw.get("target"):
                logger.warning("graph_edge_skipped", reason="missing source or target")
                continue
            edges.append(Edge.from_raw(raw))
        return cls(nodes=nodes, edges=edges)

    def get_node(self, node_id: Optional[str]) -> Optional[Node]:
        if not node_id:
            return None
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def outgoing(self, node_id: str) -> list[Edge]:
        return [e for e in self.edges if e.source == node_id]

    @property
    def node_count(self) -> int:
        return len(self.nodes)
