"""
WHAPI payload builders.

Every send-capable node kind maps to exactly one gateway call. Node
messages are static: no template resolution happens here.
"""
from __future__ import annotations

from typing import Any, Optional

from channels.base import OutboundMessage
from models.graph import (
    CarouselConfig, ListMessageConfig, LocationMessageConfig, MediaMessageConfig,
    Node, NodeKind, QuickReplyConfig, SingleButtonConfig, TextMessageConfig,
)

DEFAULT_BODY = "No message"
DEFAULT_TEXT = "Thank you!"
DEFAULT_CAROUSEL_BODY = "Check out our offerings!"
DEFAULT_LIST_LABEL = "Choose option"
DEFAULT_SECTION_TITLE = "Options"

_SINGLE_BUTTON_DEFAULTS = {
    NodeKind.CALL_BUTTON: ("call", "Call us", "call_btn"),
    NodeKind.URL_BUTTON: ("url", "Visit Website", "url_btn"),
    NodeKind.COPY_BUTTON: ("copy", "Copy OTP", "copy_btn"),
}


# ── Plain messages ────────────────────────────────────────────

def text_message(to: str, body: str) -> OutboundMessage:
    return OutboundMessage("/messages/text", {"to": to, "body": body or DEFAULT_TEXT}, kind="text")


def media_message(to: str, media_url: str, media_type: str = "image", caption: str = "") -> OutboundMessage:
    media_type = (media_type or "image").strip("/") or "image"
    payload: dict[str, Any] = {"to": to, "media": media_url}
    if caption:
        payload["caption"] = caption
    return OutboundMessage(f"/messages/{media_type}", payload, kind="media")


def location_message(to: str, latitude: float, longitude: float,
                     name: str = "", address: str = "") -> OutboundMessage:
    payload: dict[str, Any] = {"to": to, "latitude": latitude, "longitude": longitude}
    if name:
        payload["name"] = name
    if address:
        payload["address"] = address
    return OutboundMessage("/messages/location", payload, kind="location")


# ── Interactive messages ──────────────────────────────────────

def _frame(to: str, kind: str, body: str, header: str = "", footer: str = "") -> dict[str, Any]:
    payload: dict[str, Any] = {"to": to, "type": kind}
    if header:
        payload["header"] = {"text": header}
    payload["body"] = {"text": body or DEFAULT_BODY}
    if footer:
        payload["footer"] = {"text": footer}
    return payload


def list_message(
    to: str,
    body: str,
    rows: list[dict[str, str]],
    label: str = "",
    header: str = "",
    footer: str = "",
    section_title: str = DEFAULT_SECTION_TITLE,
) -> OutboundMessage:
    payload = _frame(to, "list", body, header, footer)
    payload["action"] = {
        "list": {
            "sections": [{
                "title": section_title or DEFAULT_SECTION_TITLE,
                "rows": [
                    {"id": r["id"], "title": r["title"], "description": r.get("description", "")}
                    for r in rows
                ],
            }],
            "label": label or DEFAULT_LIST_LABEL,
        },
    }
    return OutboundMessage("/messages/interactive", payload, kind="list", interactive=True)


def _quick_reply(node: Node, cfg: QuickReplyConfig, to: str) -> OutboundMessage:
    header = cfg.header_text if node.kind == NodeKind.QUICK_REPLY else ""
    payload = _frame(to, "button", cfg.body_text, header, cfg.footer_text)
    payload["action"] = {"buttons": [
        {"type": "quick_reply", "title": b.title, "id": b.id}
        for b in cfg.buttons if b.title and b.id
    ]}
    if node.kind in (NodeKind.QUICK_REPLY_IMAGE, NodeKind.QUICK_REPLY_VIDEO):
        payload["media"] = cfg.media_url
    if node.kind == NodeKind.QUICK_REPLY_VIDEO:
        payload["no_encode"] = True
    return OutboundMessage("/messages/interactive", payload, kind=node.kind.value, interactive=True)


def _mixed_buttons(cfg: QuickReplyConfig, to: str) -> OutboundMessage:
    payload = _frame(to, "button", cfg.body_text, cfg.header_text, cfg.footer_text)
    buttons = []
    for b in cfg.buttons:
        if not (b.title and b.id):
            continue
        if b.kind == "phone_number":
            buttons.append({"type": "call", "title": b.title, "id": b.id, "phone_number": b.value})
        elif b.kind == "url":
            buttons.append({"type": "url", "title": b.title, "id": b.id, "url": b.value})
    payload["action"] = {"buttons": buttons}
    return OutboundMessage("/messages/interactive", payload, kind=NodeKind.BUTTONS.value, interactive=True)


def _list(cfg: ListMessageConfig, to: str) -> OutboundMessage:
    payload = _frame(to, "list", cfg.body_text, cfg.header_text, cfg.footer_text)
    payload["action"] = {
        "list": {
            "sections": [
                {
                    "title": s.title or DEFAULT_SECTION_TITLE,
                    "rows": [
                        {"id": r.id, "title": r.title, "description": r.description}
                        for r in s.rows if r.title and r.id
                    ],
                }
                for s in cfg.sections
            ],
            "label": cfg.button_label or DEFAULT_LIST_LABEL,
        },
    }
    return OutboundMessage("/messages/interactive", payload, kind=NodeKind.LIST_MESSAGE.value, interactive=True)


def _single_button(node: Node, cfg: SingleButtonConfig, to: str) -> OutboundMessage:
    button_type, default_title, default_id = _SINGLE_BUTTON_DEFAULTS[node.kind]
    button: dict[str, Any] = {
        "type": button_type,
        "title": cfg.button_title or default_title,
        "id": cfg.button_id or default_id,
    }
    if button_type == "call":
        button["phone_number"] = cfg.phone_number
    elif button_type == "url":
        button["url"] = cfg.url
    else:
        button["copy_code"] = cfg.copy_code
    payload = _frame(to, "button", cfg.body_text, cfg.header_text, cfg.footer_text)
    payload["action"] = {"buttons": [button]}
    return OutboundMessage("/messages/interactive", payload, kind=node.kind.value, interactive=True)


def _carousel(cfg: CarouselConfig, to: str) -> OutboundMessage:
    cards = []
    for card in cfg.cards:
        buttons = []
        for b in card.buttons:
            if b.type == "url":
                buttons.append({"type": "url", "title": b.title, "id": b.id, "url": b.url})
            else:
                buttons.append({"type": "quick_reply", "title": b.title, "id": b.id})
        cards.append({"id": card.id, "media": {"media": card.media}, "text": card.text,
                      "buttons": buttons})
    payload = {"to": to, "body": {"text": cfg.body_text or DEFAULT_CAROUSEL_BODY}, "cards": cards}
    return OutboundMessage("/messages/carousel", payload, kind=NodeKind.CAROUSEL.value, interactive=True)


def build_node_message(node: Node, to: str) -> Optional[OutboundMessage]:
    """Gateway call for a message-type node; None for kinds that do not send."""
    cfg = node.config
    kind = node.kind

    if kind == NodeKind.TEXT_MESSAGE and isinstance(cfg, TextMessageConfig):
        msg = text_message(to, cfg.text)
    elif kind == NodeKind.MEDIA_MESSAGE and isinstance(cfg, MediaMessageConfig):
        msg = media_message(to, cfg.media_url, cfg.media_type, cfg.caption)
    elif kind == NodeKind.LOCATION_MESSAGE and isinstance(cfg, LocationMessageConfig):
        msg = location_message(to, cfg.latitude, cfg.longitude, cfg.name, cfg.address)
    elif kind == NodeKind.BUTTONS and isinstance(cfg, QuickReplyConfig):
        msg = _mixed_buttons(cfg, to)
    elif isinstance(cfg, QuickReplyConfig):
        msg = _quick_reply(node, cfg, to)
    elif isinstance(cfg, ListMessageConfig):
        msg = _list(cfg, to)
    elif isinstance(cfg, SingleButtonConfig):
        msg = _single_button(node, cfg, to)
    elif isinstance(cfg, CarouselConfig):
        msg = _carousel(cfg, to)
    else:
        return None

    msg.kind = kind.value
    return msg
