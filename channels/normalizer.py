"""
Inbound event normalizer — WHAPI webhook payload → InboundEvent.

Classification, in order:
  1. from_me echo                       → ignorable
  2. no text and no interactive reply   → ignorable (status/system event)
  3. group chat (…@g.us)                → ignorable
  4. buttons_reply / legacy button      → interactive (button id)
     list_reply                         → interactive (row id)
     text body                          → text
Interactive ids lose any provider "Prefix:" namespace: "ListV3:dept_7" → "dept_7".
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from models.schemas import EventKind, InboundEvent

GROUP_SUFFIX = "@g.us"


def logical_reply_id(raw_id: str) -> str:
    """Strip provider namespacing: everything up to the last ':'."""
    return raw_id.rsplit(":", 1)[-1] if ":" in raw_id else raw_id


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _event_timestamp(msg: dict[str, Any]) -> datetime:
    ts = msg.get("timestamp")
    try:
        if ts is not None and str(ts).strip():
            return datetime.fromtimestamp(float(ts), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        pass
    return datetime.now(timezone.utc)


def _interactive_reply(msg: dict[str, Any]) -> tuple[str, str]:
    """Return (raw_id, title) of a button/list reply, or ('', '')."""
    reply = _as_dict(msg.get("reply"))
    reply_type = reply.get("type", "")

    if reply_type == "buttons_reply":
        data = _as_dict(reply.get("buttons_reply"))
        return str(data.get("id") or ""), str(data.get("title") or "")
    if reply_type == "list_reply":
        data = _as_dict(reply.get("list_reply"))
        return str(data.get("id") or ""), str(data.get("title") or "")

    button = _as_dict(msg.get("button"))
    if button.get("id"):
        return str(button["id"]), str(button.get("text") or button.get("title") or "")
    return "", ""


def _ignorable(reason: str, msg: dict[str, Any] = None) -> InboundEvent:
    msg = msg or {}
    return InboundEvent(
        kind=EventKind.IGNORABLE,
        ignore_reason=reason,
        message_id=str(msg.get("id") or ""),
        chat_id=str(msg.get("chat_id") or ""),
    )


def normalize_event(payload: dict[str, Any]) -> InboundEvent:
    """Classify one provider webhook payload. Pure; never raises on odd input."""
    if not isinstance(payload, dict):
        return _ignorable("invalid_payload")

    messages = payload.get("messages") or []
    if not isinstance(messages, list) or not messages or not isinstance(messages[0], dict):
        return _ignorable("no_message")
    msg = messages[0]

    if msg.get("from_me") is True:
        return _ignorable("outbound_echo", msg)

    body = _as_dict(msg.get("text")).get("body")
    text = body.strip() if isinstance(body, str) else ""
    raw_reply_id, reply_title = _interactive_reply(msg)
    if not text and not raw_reply_id:
        return _ignorable("no_content", msg)

    chat_id = str(msg.get("chat_id") or "")
    if chat_id.endswith(GROUP_SUFFIX):
        return _ignorable("group_chat", msg)

    phone = chat_id.split("@", 1)[0] if chat_id else str(msg.get("from") or "")
    if not phone:
        return _ignorable("no_participant", msg)

    context = _as_dict(msg.get("context"))
    common = dict(
        phone=phone,
        chat_id=chat_id or f"{phone}@s.whatsapp.net",
        message_id=str(msg.get("id") or ""),
        quoted_message_id=str(context.get("quoted_id") or ""),
        timestamp=_event_timestamp(msg),
    )

    if raw_reply_id:
        return InboundEvent(
            kind=EventKind.INTERACTIVE,
            raw_reply_id=raw_reply_id,
            reply_id=logical_reply_id(raw_reply_id),
            reply_title=reply_title,
            text=text,
            **common,
        )
    return InboundEvent(kind=EventKind.TEXT, text=text, **common)
