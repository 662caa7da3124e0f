"""Payload and graph builders shared by the test modules."""
from datetime import datetime
from typing import Any
from zoneinfo import ZoneInfo

ACCOUNT = "acct-1"
PHONE = "97333000001"
CHANNEL_TOKEN = "whapi-token-1"
BAHRAIN = ZoneInfo("Asia/Bahrain")

# Monday 19 Oct 2026, 08:00 in Bahrain
NOW = datetime(2026, 10, 19, 8, 0, tzinfo=BAHRAIN)
NOW_TS = int(NOW.timestamp())


# ──────────────────────────────────────────────────────────────
#  WHAPI payloads
# ──────────────────────────────────────────────────────────────

def text_payload(body: str, phone: str = PHONE, ts: int = NOW_TS, msg_id: str = "wamid.text") -> dict[str, Any]:
    return {"messages": [{
        "id": msg_id,
        "from_me": False,
        "type": "text",
        "chat_id": f"{phone}@s.whatsapp.net",
        "from": phone,
        "timestamp": ts,
        "text": {"body": body},
    }]}


def reply_payload(reply_id: str, title: str = "", phone: str = PHONE, ts: int = NOW_TS,
                  quoted: str = None, list_reply: bool = False) -> dict[str, Any]:
    if list_reply:
        reply = {"type": "list_reply", "list_reply": {"id": reply_id, "title": title}}
    else:
        reply = {"type": "buttons_reply", "buttons_reply": {"id": reply_id, "title": title}}
    msg = {
        "id": "wamid.reply",
        "from_me": False,
        "type": "reply",
        "chat_id": f"{phone}@s.whatsapp.net",
        "from": phone,
        "timestamp": ts,
        "reply": reply,
    }
    if quoted:
        msg["context"] = {"quoted_id": quoted}
    return {"messages": [msg]}


# ──────────────────────────────────────────────────────────────
#  Workflow definitions
# ──────────────────────────────────────────────────────────────

def node(node_id: str, node_type: str, **config) -> dict[str, Any]:
    return {"id": node_id, "type": "custom", "data": {"type": node_type, "config": config}}


def edge(source: str, target: str, handle: str = None) -> dict[str, Any]:
    e = {"id": f"e-{source}-{target}-{handle or ''}", "source": source, "target": target}
    if handle is not None:
        e["sourceHandle"] = handle
    return e


def text_node(node_id: str, text: str) -> dict[str, Any]:
    return node(node_id, "message.text", text=text)


def quick_reply(node_id: str, body: str, *buttons: tuple[str, str], **extra) -> dict[str, Any]:
    return node(node_id, "quickReply", bodyText=body,
                buttons=[{"id": bid, "title": title} for bid, title in buttons], **extra)
