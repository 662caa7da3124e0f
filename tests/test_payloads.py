"""Tests for node → WHAPI payload mapping."""
from channels.payloads import build_node_message
from models.graph import Node
from tests.factories import PHONE, node, quick_reply


def message_for(raw):
    return build_node_message(Node.from_raw(raw), PHONE)


class TestPlainMessages:
    def test_text(self):
        msg = message_for(node("t", "message.text", text="Hi {{name}}"))
        assert msg.endpoint == "/messages/text"
        assert msg.payload == {"to": PHONE, "body": "Hi {{name}}"}
        assert not msg.interactive

    def test_empty_text_uses_default(self):
        assert message_for(node("t", "message.text")).payload["body"] == "Thank you!"

    def test_media(self):
        msg = message_for(node("m", "message.media", mediaUrl="https://cdn.test/a.pdf",
                               mediaType="document", caption="Menu"))
        assert msg.endpoint == "/messages/document"
        assert msg.payload == {"to": PHONE, "media": "https://cdn.test/a.pdf", "caption": "Menu"}

    def test_location(self):
        msg = message_for(node("l", "message.location", latitude="26.2", longitude=50.58, name="Clinic"))
        assert msg.endpoint == "/messages/location"
        assert msg.payload == {"to": PHONE, "latitude": 26.2, "longitude": 50.58, "name": "Clinic"}


class TestInteractive:
    def test_quick_reply(self):
        msg = message_for(quick_reply("q", "Pick", ("a", "Alpha"), ("b", "Beta"), ("", "Untitled"),
                                      headerText="Menu", footerText="Reply below"))
        assert msg.endpoint == "/messages/interactive"
        assert msg.interactive
        assert msg.kind == "quickReply"
        assert msg.payload["type"] == "button"
        assert msg.payload["header"] == {"text": "Menu"}
        assert msg.payload["footer"] == {"text": "Reply below"}
        assert msg.payload["action"]["buttons"] == [
            {"type": "quick_reply", "title": "Alpha", "id": "a"},
            {"type": "quick_reply", "title": "Beta", "id": "b"},
        ]

    def test_quick_reply_image(self):
        msg = message_for(node("q", "quickReplyImage", bodyText="Look", mediaUrl="https://cdn.test/p.jpg",
                               buttons=[{"id": "ok", "title": "OK"}]))
        assert msg.payload["media"] == "https://cdn.test/p.jpg"
        assert "no_encode" not in msg.payload

    def test_list(self):
        msg = message_for(node("l", "listMessage", bodyText="Choose", buttonLabel="Open",
                               sections=[{"title": "Main", "rows": [
                                   {"id": "r1", "title": "One", "description": "first"},
                                   {"id": "", "title": "skipped"},
                               ]}]))
        listing = msg.payload["action"]["list"]
        assert listing["label"] == "Open"
        assert listing["sections"] == [
            {"title": "Main", "rows": [{"id": "r1", "title": "One", "description": "first"}]},
        ]

    def test_url_button_defaults(self):
        msg = message_for(node("u", "urlButton", bodyText="Site", url="https://example.com"))
        assert msg.payload["action"]["buttons"] == [
            {"type": "url", "title": "Visit Website", "id": "url_btn", "url": "https://example.com"},
        ]

    def test_carousel(self):
        msg = message_for(node("c", "carousel", cards=[{
            "id": "card1", "media": "https://cdn.test/1.jpg", "text": "Item",
            "buttons": [{"id": "buy1", "title": "Buy"}, {"type": "url", "id": "more", "title": "More",
                                                        "url": "https://example.com"}],
        }]))
        assert msg.endpoint == "/messages/carousel"
        assert msg.payload["body"] == {"text": "Check out our offerings!"}
        card = msg.payload["cards"][0]
        assert card["media"] == {"media": "https://cdn.test/1.jpg"}
        assert card["buttons"][0] == {"type": "quick_reply", "title": "Buy", "id": "buy1"}
        assert card["buttons"][1]["url"] == "https://example.com"


class TestNonSending:
    def test_http_node_has_no_message(self):
        assert message_for(node("h", "action.http_request", url="https://example.com")) is None
