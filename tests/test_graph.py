"""Tests for parsing workflow definitions into typed graphs."""
from models.graph import (
    BookAppointmentConfig, HttpRequestConfig, NodeKind, QuickReplyConfig, WorkflowGraph,
)
from tests.factories import edge, node, quick_reply, text_node


class TestNodeParsing:
    def test_kind_from_data_type(self):
        graph = WorkflowGraph.from_definition({"nodes": [text_node("n1", "Hi")], "edges": []})
        n = graph.get_node("n1")
        assert n.kind == NodeKind.TEXT_MESSAGE
        assert n.config.text == "Hi"

    def test_kind_from_node_type_fallback(self):
        raw = {"id": "n1", "type": "custom", "data": {"nodeType": "quickReply", "config": {}}}
        graph = WorkflowGraph.from_definition({"nodes": [raw]})
        assert graph.get_node("n1").kind == NodeKind.QUICK_REPLY

    def test_unknown_kind(self):
        graph = WorkflowGraph.from_definition({"nodes": [node("n1", "ai.magic")]})
        n = graph.get_node("n1")
        assert n.kind == NodeKind.UNKNOWN
        assert n.raw_type == "ai.magic"

    def test_camel_case_config(self):
        graph = WorkflowGraph.from_definition({"nodes": [
            quick_reply("q1", "Pick", ("yes", "Yes"), ("no", "No"), isCaptureStart=True),
        ]})
        n = graph.get_node("q1")
        assert isinstance(n.config, QuickReplyConfig)
        assert n.config.body_text == "Pick"
        assert n.capture.is_capture_start is True
        assert n.reply_options() == [("yes", "Yes"), ("no", "No")]
        assert n.reply_title("no") == "No"

    def test_http_config(self):
        graph = WorkflowGraph.from_definition({"nodes": [node(
            "h1", "action.http_request", method="post", url="https://api.example.com",
            responseMapping=[{"jsonPath": "data.id", "variableName": "customerId"}],
        )]})
        cfg = graph.get_node("h1").config
        assert isinstance(cfg, HttpRequestConfig)
        assert cfg.response_mapping[0].variable_name == "customerId"

    def test_booking_defaults(self):
        graph = WorkflowGraph.from_definition({"nodes": [node("b1", "booking.book_appointment")]})
        cfg = graph.get_node("b1").config
        assert isinstance(cfg, BookAppointmentConfig)
        assert cfg.allow_multiple is True

    def test_invalid_config_is_recorded_not_raised(self):
        raw = {"id": "n1", "data": {"type": "message.location", "config": {"latitude": "north"}}}
        graph = WorkflowGraph.from_definition({"nodes": [raw]})
        n = graph.get_node("n1")
        assert n.config_error

    def test_non_object_config(self):
        raw = {"id": "n1", "data": {"type": "message.text", "config": "oops"}}
        n = WorkflowGraph.from_definition({"nodes": [raw]}).get_node("n1")
        assert "config must be an object" in n.config_error


class TestGraph:
    def test_skips_malformed_items(self):
        graph = WorkflowGraph.from_definition({
            "nodes": [text_node("n1", "a"), {"type": "no-id"}, "junk"],
            "edges": [edge("n1", "n2"), {"source": "n1"}, 5],
        })
        assert graph.node_count == 1
        assert len(graph.edges) == 1

    def test_non_dict_definition(self):
        assert WorkflowGraph.from_definition(None).node_count == 0

    def test_outgoing_preserves_order(self):
        graph = WorkflowGraph.from_definition({
            "nodes": [text_node("a", "1"), text_node("b", "2"), text_node("c", "3")],
            "edges": [edge("a", "c"), edge("a", "b")],
        })
        assert [e.target for e in graph.outgoing("a")] == ["c", "b"]

    def test_edge_handle_alias(self):
        graph = WorkflowGraph.from_definition({"nodes": [], "edges": [edge("a", "b", "yes")]})
        assert graph.edges[0].source_handle == "yes"

    def test_numeric_ids_are_strings(self):
        graph = WorkflowGraph.from_definition({
            "nodes": [{"id": 1, "data": {"type": "message.text", "config": {"text": "a"}}},
                      {"id": 2, "data": {"type": "message.text", "config": {"text": "b"}}}],
            "edges": [{"id": 10, "source": 1, "target": 2, "sourceHandle": 3}],
        })
        e = graph.edges[0]
        assert (e.id, e.source, e.target, e.source_handle) == ("10", "1", "2", "3")
        assert [x.target for x in graph.outgoing("1")] == ["2"]
        assert graph.get_node(e.target).config.text == "b"

    def test_null_handle_stays_none(self):
        graph = WorkflowGraph.from_definition({"edges": [{"source": "a", "target": "b", "sourceHandle": None}]})
        assert graph.edges[0].source_handle is None
