"""Tests for {{placeholder}} resolution and path lookups."""
import pytest

from utils.templating import get_nested_value, resolve_object, resolve_template


@pytest.fixture
def context():
    return {
        "phone": "97333000001",
        "customerId": 42,
        "vip": True,
        "http": {"n1": {"status": 200, "data": {"items": [{"sku": "A-1"}, {"sku": "B-2"}]}}},
        "message": {"text": "hello"},
        "tags": ["x", "y"],
    }


class TestGetNestedValue:
    def test_dot_path(self, context):
        assert get_nested_value(context, "message.text") == "hello"

    def test_bracket_index(self, context):
        assert get_nested_value(context, "http.n1.data.items[1].sku") == "B-2"

    def test_dollar_prefix(self, context):
        assert get_nested_value(context, "$.http.n1.status") == 200

    def test_missing_key(self, context):
        assert get_nested_value(context, "http.n2.status") is None

    def test_index_out_of_range(self, context):
        assert get_nested_value(context, "tags[5]") is None

    def test_index_into_non_list(self, context):
        assert get_nested_value(context, "message[0]") is None


class TestResolveTemplate:
    def test_plain_text_is_unchanged(self, context):
        assert resolve_template("no placeholders here", context) == "no placeholders here"

    def test_single_placeholder(self, context):
        assert resolve_template("Hi {{phone}}", context) == "Hi 97333000001"

    def test_whitespace_inside_braces(self, context):
        assert resolve_template("{{  customerId }}", context) == "42"

    def test_missing_resolves_to_empty(self, context):
        assert resolve_template("[{{nope.nothing}}]", context) == "[]"

    def test_booleans_render_lowercase(self, context):
        assert resolve_template("{{vip}}", context) == "true"

    def test_structures_render_as_json(self, context):
        assert resolve_template("{{tags}}", context) == '["x", "y"]'

    def test_nested_http_path(self, context):
        url = resolve_template("https://api.example.com/items/{{http.n1.data.items[0].sku}}", context)
        assert url == "https://api.example.com/items/A-1"

    def test_none_template(self, context):
        assert resolve_template(None, context) == ""

    def test_resolved_values_are_not_re_resolved(self):
        assert resolve_template("{{a}}", {"a": "{{b}}", "b": "boom"}) == "{{b}}"


class TestResolveObject:
    def test_nested_structure(self, context):
        result = resolve_object({"id": "{{customerId}}", "list": ["{{phone}}", 3]}, context)
        assert result == {"id": "42", "list": ["97333000001", 3]}
