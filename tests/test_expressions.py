"""Tests for restricted expression evaluation and template rendering."""

import pytest

from flowrunner.services.execution.exceptions import ExpressionError
from flowrunner.services.execution.expressions import (
    evaluate_condition,
    evaluate_expression,
    get_nested_value,
    render_template,
)


class TestEvaluateExpression:

    def test_arithmetic_on_bare_names(self):
        assert evaluate_expression("x + 1", {"x": 41}) == 42

    def test_variables_namespace_with_attribute_access(self):
        assert evaluate_expression("variables.x > 40", {"x": 42}) is True

    def test_return_prefix_and_semicolon_are_stripped(self):
        assert evaluate_expression('return {"done": True};', {}) == {"done": True}

    def test_javascript_style_literals(self):
        assert evaluate_expression("flag == true and missing == null", {"flag": True, "missing": None}) is True

    def test_whitelisted_functions(self):
        assert evaluate_expression("len(items) + max(items)", {"items": [1, 5, 3]}) == 8

    def test_extra_names_are_visible(self):
        assert evaluate_expression("data['count'] * 2", {}, extra={"data": {"count": 4}}) == 8

    def test_non_string_is_returned_unchanged(self):
        assert evaluate_expression(True, {}) is True
        assert evaluate_expression(7, {}) == 7

    @pytest.mark.parametrize("expression", ["", "   ", "return ;"])
    def test_empty_expression_raises(self, expression):
        with pytest.raises(ExpressionError):
            evaluate_expression(expression, {})

    def test_undefined_name_raises(self):
        with pytest.raises(ExpressionError) as exc_info:
            evaluate_expression("unknown + 1", {})
        assert exc_info.value.expression == "unknown + 1"

    def test_syntax_error_raises(self):
        with pytest.raises(ExpressionError):
            evaluate_expression("1 +", {})

    def test_runtime_error_raises(self):
        with pytest.raises(ExpressionError):
            evaluate_expression("1 / 0", {})

    def test_import_is_not_available(self):
        with pytest.raises(ExpressionError):
            evaluate_expression("__import__('os')", {})


def test_evaluate_condition_coerces_to_bool():
    assert evaluate_condition("items", {"items": [1]}) is True
    assert evaluate_condition("items", {"items": []}) is False


class TestObjectLiterals:

    def test_bare_keys_are_quoted(self):
        assert evaluate_expression("return {done: true}", {}) == {"done": True}

    def test_nested_and_mixed_keys(self):
        result = evaluate_expression('{total: x * 2, "raw": x, meta: {ok: x > 1}}', {"x": 3})
        assert result == {"total": 6, "raw": 3, "meta": {"ok": True}}

    def test_string_contents_are_untouched(self):
        assert evaluate_expression("'{a: 1}'", {}) == "{a: 1}"


class TestSimpleConditions:

    @pytest.mark.parametrize("condition, expected", [
        ("count > 10", True),
        ("count <= 12", True),
        ("count != 12", False),
        ("status == 'success'", True),
        ('status == "failed"', False),
        ("ready == true", True),
        ("order.total >= 99.5", True),
    ])
    def test_comparisons(self, condition, expected):
        variables = {"count": 12, "status": "success", "ready": True, "order": {"total": 100}}
        assert evaluate_condition(condition, variables, language="simple") is expected

    def test_iteration_counter_from_extra(self):
        assert evaluate_condition("iteration < 3", {}, extra={"iteration": 2}, language="simple") is True

    @pytest.mark.parametrize("condition", ["count", "a > b > c"])
    def test_invalid_format(self, condition):
        with pytest.raises(ExpressionError):
            evaluate_condition(condition, {"count": 1}, language="simple")

    def test_non_numeric_ordering_operand(self):
        with pytest.raises(ExpressionError):
            evaluate_condition("name > 3", {"name": "abc"}, language="simple")

    def test_unknown_language(self):
        with pytest.raises(ExpressionError):
            evaluate_condition("1", {}, language="cel")


class TestRenderTemplate:

    def test_whole_placeholder_keeps_native_type(self):
        assert render_template("{{user.age}}", {"user": {"age": 36}}) == 36

    def test_inline_placeholder_is_stringified(self):
        assert render_template("Hello {{user.name}}!", {"user": {"name": "Ada"}}) == "Hello Ada!"

    def test_unknown_placeholder_is_left_in_place(self):
        assert render_template("id={{missing}}", {}) == "id={{missing}}"
        assert render_template("{{missing}}", {}) == "{{missing}}"

    def test_list_index_path(self):
        assert render_template("{{items.1}}", {"items": ["a", "b"]}) == "b"

    def test_nested_containers(self):
        rendered = render_template(
            {"url": "{{base}}/users", "headers": ["X-Id: {{id}}"], "retries": 2},
            {"base": "https://api.test", "id": 7},
        )
        assert rendered == {"url": "https://api.test/users", "headers": ["X-Id: 7"], "retries": 2}

    def test_dict_values_are_json_encoded_inline(self):
        assert render_template("payload={{body}}", {"body": {"a": 1}}) == 'payload={"a": 1}'


class TestGetNestedValue:

    def test_dot_path(self):
        assert get_nested_value({"result": {"status": "ok"}}, "result.status") == "ok"

    def test_list_index(self):
        assert get_nested_value({"items": [{"name": "a"}]}, "items.0.name") == "a"

    def test_out_of_range_index(self):
        assert get_nested_value({"items": []}, "items.3") is None

    def test_missing_path(self):
        assert get_nested_value({"a": 1}, "a.b") is None
        assert get_nested_value({}, "a") is None
