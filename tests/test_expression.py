import logging

import pytest

from osdl_runtime.errors import EvalError, ParseError
from osdl_runtime.expression import evaluate, evaluate_strict, register_function
from osdl_runtime.values import UNDEFINED


def make_context() -> dict:
    return {
        "product": {"name": "Widget", "price": 29.99, "tags": ["new", "sale"], "stock": 0},
        "items": [{"name": "first"}, {"name": "second"}],
        "user": {"name": "Ada", "isLoggedIn": True},
        "count": 7,
        "empty": "",
    }


def test_arithmetic_follows_precedence():
    assert evaluate_strict("1 + 2 * 3", {}) == 7
    assert evaluate_strict("(1 + 2) * 3", {}) == 9
    assert evaluate_strict("10 - 4 - 3", {}) == 3
    assert evaluate_strict("-count + 10", make_context()) == 3


def test_division_and_remainder():
    assert evaluate_strict("7 / 2", {}) == 3.5
    assert evaluate_strict("7 % 3", {}) == 1
    assert isinstance(evaluate_strict("7 % 3", {}), int)
    with pytest.raises(EvalError):
        evaluate_strict("1 / 0", {})
    with pytest.raises(EvalError):
        evaluate_strict("count % 0", make_context())


def test_plus_concatenates_when_either_side_is_a_string():
    context = make_context()
    assert evaluate_strict("'Total: ' + count", context) == "Total: 7"
    assert evaluate_strict("product.price + ' USD'", context) == "29.99 USD"
    assert evaluate_strict("'flag: ' + user.isLoggedIn", context) == "flag: true"


def test_member_access_on_missing_data_is_tolerant():
    context = make_context()
    assert evaluate_strict("product.missing", context) is UNDEFINED
    assert evaluate_strict("product.missing.deeper", context) is UNDEFINED
    assert evaluate_strict("items[10]", context) is UNDEFINED
    assert evaluate_strict("items[10] ? items[10].name : 'fallback'", context) == "fallback"
    assert evaluate_strict("items[1].name", context) == "second"
    assert evaluate_strict("items.length", context) == 2
    assert evaluate_strict("product['name']", context) == "Widget"


def test_logical_operators_return_operands():
    context = make_context()
    assert evaluate_strict("empty || 'default'", context) == "default"
    assert evaluate_strict("user.name && user.isLoggedIn", context) is True
    assert evaluate_strict("product.stock && 'in stock'", context) == 0
    assert evaluate_strict("!product.stock", context) is True


def test_equality_is_strict():
    assert evaluate_strict("1 == 1.0", {}) is True
    assert evaluate_strict("'1' === 1", {}) is False
    assert evaluate_strict("null == undefined", {}) is False
    assert evaluate_strict("missing === undefined", {}) is True
    assert evaluate_strict("user.name != 'Bob'", make_context()) is True


def test_relational_comparison_with_nullish_operand_is_false():
    context = make_context()
    assert evaluate_strict("missing > 3", context) is False
    assert evaluate_strict("missing <= 3", context) is False
    assert evaluate_strict("count >= 7", context) is True
    assert evaluate_strict("'apple' < 'banana'", context) is True


def test_mixed_type_comparison_is_an_error():
    with pytest.raises(EvalError):
        evaluate_strict("'10' > 3", {})


def test_arithmetic_on_non_numbers_is_an_error():
    with pytest.raises(EvalError):
        evaluate_strict("product.name * 2", make_context())


def test_unterminated_string_reports_position():
    with pytest.raises(ParseError) as excinfo:
        evaluate_strict("'open + 1", {})
    assert excinfo.value.position == 0


def test_trailing_tokens_are_a_parse_error():
    with pytest.raises(ParseError):
        evaluate_strict("1 2", {})
    with pytest.raises(ParseError):
        evaluate_strict("", {})


def test_only_named_functions_can_be_called():
    with pytest.raises(ParseError):
        evaluate_strict("product.name()", make_context())
    with pytest.raises(EvalError):
        evaluate_strict("nope(1)", {})


def test_builtin_functions():
    context = make_context()
    assert evaluate_strict("toFixed(product.price, 1)", context) == "30.0"
    assert evaluate_strict("round(2.5)", {}) == 3
    assert evaluate_strict("round(4.567, 2)", {}) == 4.57
    assert evaluate_strict("includes(product.tags, 'sale')", context) is True
    assert evaluate_strict("includes(user.name, 'd')", context) is True
    assert evaluate_strict("len(items)", context) == 2
    assert evaluate_strict("toUpperCase(user.name)", context) == "ADA"
    assert evaluate_strict("get(product, 'tags[1]')", context) == "sale"
    assert evaluate_strict("get(product, 'nope', 'n/a')", context) == "n/a"


def test_registered_function_is_callable():
    register_function("double", lambda value: value * 2)
    assert evaluate_strict("double(count)", make_context()) == 14


def test_evaluate_logs_and_returns_undefined(caplog):
    with caplog.at_level(logging.WARNING, logger="osdl_runtime.expression"):
        assert evaluate("1 +", {}) is UNDEFINED
    assert "Expression evaluation failed" in caplog.text


def test_deeply_nested_expressions_degrade_to_undefined():
    nested = "(" * 3000 + "1" + ")" * 3000
    with pytest.raises(ParseError):
        evaluate_strict(nested, {})
    assert evaluate(nested, {}) is UNDEFINED
    assert evaluate("!" * 3000 + "true", {}) is UNDEFINED
    assert evaluate(" + ".join(["1"] * 5000), {}) is UNDEFINED
    assert evaluate_strict("((((1 + 2))))", {}) == 3
    assert evaluate_strict("!!true", {}) is True


def test_string_escapes():
    assert evaluate_strict(r"'It\'s ' + 'fine'", {}) == "It's fine"
    assert evaluate_strict('"line\\nbreak"', {}) == "line\nbreak"
