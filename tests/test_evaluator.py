import math

import pytest

from hadesscript import Interpreter, Collection, tokenize
from hadesscript.hades_datatypes import (
    HadesArithmeticError, HadesNameError, HadesSyntaxError, HadesTypeError, to_builtin,
)


@pytest.fixture
def interp():
    return Interpreter(output=lambda message: None)


def ev(interp, formula):
    return interp.evaluate_formula(formula)


@pytest.mark.parametrize("formula, expected", [
    ("2 + 3 * 4", 14),
    ("(2 + 3) * 4", 20),
    ("2 ^ 3 ^ 2", 512),
    ("(2 ^ 3) ^ 2", 64),
    ("-2 ^ 2", -4),
    ("10 - 4 - 3", 3),
    ("10 / 4", 2.5),
    ("7 % 3", 1),
    ("-7 % 3", -1),
    ("2 * -3", -6),
    ("2 3", 6),
    ("1 - 0", 1),
    ("1.5 + .5", 2.0),
])
def test_arithmetic(interp, formula, expected):
    assert ev(interp, formula) == expected


def test_integer_literals_stay_integers(interp):
    assert isinstance(ev(interp, "1 + 2"), int)
    assert isinstance(ev(interp, "1.0 + 2"), float)


@pytest.mark.parametrize("formula", ["1 / 0", "5 % 0", "0 ^ -1"])
def test_division_by_zero(interp, formula):
    with pytest.raises(HadesArithmeticError):
        ev(interp, formula)


def test_parenthesized_form_matches_precedence(interp):
    pairs = [
        ("1 + 2 * 3 - 4 / 2", "(1 + (2 * 3)) - (4 / 2)"),
        ("2 ^ 2 * 3", "(2 ^ 2) * 3"),
        ("8 / 2 / 2", "(8 / 2) / 2"),
    ]
    for flat, grouped in pairs:
        assert ev(interp, flat) == ev(interp, grouped)


@pytest.mark.parametrize("formula, expected", [
    ("1 == '1'", True),
    ("1 === '1'", False),
    ("1 !== '1'", True),
    ("'abc' < 'abd'", True),
    ("2 < 10", True),
    ("'2' < '10'", True),
    ("3 >= 3", True),
    ("null == 0", True),
    ("null === 0", False),
    ("true & false", False),
    ("true | false", True),
    ("true ~ true", False),
    ("1 ~ 0", True),
    ("1 + 1 == 2 & 3 > 2", True),
    ("[1, 2] == [1, 2]", True),
    ("[1, 2] === [1, 2]", True),
    ("[1, 2] == [2, 1]", False),
])
def test_comparison_and_logic(interp, formula, expected):
    assert ev(interp, formula) is expected


def test_ordering_collections_is_a_type_error(interp):
    with pytest.raises(HadesTypeError):
        ev(interp, "[1] < [2]")


def test_keywords_are_case_insensitive(interp):
    assert ev(interp, "TRUE") is True
    assert ev(interp, "False") is False
    assert ev(interp, "NULL") is None


def test_unknown_identifier(interp):
    with pytest.raises(HadesNameError) as exc:
        ev(interp, "foo")
    assert "Undefined identifier 'foo'" in exc.value.message


def test_single_quoted_escapes(interp):
    assert ev(interp, r"'a\'b'") == "a'b"
    assert ev(interp, r"'back\\slash'") == "back\\slash"
    assert ev(interp, r"'no $interp \n'") == r"no $interp \n"


def test_double_quoted_interpolation(interp):
    interp.declare_variable("x", 5)
    interp.declare_variable("user", {"name": "Ann"})
    assert ev(interp, '"x is $x"') == "x is 5"
    assert ev(interp, '"hi $user.name!"') == "hi Ann!"
    assert ev(interp, r'"cost \$x"') == "cost $x"
    assert ev(interp, r'"tab\tend"') == "tab\tend"
    assert ev(interp, r'"say \"hi\""') == 'say "hi"'


def test_string_concatenation(interp):
    assert ev(interp, "'abc' + 1") == "abc1"
    assert ev(interp, "1 + '2'") == "12"
    assert ev(interp, "'a' + true") == "atrue"


def test_string_in_arithmetic_is_a_type_error(interp):
    with pytest.raises(HadesTypeError):
        ev(interp, "'a' * 2")


def test_numeric_strings_coerce(interp):
    assert ev(interp, "'3' * 2") == 6
    assert ev(interp, "'1.5' - 1") == 0.5


def test_collection_literal_keys(interp):
    value = ev(interp, "[1, 2, x: 3]")
    assert isinstance(value, Collection)
    assert list(value.keys()) == [0, 1, "x"]
    assert to_builtin(value) == {0: 1, 1: 2, "x": 3}


def test_nested_collection_literal(interp):
    value = ev(interp, "[a: [1, 2], b: [c: 'd']]")
    assert to_builtin(value) == {"a": [1, 2], "b": {"c": "d"}}


def test_collection_union(interp):
    value = ev(interp, "[1, 2] + [3, k: 4]")
    assert list(value.items()) == [(0, 1), (1, 2), (2, 3), ("k", 4)]


def test_collection_union_overwrites_string_keys(interp):
    value = ev(interp, "[a: 1] + [a: 2]")
    assert to_builtin(value) == {"a": 2}


def test_collection_difference_keeps_keys(interp):
    value = ev(interp, "[1, 2, 3, 2] - [2]")
    assert list(value.items()) == [(0, 1), (2, 3)]


def test_collection_mixed_with_scalar_is_a_type_error(interp):
    with pytest.raises(HadesTypeError):
        ev(interp, "[1] + 1")


def test_function_call_literal(interp):
    assert ev(interp, "{math:sqrt 16} + 1") == 5
    assert ev(interp, "{math:pi}") == pytest.approx(math.pi)
    assert ev(interp, "{math:round {math:sqrt 2}, 2}") == pytest.approx(1.41)


def test_call_to_undefined_function(interp):
    with pytest.raises(HadesNameError) as exc:
        ev(interp, "{nope 1}")
    assert "Call to undefined function {nope}" in exc.value.message


def test_evaluate_tokens_directly(interp):
    assert interp.evaluate(tokenize("1 + 2")) == 3


def test_syntax_error_propagates(interp):
    with pytest.raises(HadesSyntaxError):
        ev(interp, "1 +")


def test_errors_return_false_when_not_throwing():
    interp = Interpreter(throw_errors=False)
    assert interp.evaluate_formula("1 / 0") is False
    assert interp.messages[-1].startswith("ERROR: Division by zero")
