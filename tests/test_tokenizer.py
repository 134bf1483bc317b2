import pytest

from hadesscript.hades_datatypes import HadesSyntaxError
from hadesscript.hades_tokenizer import (
    tokenize, split_top_level,
    NUMBER, VARIABLE, SINGLE_STRING, DOUBLE_STRING, COLLECTION, CALL, OPERATOR, NEGATE,
)


def texts(expr):
    return [t.text for t in tokenize(expr)]


@pytest.mark.parametrize("expr, expected", [
    ("2 + 3 * 4", ["2", "3", "4", "*", "+"]),
    ("(2 + 3) * 4", ["2", "3", "+", "4", "*"]),
    ("2 ^ 3 ^ 2", ["2", "3", "2", "^", "^"]),
    ("8 - 2 - 1", ["8", "2", "-", "1", "-"]),
    ("1+2", ["1", "2", "+"]),
    ("$a == 1 & $b != 2", ["$a", "1", "==", "$b", "2", "!=", "&"]),
    ("1 + 1 <= 3", ["1", "1", "+", "3", "<="]),
    ("$x !== null", ["$x", "null", "!=="]),
])
def test_rpn_order(expr, expected):
    assert texts(expr) == expected


def test_unary_minus_becomes_negate():
    tokens = tokenize("-3 + 2")
    assert [t.kind for t in tokens] == [NUMBER, NEGATE, NUMBER, OPERATOR]
    assert [t.text for t in tokenize("2 * -3")] == ["2", "3", NEGATE, "*"]


def test_negate_binds_looser_than_power():
    assert texts("-2 ^ 2") == ["2", "2", "^", NEGATE]


def test_implicit_multiplication():
    assert texts("2 3") == ["2", "3", "*"]
    assert texts("2(3 + 1)") == ["2", "3", "1", "+", "*"]
    assert texts("$a $b") == ["$a", "$b", "*"]


def test_literals_are_single_tokens():
    tokens = tokenize("'a, b' + [1, 'x]'] + {math:max 1, 2} + \"q $v\"")
    kinds = [t.kind for t in tokens if t.kind != OPERATOR]
    assert kinds == [SINGLE_STRING, COLLECTION, CALL, DOUBLE_STRING]
    assert tokens[0].text == "'a, b'"
    assert tokens[1].text == "[1, 'x]']"
    assert tokens[3].text == "{math:max 1, 2}"


def test_escaped_quote_stays_inside_string():
    tokens = tokenize(r"'a\'b'")
    assert len(tokens) == 1
    assert tokens[0].text == r"'a\'b'"


def test_nested_collections_and_calls():
    tokens = tokenize("[[1, 2], {f [3]}]")
    assert len(tokens) == 1
    assert tokens[0].kind == COLLECTION


def test_dotted_variable_is_one_operand():
    tokens = tokenize("$a.b.0")
    assert tokens[0].kind == VARIABLE
    assert tokens[0].text == "$a.b.0"


@pytest.mark.parametrize("expr, message", [
    ("", "Empty expression"),
    ("   ", "Empty expression"),
    ("1 +", "Invalid or missing operand"),
    ("(1 + 2", "Missing closing parenthesis"),
    ("1 + 2)", "Unexpected closing parenthesis"),
    ("'abc", "Missing closing string delimiter"),
    ('"abc', "Missing closing string delimiter"),
    ("[1, 2", "Missing closing collection delimiter"),
    ("{f 1", "Missing closing function call delimiter"),
    ("1 ]", "Unexpected closing collection delimiter"),
    ("1 = 2", "Unexpected character '='"),
    ("1 # 2", "Unexpected character '#'"),
    ("* 2", "Unexpected operator '*'"),
])
def test_syntax_errors(expr, message):
    with pytest.raises(HadesSyntaxError) as exc:
        tokenize(expr)
    assert message in exc.value.message


def test_literal_where_operator_expected_is_an_error():
    with pytest.raises(HadesSyntaxError):
        tokenize("1 'a'")


def test_split_top_level():
    assert split_top_level("1, [2, 3], 'a,b', {f 1, 2}, (4, 5)") == [
        "1", "[2, 3]", "'a,b'", "{f 1, 2}", "(4, 5)"
    ]
    assert split_top_level("") == []
    assert split_top_level("  ") == []
    assert split_top_level(r"'it\'s, fine', 2") == [r"'it\'s, fine'", "2"]


def test_split_top_level_rejects_empty_elements():
    with pytest.raises(HadesSyntaxError):
        split_top_level("1,,2")
