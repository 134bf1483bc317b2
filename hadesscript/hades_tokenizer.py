"""
Shunting-yard tokenizer for HadesScript formulas.

Turns an infix formula into a list of tokens in Reverse Polish order.
String, collection and call literals are kept whole as single tokens and
are only taken apart later by the evaluator.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List, Optional

from hadesscript.hades_datatypes import HadesSyntaxError

# Token kinds
NUMBER = "number"
IDENTIFIER = "identifier"
VARIABLE = "variable"
SINGLE_STRING = "single-string"
DOUBLE_STRING = "double-string"
COLLECTION = "collection"
CALL = "call"
OPERATOR = "operator"
NEGATE = "negate"
LPAREN = "("


@dataclass(frozen=True)
class Token:
    kind: str
    text: str

    def __repr__(self) -> str:
        return f"{self.kind}:{self.text}"


ARITHMETIC = {"+", "-", "*", "/", "%", "^"}
COMPARISON = {"==", "!=", "===", "!==", "<", "<=", ">", ">="}
LOGICAL = {"&", "|", "~"}
BINARY_OPERATORS = ARITHMETIC | COMPARISON | LOGICAL

PRECEDENCE = {
    "+": 0, "-": 0,
    "*": 1, "/": 1, "%": 1, NEGATE: 1,
    "^": 2,
}
PRECEDENCE.update({op: -1 for op in COMPARISON})
PRECEDENCE.update({op: -2 for op in LOGICAL})
RIGHT_ASSOCIATIVE = {"^"}

OPERATOR_CHARS = set("+-*/%^&|~=!<>")

OPERAND_RE = re.compile(r"\$[a-zA-Z_][\w.]*|[a-zA-Z_]\w*|\d+(?:\.\d*)?|\.\d+")

_OPENERS = {"'": SINGLE_STRING, '"': DOUBLE_STRING, "[": COLLECTION, "{": CALL}


def _operand_kind(text: str) -> str:
    if text[0] == "$":
        return VARIABLE
    if text[0].isdigit() or text[0] == ".":
        return NUMBER
    return IDENTIFIER


def _read_operator(expr: str, index: int) -> str:
    """Greedy match of the operator starting at ``index``."""
    for length in (3, 2):
        candidate = expr[index:index + length]
        if candidate in COMPARISON:
            return candidate
    char = expr[index]
    if char in ("=", "!"):
        raise HadesSyntaxError(f"Unexpected character '{char}'")
    return char


def _pops_before(incoming: str, top: str) -> bool:
    if top == LPAREN:
        return False
    if incoming in RIGHT_ASSOCIATIVE:
        return PRECEDENCE[top] > PRECEDENCE[incoming]
    return PRECEDENCE[top] >= PRECEDENCE[incoming]


def tokenize(expression: str) -> List[Token]:
    """Convert an infix formula into RPN tokens.

    Four depth counters track single-quoted strings, double-quoted strings,
    collection brackets and call braces. While any of them is non-zero the
    characters are collected verbatim into a literal buffer, which is
    emitted as one token once every counter is back to zero.
    """
    expr = expression.strip()
    if not expr:
        raise HadesSyntaxError("Empty expression")

    output: List[Token] = []
    stack: List[str] = []
    single = double = brackets = braces = 0
    escape = False
    buffer = ""
    buffer_kind: Optional[str] = None
    expecting_operator = False
    index = 0
    n = len(expr)

    while index < n:
        char = expr[index]
        in_literal = single or double or brackets or braces

        if in_literal or char in _OPENERS:
            if not in_literal:
                if expecting_operator:
                    raise HadesSyntaxError(f"Unexpected literal starting with {char!r}, operator expected")
                buffer_kind = _OPENERS[char]
            buffer += char
            index += 1
            if single or double:
                if escape:
                    escape = False
                elif char == "\\":
                    escape = True
                elif char == "'" and single:
                    single = 0
                elif char == '"' and double:
                    double = 0
            elif char == "'":
                single = 1
            elif char == '"':
                double = 1
            elif char == "[":
                brackets += 1
            elif char == "{":
                braces += 1
            elif char == "]":
                if brackets == 0:
                    raise HadesSyntaxError("Unexpected closing collection delimiter")
                brackets -= 1
            elif char == "}":
                if braces == 0:
                    raise HadesSyntaxError("Unexpected closing function call delimiter")
                braces -= 1
            if not (single or double or brackets or braces):
                output.append(Token(buffer_kind, buffer))
                buffer = ""
                buffer_kind = None
                expecting_operator = True
        elif char == "]":
            raise HadesSyntaxError("Unexpected closing collection delimiter")
        elif char == "}":
            raise HadesSyntaxError("Unexpected closing function call delimiter")
        elif char == "-" and not expecting_operator:
            stack.append(NEGATE)
            index += 1
        elif expecting_operator and (char in OPERATOR_CHARS or char == "(" or OPERAND_RE.match(expr, index)):
            if char in OPERATOR_CHARS:
                op = _read_operator(expr, index)
                index += len(op)
            else:
                # juxtaposition: "2 3" and "2(3)" both multiply
                op = "*"
            while stack and _pops_before(op, stack[-1]):
                output.append(Token(NEGATE if stack[-1] == NEGATE else OPERATOR, stack.pop()))
            stack.append(op)
            expecting_operator = False
        elif char == ")" and expecting_operator:
            while True:
                if not stack:
                    raise HadesSyntaxError("Unexpected closing parenthesis")
                top = stack.pop()
                if top == LPAREN:
                    break
                output.append(Token(NEGATE if top == NEGATE else OPERATOR, top))
            index += 1
        elif char == "(":
            stack.append(LPAREN)
            index += 1
        elif char == ")":
            raise HadesSyntaxError("Unexpected closing parenthesis")
        elif (match := OPERAND_RE.match(expr, index)):
            text = match.group(0)
            output.append(Token(_operand_kind(text), text))
            index += len(text)
            expecting_operator = True
        elif char in OPERATOR_CHARS:
            raise HadesSyntaxError(f"Unexpected operator '{char}'")
        else:
            raise HadesSyntaxError(f"Unexpected character '{char}'")

        if not (single or double or brackets or braces):
            while index < n and expr[index].isspace():
                index += 1

    if single or double:
        raise HadesSyntaxError("Missing closing string delimiter")
    if brackets:
        raise HadesSyntaxError("Missing closing collection delimiter")
    if braces:
        raise HadesSyntaxError("Missing closing function call delimiter")
    if not expecting_operator:
        raise HadesSyntaxError("Invalid or missing operand")

    while stack:
        top = stack.pop()
        if top == LPAREN:
            raise HadesSyntaxError("Missing closing parenthesis")
        output.append(Token(NEGATE if top == NEGATE else OPERATOR, top))
    return output


def split_top_level(text: str, separator: str = ",") -> List[str]:
    """Split on ``separator`` where it is not nested in a literal or group.

    Returns the stripped pieces; an empty (or blank) input gives an empty
    list. A blank piece between separators is a syntax error.
    """
    if not text or not text.strip():
        return []
    pieces: List[str] = []
    buffer = ""
    single = double = False
    escape = False
    depth = 0
    for char in text:
        if single or double:
            if escape:
                escape = False
            elif char == "\\":
                escape = True
            elif char == "'" and single:
                single = False
            elif char == '"' and double:
                double = False
        elif char == "'":
            single = True
        elif char == '"':
            double = True
        elif char in "[{(":
            depth += 1
        elif char in "]})":
            depth -= 1
        elif char == separator and depth == 0:
            pieces.append(buffer.strip())
            buffer = ""
            continue
        buffer += char
    pieces.append(buffer.strip())
    if any(not p for p in pieces):
        raise HadesSyntaxError("Empty element in list")
    return pieces
