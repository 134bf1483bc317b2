"""
Native function libraries for HadesScript: ``math``, ``string`` and ``array``.

Each library is an explicit registration table. A function is exposed as
``{namespace:name}`` with the parameter names and default values given at
registration time.
"""
import math
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

import pystache

from hadesscript.hades_datatypes import (
    Collection, HadesArithmeticError, HadesTypeError,
    stringify, to_builtin, to_number, type_name,
)


@dataclass(frozen=True)
class NativeFunction:
    name: str
    parameters: Tuple[str, ...]
    defaults: Dict[str, Any] = field(default_factory=dict)
    func: Callable[..., Any] = None


class NativeLibrary:
    """A namespace of host functions callable from scripts."""

    def __init__(self, namespace: Optional[str]):
        self.namespace = namespace
        self.functions: List[NativeFunction] = []

    def function(self, name: str, parameters: Tuple[str, ...] = (), **defaults):
        """Decorator registering ``func`` under ``name``."""
        def register(func):
            self.functions.append(NativeFunction(name, tuple(parameters), dict(defaults), func))
            return func
        return register

    def __contains__(self, name: str) -> bool:
        return any(f.name == name for f in self.functions)

    def __repr__(self) -> str:
        return f"<NativeLibrary {self.namespace}: {len(self.functions)} functions>"


def _collection(value: Any, func: str) -> Collection:
    if not isinstance(value, Collection):
        raise HadesTypeError(f"{{{func}}} expects a collection, got {type_name(value)}")
    return value


def _slice_bounds(size: int, offset: int, length: int) -> Tuple[int, int]:
    # Negative offsets count from the end; length 0 means "to the end" and a
    # negative length stops that many elements before the end.
    start = offset if offset >= 0 else max(size + offset, 0)
    if length == 0:
        return start, size
    if length > 0:
        return start, min(start + length, size)
    return start, max(size + length, start)


# ===================================================================
# math
# ===================================================================

math_lib = NativeLibrary("math")


def _unary(func: Callable[[float], float]) -> Callable[[Any], float]:
    def wrapper(arg):
        try:
            return func(to_number(arg))
        except ValueError:
            raise HadesArithmeticError(f"Math domain error in {func.__name__}({stringify(arg)})") from None
    return wrapper


for _name in ("sin", "sinh", "asin", "asinh", "cos", "cosh", "acos", "acosh",
              "tan", "tanh", "atan", "atanh", "sqrt", "exp"):
    math_lib.function(_name, ("arg",))(_unary(getattr(math, _name)))

math_lib.function("abs", ("arg",))(lambda arg: abs(to_number(arg)))
math_lib.function("ln", ("arg",))(_unary(math.log))


@math_lib.function("log", ("arg", "base"), base=10)
def _log(arg, base):
    try:
        return math.log(to_number(arg), to_number(base))
    except (ValueError, ZeroDivisionError):
        raise HadesArithmeticError(f"Math domain error in log({stringify(arg)}, {stringify(base)})") from None


@math_lib.function("round", ("val", "precision"), precision=0)
def _round(val, precision):
    # Halves round away from zero.
    number = to_number(val)
    factor = 10 ** int(to_number(precision))
    rounded = math.floor(abs(number) * factor + 0.5) / factor
    return math.copysign(rounded, number)


@math_lib.function("pi")
def _pi():
    return math.pi


# ===================================================================
# string
# ===================================================================

string_lib = NativeLibrary("string")


@string_lib.function("find", ("find", "string"))
def _find(find, string):
    position = stringify(string).find(stringify(find))
    return None if position < 0 else position


@string_lib.function("length", ("string",))
def _string_length(string):
    return len(stringify(string))


@string_lib.function("replace", ("find", "replace", "string"))
def _replace(find, replace, string):
    return stringify(string).replace(stringify(find), stringify(replace))


@string_lib.function("slice", ("string", "offset", "length"), length=0)
def _string_slice(string, offset, length):
    text = stringify(string)
    start, end = _slice_bounds(len(text), int(to_number(offset)), int(to_number(length)))
    return text[start:end]


@string_lib.function("split", ("delimiter", "string", "limit"), limit=0)
def _split(delimiter, string, limit):
    text, sep, limit = stringify(string), stringify(delimiter), int(to_number(limit))
    if limit > 0:
        parts = text.split(sep, limit - 1)
    else:
        parts = text.split(sep)
        if limit < 0:
            parts = parts[:limit]
    return Collection(parts)


@string_lib.function("render", ("template", "data"), data=None)
def _render(template, data):
    renderer = pystache.Renderer(escape=lambda u: u)
    context = to_builtin(data) if data is not None else {}
    return renderer.render(stringify(template), context)


# ===================================================================
# array
# ===================================================================

array_lib = NativeLibrary("array")


@array_lib.function("sum", ("array",))
def _sum(array):
    return sum((to_number(v) for v in _collection(array, "array:sum").values()), 0)


@array_lib.function("product", ("array",))
def _product(array):
    return math.prod(to_number(v) for v in _collection(array, "array:product").values())


@array_lib.function("slice", ("array", "offset", "length"), length=0)
def _array_slice(array, offset, length):
    entries = _collection(array, "array:slice").entries()
    start, end = _slice_bounds(len(entries), int(to_number(offset)), int(to_number(length)))
    result = Collection()
    for key, value in entries[start:end]:
        if isinstance(key, int):
            result.append(value)
        else:
            result[key] = value
    return result


@array_lib.function("join", ("delimiter", "array"))
def _join(delimiter, array):
    return stringify(delimiter).join(stringify(v) for v in _collection(array, "array:join").values())


def _count(collection: Collection, recursive: bool) -> int:
    total = len(collection)
    if recursive:
        total += sum(_count(v, True) for v in collection.values() if isinstance(v, Collection))
    return total


@array_lib.function("length", ("array", "recursive"), recursive=False)
def _array_length(array, recursive):
    return _count(_collection(array, "array:length"), bool(recursive))


STANDARD_LIBRARIES: Dict[str, NativeLibrary] = {
    lib.namespace: lib for lib in (math_lib, string_lib, array_lib)
}
