"""
Defines the core data types for the HadesScript runtime.

This module provides the dynamic value helpers, the Collection container,
variable and function records, diagnostics, and the error taxonomy shared
by every other part of the interpreter.
"""

import collections.abc
import copy
import math
import re
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, Union

Key = Union[int, str]

IDENTIFIER_RE = re.compile(r"^[a-zA-Z_]\w*$")
INDEX_RE = re.compile(r"^\d+$")
NUMERIC_RE = re.compile(r"^\s*[-+]?(\d+(\.\d*)?|\.\d+)([eE][-+]?\d+)?\s*$")


# =================================================================
# Diagnostics & Errors
# =================================================================

class Level(IntEnum):
    NOTICE = 0
    WARNING = 1
    ERROR = 2


@dataclass
class Diagnostic:
    """One entry of the interpreter's message log."""
    level: Level
    message: str
    zone: Optional[str] = None
    line: int = 0

    def describe(self) -> str:
        where = f" in {self.zone}" if self.zone else ""
        return f"{self.message}{where} on line {self.line}"

    def __str__(self) -> str:
        return f"{self.level.name}: {self.describe()}"


class HadesError(Exception):
    """Base class for all script failures.

    ``level`` decides what the interpreter does with the failing statement:
    ERROR aborts the current execution, anything lower only skips it.
    """
    kind = "Error"
    level = Level.ERROR

    def __init__(self, message: str, level: Optional[Level] = None):
        super().__init__(message)
        self.message = message
        if level is not None:
            self.level = level
        self.diagnostic: Optional[Diagnostic] = None
        self.stacktrace: List[str] = []

    def __str__(self) -> str:
        if self.diagnostic is not None:
            return f"hades: {self.diagnostic.describe()}"
        return self.message


class HadesSyntaxError(HadesError):
    kind = "SyntaxError"


class HadesNameError(HadesError):
    kind = "NameError"


class HadesTypeError(HadesError):
    kind = "TypeError"


class HadesArithmeticError(HadesError):
    kind = "ArithmeticError"


class HadesScopeError(HadesError):
    kind = "ScopeError"
    level = Level.WARNING


# =================================================================
# Collection
# =================================================================

def normalize_key(key: Any) -> Key:
    """Coerce a script value into a Collection key (int or str)."""
    if isinstance(key, bool):
        return int(key)
    if isinstance(key, float):
        if key.is_integer():
            return int(key)
        raise HadesTypeError(f"Invalid collection key {key!r}")
    if isinstance(key, int):
        return key
    if isinstance(key, str):
        # Only canonical decimals are integer keys; "007" stays a string.
        if INDEX_RE.match(key) and str(int(key)) == key:
            return int(key)
        return key
    raise HadesTypeError(f"Invalid collection key {key!r}")


class Collection(collections.abc.MutableMapping):
    """The single composite value: an ordered mapping of int/str keys.

    Appending assigns the next integer key, one past the largest
    non-negative integer key seen so far, so the same type serves as a list
    and as an associative array.
    """

    def __init__(self, entries: Any = None):
        self.data: Dict[Key, Any] = {}
        self.next_index = 0
        if entries is None:
            return
        if isinstance(entries, collections.abc.Mapping):
            for k, v in entries.items():
                self[k] = v
        else:
            for v in entries:
                self.append(v)

    def __getitem__(self, key):
        return self.data[normalize_key(key)]

    def __setitem__(self, key, value):
        key = normalize_key(key)
        self.data[key] = value
        if isinstance(key, int) and key >= self.next_index:
            self.next_index = key + 1

    def __delitem__(self, key):
        del self.data[normalize_key(key)]

    def __contains__(self, key) -> bool:
        try:
            return normalize_key(key) in self.data
        except HadesTypeError:
            return False

    def __iter__(self) -> Iterator[Key]:
        return iter(self.data)

    def __len__(self) -> int:
        return len(self.data)

    def append(self, value: Any) -> Key:
        key = self.next_index
        self[key] = value
        return key

    def entries(self) -> List[Tuple[Key, Any]]:
        return list(self.data.items())

    def is_list(self) -> bool:
        """True when the keys are exactly 0..n-1 in order."""
        return all(k == i for i, k in enumerate(self.data))

    def __deepcopy__(self, memo):
        clone = Collection()
        for k, v in self.data.items():
            clone.data[k] = copy.deepcopy(v, memo)
        clone.next_index = self.next_index
        return clone

    def __repr__(self) -> str:
        return f"Collection({self.data!r})"


# =================================================================
# Value helpers
# =================================================================

def type_name(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "bool"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, Collection):
        return "collection"
    return type(value).__name__


def is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def is_numeric_string(value: Any) -> bool:
    return isinstance(value, str) and NUMERIC_RE.match(value) is not None


def truthy(value: Any) -> bool:
    if isinstance(value, Collection):
        return len(value) > 0
    return bool(value)


def to_number(value: Any) -> Union[int, float]:
    if value is None:
        return 0
    if isinstance(value, bool):
        return int(value)
    if is_number(value):
        return value
    if is_numeric_string(value):
        text = value.strip()
        number = float(text)
        return int(number) if INDEX_RE.match(text.lstrip("+-")) else number
    raise HadesTypeError(f"Unsupported operand type {type_name(value)} for arithmetic")


def format_number(value: Union[int, float]) -> str:
    if isinstance(value, float):
        if math.isinf(value):
            return "INF" if value > 0 else "-INF"
        if math.isnan(value):
            return "NAN"
        if value.is_integer() and abs(value) < 1e15:
            return str(int(value))
        return f"{value:.14g}"
    return str(value)


def stringify(value: Any) -> str:
    """Render a value the way ``echo`` and string concatenation see it."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if is_number(value):
        return format_number(value)
    if isinstance(value, str):
        return value
    if isinstance(value, Collection):
        from hadesscript.hades_printer import Printer
        return Printer().pformat(value)
    return str(value)


def to_value(obj: Any) -> Any:
    """Normalise a Python object coming from a host into a script value."""
    if obj is None or isinstance(obj, (bool, int, float, str, Collection)):
        return obj
    if isinstance(obj, collections.abc.Mapping):
        return Collection({k: to_value(v) for k, v in obj.items()})
    if isinstance(obj, (list, tuple)):
        return Collection(to_value(v) for v in obj)
    raise HadesTypeError(f"Cannot convert {type(obj).__name__} to a script value")


def to_builtin(value: Any) -> Any:
    """Convert a script value into plain Python types (dict/list/scalars)."""
    if isinstance(value, Collection):
        if value.is_list():
            return [to_builtin(v) for v in value.values()]
        return {k: to_builtin(v) for k, v in value.items()}
    return value


def copy_value(value: Any) -> Any:
    if isinstance(value, Collection):
        return copy.deepcopy(value)
    return value


# =================================================================
# Variables & Functions
# =================================================================

class Lifetime(Enum):
    LOCAL = "local"
    GLOBAL = "global"
    CONST = "const"


@dataclass
class Variable:
    value: Any
    lifetime: Lifetime = Lifetime.LOCAL


@dataclass(frozen=True)
class Function:
    """A named function; ``body`` is a host callable or script source."""
    qualified_name: str
    parameters: Tuple[str, ...] = ()
    defaults: Dict[str, Any] = field(default_factory=dict)
    body: Union[Callable[..., Any], str] = ""

    @property
    def is_native(self) -> bool:
        return callable(self.body)

    def __repr__(self) -> str:
        kind = "native" if self.is_native else "script"
        return f"<Function {self.qualified_name}({', '.join(self.parameters)}) {kind}>"


def qualify(name: str, namespace: Optional[str] = None) -> str:
    return f"{namespace}:{name}" if namespace else name
