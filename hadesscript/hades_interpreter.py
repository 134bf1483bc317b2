"""
The core HadesScript interpreter: Evaluator, VariableStore, FunctionTable,
the per-depth BlockStack, and the line-by-line Interpreter that drives them.
"""
import logging
import math
import re
import sys
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

from hadesscript.hades_datatypes import (
    Collection, Diagnostic, Function, Level, Lifetime, Variable,
    HadesError, HadesSyntaxError, HadesNameError, HadesTypeError,
    HadesArithmeticError, HadesScopeError,
    IDENTIFIER_RE, INDEX_RE,
    copy_value, is_number, is_numeric_string, normalize_key, qualify, stringify,
    to_number, to_value, truthy, type_name,
)
from hadesscript.hades_tokenizer import (
    Token, tokenize, split_top_level,
    NUMBER, IDENTIFIER, VARIABLE, SINGLE_STRING, DOUBLE_STRING,
    COLLECTION, CALL, OPERATOR, NEGATE,
)
from hadesscript.hades_stdlib import NativeLibrary, STANDARD_LIBRARIES
from hadesscript.hades_file import FileSourceLoader

logger = logging.getLogger(__name__)

DEFAULT_LIBRARIES = ("math", "string", "array")

KEYED_ELEMENT_RE = re.compile(r"^([a-zA-Z_]\w*)\s*:\s*(.+)$", re.DOTALL)
CALL_RE = re.compile(r"^([a-zA-Z_][\w:]*)(?:\s+(.*))?$", re.DOTALL)
INTERPOLATION_RE = re.compile(r"\\(.)|\$([a-zA-Z_]\w*(?:\.\w+)*)", re.DOTALL)
SINGLE_ESCAPE_RE = re.compile(r"\\(['\\])")

DOUBLE_ESCAPES = {'"': '"', "\\": "\\", "$": "$", "n": "\n", "t": "\t"}


# ===================================================================
# 1. Value comparison helpers
# ===================================================================

def _compare(left: Any, right: Any) -> int:
    """Three-way loose comparison with numeric coercion."""
    if isinstance(left, Collection) or isinstance(right, Collection):
        raise HadesTypeError(f"Cannot compare {type_name(left)} with {type_name(right)}")
    if left is None or right is None or isinstance(left, bool) or isinstance(right, bool):
        a, b = truthy(left), truthy(right)
    elif is_number(left) and is_number(right):
        a, b = left, right
    elif (is_number(left) or is_numeric_string(left)) and (is_number(right) or is_numeric_string(right)):
        a, b = to_number(left), to_number(right)
    else:
        a, b = stringify(left), stringify(right)
    return (a > b) - (a < b)


def loose_equals(left: Any, right: Any) -> bool:
    if isinstance(left, Collection) or isinstance(right, Collection):
        if not (isinstance(left, Collection) and isinstance(right, Collection)):
            return False
        if len(left) != len(right):
            return False
        return all(k in right and loose_equals(v, right[k]) for k, v in left.items())
    return _compare(left, right) == 0


def strict_equals(left: Any, right: Any) -> bool:
    if type_name(left) != type_name(right):
        return False
    if isinstance(left, Collection):
        l_items, r_items = left.entries(), right.entries()
        return len(l_items) == len(r_items) and all(
            lk == rk and strict_equals(lv, rv) for (lk, lv), (rk, rv) in zip(l_items, r_items)
        )
    return left == right


# ===================================================================
# 2. Evaluator
# ===================================================================

class Evaluator:
    """Computes RPN token sequences produced by the tokenizer."""

    def __init__(self, interpreter: 'Interpreter'):
        self.interpreter = interpreter
        self._binary = self._create_operators()
        self._literals = {
            NUMBER: self._number,
            IDENTIFIER: self._identifier,
            VARIABLE: self._variable,
            SINGLE_STRING: self._single_string,
            DOUBLE_STRING: self._double_string,
            COLLECTION: self._collection,
            CALL: self._call,
        }

    def _create_operators(self) -> Dict[str, Callable[[Any, Any], Any]]:
        return {
            "+": self._add,
            "-": self._sub,
            "*": self._mul,
            "/": self._div,
            "%": self._mod,
            "^": self._pow,
            "&": lambda a, b: truthy(a) and truthy(b),
            "|": lambda a, b: truthy(a) or truthy(b),
            "~": lambda a, b: truthy(a) != truthy(b),
            "==": loose_equals,
            "!=": lambda a, b: not loose_equals(a, b),
            "===": strict_equals,
            "!==": lambda a, b: not strict_equals(a, b),
            "<": lambda a, b: _compare(a, b) < 0,
            "<=": lambda a, b: _compare(a, b) <= 0,
            ">": lambda a, b: _compare(a, b) > 0,
            ">=": lambda a, b: _compare(a, b) >= 0,
        }

    def evaluate(self, tokens: Iterable[Token]) -> Any:
        """Run an RPN token sequence and return the single resulting value."""
        stack: List[Any] = []
        for token in tokens:
            if token.kind == OPERATOR:
                if len(stack) < 2:
                    raise HadesSyntaxError(f"Missing operand for '{token.text}'")
                right = stack.pop()
                left = stack.pop()
                stack.append(self.apply(token.text, left, right))
            elif token.kind == NEGATE:
                if not stack:
                    raise HadesSyntaxError("Missing operand for negation")
                stack.append(-to_number(stack.pop()))
            else:
                stack.append(self._literals[token.kind](token.text))
        if len(stack) != 1:
            raise HadesSyntaxError(f"Unexpected internal error: {len(stack)} values left after evaluation")
        return stack[0]

    def evaluate_formula(self, formula: str) -> Any:
        return self.evaluate(tokenize(formula))

    def apply(self, operator: str, left: Any, right: Any) -> Any:
        try:
            func = self._binary[operator]
        except KeyError:
            raise HadesSyntaxError(f"Unknown operator '{operator}'") from None
        return func(left, right)

    # --- Arithmetic ---
    def _add(self, a, b):
        if isinstance(a, Collection) and isinstance(b, Collection):
            merged = copy_value(a)
            for key, value in b.items():
                if isinstance(key, int):
                    merged.append(copy_value(value))
                else:
                    merged[key] = copy_value(value)
            return merged
        if isinstance(a, Collection) or isinstance(b, Collection):
            raise HadesTypeError(f"Unsupported operand types {type_name(a)} + {type_name(b)}")
        if isinstance(a, str) or isinstance(b, str):
            return stringify(a) + stringify(b)
        return to_number(a) + to_number(b)

    def _sub(self, a, b):
        if isinstance(a, Collection) and isinstance(b, Collection):
            removed = list(b.values())
            diff = Collection()
            for key, value in a.items():
                if not any(loose_equals(value, other) for other in removed):
                    diff[key] = copy_value(value)
            return diff
        if isinstance(a, Collection) or isinstance(b, Collection):
            raise HadesTypeError(f"Unsupported operand types {type_name(a)} - {type_name(b)}")
        return to_number(a) - to_number(b)

    def _mul(self, a, b):
        return to_number(a) * to_number(b)

    def _div(self, a, b):
        divisor = to_number(b)
        if divisor == 0:
            raise HadesArithmeticError("Division by zero")
        return to_number(a) / divisor

    def _mod(self, a, b):
        left, right = to_number(a), to_number(b)
        if right == 0:
            raise HadesArithmeticError("Division by zero")
        result = math.fmod(left, right)
        if isinstance(left, int) and isinstance(right, int):
            return int(result)
        return result

    def _pow(self, a, b):
        try:
            result = to_number(a) ** to_number(b)
        except ZeroDivisionError:
            raise HadesArithmeticError("Division by zero") from None
        except OverflowError:
            raise HadesArithmeticError("Numeric overflow in power") from None
        if isinstance(result, complex):
            raise HadesArithmeticError("Power result is not a real number")
        return result

    # --- Literals ---
    def _number(self, text: str):
        return int(text) if INDEX_RE.match(text) else float(text)

    def _identifier(self, text: str):
        lowered = text.lower()
        if lowered == "true":
            return True
        if lowered == "false":
            return False
        if lowered == "null":
            return None
        raise HadesNameError(f"Undefined identifier '{text}'")

    def _variable(self, text: str):
        return self.interpreter.variables.get(text[1:])

    def _single_string(self, text: str) -> str:
        return SINGLE_ESCAPE_RE.sub(r"\1", text[1:-1])

    def _double_string(self, text: str) -> str:
        def substitute(match):
            escaped, path = match.group(1), match.group(2)
            if escaped is not None:
                return DOUBLE_ESCAPES.get(escaped, "\\" + escaped)
            return stringify(self.interpreter.variables.get(path))
        return INTERPOLATION_RE.sub(substitute, text[1:-1])

    def _collection(self, text: str) -> Collection:
        result = Collection()
        for element in split_top_level(text[1:-1]):
            keyed = KEYED_ELEMENT_RE.match(element)
            if keyed:
                result[keyed.group(1)] = copy_value(self.evaluate_formula(keyed.group(2)))
            else:
                result.append(copy_value(self.evaluate_formula(element)))
        return result

    def _call(self, text: str):
        match = CALL_RE.match(text[1:-1].strip())
        if not match:
            raise HadesSyntaxError("Invalid syntax in function call")
        name, arg_list = match.groups()
        func = self.interpreter.functions.resolve(name)
        args = [self.evaluate_formula(arg) for arg in split_top_level(arg_list or "")]
        return self.interpreter.call_function(func.qualified_name, args)


# ===================================================================
# 3. Variables & Functions
# ===================================================================

class VariableStore:
    """Named bindings with lifetimes and dotted-path access into Collections."""

    def __init__(self, context: 'ExecutionContext'):
        self.context = context
        self.variables: Dict[str, Variable] = {}

    def __contains__(self, name: str) -> bool:
        return name in self.variables

    def __getitem__(self, name: str) -> Variable:
        return self.variables[name]

    def _split(self, path: str) -> Tuple[str, List[Union[int, str]]]:
        parts = path.split(".")
        name = parts[0]
        if not IDENTIFIER_RE.match(name):
            raise HadesSyntaxError(f"Invalid variable name ${path}")
        keys: List[Union[int, str]] = []
        for part in parts[1:]:
            if INDEX_RE.match(part) or IDENTIFIER_RE.match(part):
                keys.append(normalize_key(part))
            else:
                raise HadesTypeError(f"Invalid key name '{part}' for variable ${name}", level=Level.WARNING)
        return name, keys

    def get(self, path: str) -> Any:
        try:
            name, keys = self._split(path)
        except HadesTypeError as e:
            self.context.log(e.level, e.message)
            return None
        variable = self.variables.get(name)
        if variable is None:
            raise HadesNameError(f"Undefined variable ${name}")
        value = variable.value
        for key in keys:
            if not isinstance(value, Collection) or key not in value:
                self.context.log(Level.NOTICE, f"Undefined key '{key}' in ${path}")
                return None
            value = value[key]
        return value

    def check_writable(self, path: str):
        name = path.split(".")[0]
        variable = self.variables.get(name)
        if variable is not None and variable.lifetime is Lifetime.CONST:
            raise HadesScopeError(f"Cannot set constant ${name}")

    def set(self, path: str, value: Any):
        """Assign to a variable or a nested entry, declaring a Local if needed."""
        name, keys = self._split(path)
        self.check_writable(name)
        variable = self.variables.get(name)
        if variable is None:
            variable = self.variables[name] = Variable(Collection() if keys else None)
        if not keys:
            variable.value = copy_value(value)
            return
        if variable.value is None:
            variable.value = Collection()
        container = variable.value
        for key in keys[:-1]:
            if not isinstance(container, Collection):
                break
            child = container.get(key)
            if child is None:
                child = container[key] = Collection()
            container = child
        if not isinstance(container, Collection):
            raise HadesTypeError(f"Cannot use a scalar value as a collection in ${path}", level=Level.WARNING)
        container[keys[-1]] = copy_value(value)

    def declare(self, name: str, value: Any = None, lifetime: Lifetime = Lifetime.LOCAL):
        if "." in name:
            raise HadesNameError("Declaring a variable's subvalue is illegal", level=Level.WARNING)
        if not IDENTIFIER_RE.match(name):
            raise HadesSyntaxError(f"Invalid variable name ${name}")
        if name in self.variables:
            raise HadesNameError(f"Cannot redeclare variable ${name}", level=Level.WARNING)
        self.variables[name] = Variable(copy_value(value), lifetime)

    def stash_locals(self, shadow: Iterable[str] = ()) -> Dict[str, Variable]:
        """Detach every Local variable, plus any variable named in ``shadow``.

        ``restore_locals`` puts all of them back, so a shadowed Global or
        Const reappears once the call that hid it is over.
        """
        shadowed = set(shadow)
        stash = {n: v for n, v in self.variables.items()
                 if v.lifetime is Lifetime.LOCAL or n in shadowed}
        for n in stash:
            del self.variables[n]
        return stash

    def restore_locals(self, stash: Dict[str, Variable]):
        for n in [n for n, v in self.variables.items() if v.lifetime is Lifetime.LOCAL]:
            del self.variables[n]
        self.variables.update(stash)


class FunctionTable:
    """Registry of native and script functions keyed by qualified name."""

    def __init__(self):
        self.functions: Dict[str, Function] = {}

    def __contains__(self, name: str) -> bool:
        return name in self.functions

    def __len__(self) -> int:
        return len(self.functions)

    def define(self, name: str, parameters: Iterable[str] = (), defaults: Optional[Dict[str, Any]] = None,
               body: Union[Callable[..., Any], str] = "", namespace: Optional[str] = None) -> Function:
        qualified = qualify(name, namespace)
        if qualified in self.functions:
            raise HadesNameError(f"Cannot redefine function {{{qualified}}}")
        func = Function(qualified, tuple(parameters), dict(defaults or {}), body)
        self.functions[qualified] = func
        logger.debug("Defined %r", func)
        return func

    def register_library(self, library: NativeLibrary):
        for native in library.functions:
            self.define(native.name, native.parameters, native.defaults, native.func, namespace=library.namespace)

    def resolve(self, name: str) -> Function:
        try:
            return self.functions[name]
        except KeyError:
            raise HadesNameError(f"Call to undefined function {{{name}}}") from None


# ===================================================================
# 4. Block-State Machine
# ===================================================================

class BlockKind(Enum):
    MAIN = "main"
    IF = "if"
    WHILE = "while"
    FOR = "for"
    FOREACH = "foreach"
    FUNCTION = "function"


LOOP_KINDS = {BlockKind.WHILE, BlockKind.FOR, BlockKind.FOREACH}


@dataclass
class FunctionCapture:
    name: str
    namespace: Optional[str] = None
    register: bool = True
    parameters: List[str] = field(default_factory=list)
    defaults: Dict[str, Any] = field(default_factory=dict)
    lines: List[str] = field(default_factory=list)


@dataclass
class BlockFrame:
    kind: BlockKind
    active: bool = False
    header_line: Optional[int] = None
    iteration: int = 0
    step: int = 1
    branch_taken: bool = False
    capture: Optional[FunctionCapture] = None

    @property
    def is_loop(self) -> bool:
        return self.kind in LOOP_KINDS


class BlockStack:
    """Control-flow frames of one execute() call, indexed by nesting depth."""

    def __init__(self):
        self.frames: Dict[int, BlockFrame] = {0: BlockFrame(BlockKind.MAIN, active=True)}
        self.depth = 0
        self.capture_depth: Optional[int] = None

    @property
    def current(self) -> BlockFrame:
        return self.frames[self.depth]

    @property
    def outer_active(self) -> bool:
        """Whether the block enclosing the current depth is running."""
        return self.depth > 0 and self.frames[self.depth - 1].active

    @property
    def capturing(self) -> bool:
        return self.capture_depth is not None

    def open(self, kind: BlockKind) -> Tuple[BlockFrame, bool]:
        """Enter one level deeper; returns the frame and whether it is a loop re-visit."""
        self.depth += 1
        frame = self.frames.get(self.depth)
        if frame is not None and frame.kind is kind and frame.is_loop:
            return frame, True
        frame = self.frames[self.depth] = BlockFrame(kind)
        return frame, False

    def close(self) -> Optional[int]:
        """Leave the current level; returns the loop header line to jump back to, if any."""
        if self.depth == 0:
            raise HadesSyntaxError("Unexpected block end")
        frame = self.frames[self.depth]
        self.depth -= 1
        if frame.is_loop and frame.active:
            return frame.header_line
        del self.frames[self.depth + 1]
        return None

    def begin_capture(self, capture: FunctionCapture):
        self.current.capture = capture
        self.capture_depth = self.depth

    def capture_line(self, text: str, opens: bool, closes: bool) -> Optional[FunctionCapture]:
        """Record one line of a function body; returns the capture once its own end is reached."""
        if opens:
            self.depth += 1
        elif closes:
            if self.depth == self.capture_depth:
                frame = self.frames.pop(self.depth)
                self.depth -= 1
                self.capture_depth = None
                return frame.capture
            self.depth -= 1
        self.frames[self.capture_depth].capture.lines.append(text)
        return None


# ===================================================================
# 5. Statements
# ===================================================================

class Command(Enum):
    RETURN = "return"
    ECHO = "echo"
    EVAL = "eval"
    IMPORT = "import"
    NAMESPACE = "namespace"
    DECLARE = "declare"
    SET = "set"
    IF = "if"
    ELSEIF = "elseif"
    ELSE = "else"
    WHILE = "while"
    FOR = "for"
    FOREACH = "foreach"
    FUNCTION = "function"
    END = "end"
    CALL = "call"


KEYWORDS = {
    "return": Command.RETURN,
    "echo": Command.ECHO,
    "eval": Command.EVAL,
    "import": Command.IMPORT,
    "namespace": Command.NAMESPACE,
    "var": Command.DECLARE,
    "global": Command.DECLARE,
    "const": Command.DECLARE,
    "set": Command.SET,
    "if": Command.IF,
    "elseif": Command.ELSEIF,
    "else": Command.ELSE,
    "while": Command.WHILE,
    "for": Command.FOR,
    "foreach": Command.FOREACH,
    "function": Command.FUNCTION,
    "macro": Command.FUNCTION,
    "end": Command.END,
}

# These run even inside inactive blocks so that nesting stays balanced.
CONTROL_COMMANDS = {
    Command.IF, Command.ELSEIF, Command.ELSE, Command.WHILE,
    Command.FOR, Command.FOREACH, Command.FUNCTION, Command.END,
}
OPENING_COMMANDS = {Command.IF, Command.WHILE, Command.FOR, Command.FOREACH, Command.FUNCTION}

LIFETIMES = {"var": Lifetime.LOCAL, "global": Lifetime.GLOBAL, "const": Lifetime.CONST}

LINE_RE = re.compile(r"^([a-zA-Z_][\w:]*)(?:\s+(.+))?$", re.DOTALL)
SET_RE = re.compile(r"^\$([a-zA-Z_][\w.]*)\s*([=+\-*/])\s*(.+)$", re.DOTALL)
FOR_RE = re.compile(r"^\$([a-zA-Z_]\w*)\s*=\s*(.+?)\s+to\s+(.+)$", re.DOTALL)
STEP_RE = re.compile(r"^(.+?)\s+step\s+(.+)$", re.DOTALL)
FOREACH_RE = re.compile(r"^\$([a-zA-Z_]\w*)\s+in\s+(.+)$", re.DOTALL)
FUNCTION_RE = re.compile(r"^([a-zA-Z_]\w*)(?:\s+(.+))?$", re.DOTALL)
ASSIGN_RE = re.compile(r"^\$([a-zA-Z_]\w*)\s*(?:=\s*(.+))?$", re.DOTALL)


@dataclass
class Statement:
    command: Command
    keyword: str
    parameters: Optional[str]
    line: int


def parse_statement(text: str, line: int = 0) -> Statement:
    match = LINE_RE.match(text)
    if not match:
        raise HadesSyntaxError("Invalid command")
    keyword, parameters = match.groups()
    return Statement(KEYWORDS.get(keyword, Command.CALL), keyword, parameters, line)


def block_balance(source: str) -> int:
    """Number of blocks left open at the end of ``source`` (no execution)."""
    depth = 0
    for raw in source.split("\n"):
        match = LINE_RE.match(raw.strip())
        if not match:
            continue
        command = KEYWORDS.get(match.group(1))
        if command in OPENING_COMMANDS:
            depth += 1
        elif command is Command.END:
            depth -= 1
    return depth


@dataclass
class Return:
    value: Any = None


@dataclass
class LoopBack:
    line: int


# ===================================================================
# 6. Interpreter
# ===================================================================

@dataclass
class ExecutionContext:
    """State shared by every (nested) execution of one interpreter."""
    namespace: Optional[str] = None
    zone: Optional[str] = None
    line: int = 0
    silent: bool = False
    throw_errors: bool = True
    messages: List[Diagnostic] = field(default_factory=list)
    call_stack: List[str] = field(default_factory=list)

    def log(self, level: Level, message: str) -> Diagnostic:
        diagnostic = Diagnostic(Level(level), message, self.zone, self.line)
        self.messages.append(diagnostic)
        logger.debug("%s", diagnostic)
        return diagnostic


def _write_stdout(message: str):
    sys.stdout.write(message + "\n")


class Interpreter:
    """Executes HadesScript source text line by line."""

    def __init__(self, libraries: Iterable[Union[str, NativeLibrary]] = DEFAULT_LIBRARIES,
                 loader: Optional[Callable[[str], str]] = None,
                 silent: bool = False, throw_errors: bool = True,
                 output: Optional[Callable[[str], None]] = None):
        self.context = ExecutionContext(silent=silent, throw_errors=throw_errors)
        self.variables = VariableStore(self.context)
        self.functions = FunctionTable()
        self.evaluator = Evaluator(self)
        self.loader = loader or FileSourceLoader()
        self.output = output or _write_stdout
        self._handlers = self._create_handlers()
        for library in libraries:
            self.register_library(library)

    def _create_handlers(self) -> Dict[Command, Callable[[Statement, BlockStack], Any]]:
        return {
            Command.RETURN: self._exec_return,
            Command.ECHO: self._exec_echo,
            Command.EVAL: self._exec_eval,
            Command.IMPORT: self._exec_import,
            Command.NAMESPACE: self._exec_namespace,
            Command.DECLARE: self._exec_declare,
            Command.SET: self._exec_set,
            Command.IF: self._exec_if,
            Command.ELSEIF: self._exec_elseif,
            Command.ELSE: self._exec_else,
            Command.WHILE: self._exec_while,
            Command.FOR: self._exec_for,
            Command.FOREACH: self._exec_foreach,
            Command.FUNCTION: self._exec_function,
            Command.END: self._exec_end,
            Command.CALL: self._exec_call,
        }

    # --- Host API ---
    @property
    def messages(self) -> List[str]:
        return [str(d) for d in self.context.messages]

    @property
    def diagnostics(self) -> List[Diagnostic]:
        return self.context.messages

    @property
    def namespace(self) -> Optional[str]:
        return self.context.namespace

    def register_library(self, library: Union[str, NativeLibrary]):
        if isinstance(library, str):
            try:
                library = STANDARD_LIBRARIES[library]
            except KeyError:
                raise ValueError(f"Unknown library '{library}'") from None
        self.functions.register_library(library)

    def register_native(self, name: str, func: Callable[..., Any], parameters: Iterable[str] = (),
                        defaults: Optional[Dict[str, Any]] = None, namespace: Optional[str] = None) -> Function:
        return self.functions.define(name, parameters, defaults, func, namespace=namespace)

    def define_function(self, name: str, source: str, parameters: Iterable[str] = (),
                        defaults: Optional[Dict[str, Any]] = None, namespace: Optional[str] = None) -> Function:
        return self.functions.define(name, parameters, defaults, source, namespace=namespace)

    def declare_variable(self, name: str, value: Any = None, lifetime: Lifetime = Lifetime.LOCAL):
        self.variables.declare(name, to_value(value), lifetime)

    def get_variable(self, path: str) -> Any:
        return self.variables.get(path)

    def set_variable(self, path: str, value: Any):
        self.variables.set(path, to_value(value))

    def evaluate(self, tokens: Iterable[Token]) -> Any:
        return self.evaluator.evaluate(tokens)

    def evaluate_formula(self, formula: str) -> Any:
        """Evaluate a standalone formula, applying the host's error policy."""
        try:
            return self.evaluator.evaluate_formula(formula)
        except HadesError as e:
            return self._fail(e)

    def execute(self, code: str, zone: Optional[str] = None, protected: bool = False,
                variables: Optional[Dict[str, Any]] = None) -> Any:
        """Run ``code``; returns the value of ``return`` or ``True``.

        A protected execution hides the caller's Local variables, declares
        ``variables`` as fresh Locals (shadowing any Global or Const of the
        same name), and restores the caller's variables afterwards even if
        the run fails.
        """
        ctx = self.context
        saved = (ctx.zone, ctx.line)
        stash = self.variables.stash_locals(variables or ()) if protected else None
        try:
            if protected and variables:
                for name, value in variables.items():
                    self.variables.declare(name, value)
            return self._run(code, zone)
        except HadesError as e:
            return self._fail(e)
        finally:
            if protected:
                self.variables.restore_locals(stash)
            ctx.zone, ctx.line = saved

    def execute_file(self, identifier: str) -> Any:
        try:
            code = self.loader(identifier)
        except OSError:
            return self._fail(HadesNameError(f"Could not open script file '{identifier}'"))
        logger.debug("Importing %s", identifier)
        return self.execute(code, zone=identifier)

    def call_function(self, name: str, args: List[Any]) -> Any:
        func = self.functions.resolve(name)
        bound = self._bind_arguments(func, args)
        if func.is_native:
            return self._call_native(func, bound)
        logger.debug("Calling {%s} with %r", func.qualified_name, list(bound.values()))
        self.context.call_stack.append(func.qualified_name)
        try:
            return self.execute(func.body, zone=f"{{{func.qualified_name}}}", protected=True, variables=bound)
        finally:
            self.context.call_stack.pop()

    # --- Internals ---
    def _report(self, error: HadesError):
        if error.diagnostic is None:
            error.diagnostic = self.context.log(error.level, error.message)
            error.stacktrace = list(self.context.call_stack)

    def _fail(self, error: HadesError):
        self._report(error)
        if self.context.throw_errors:
            raise error
        return False

    def _evaluate(self, formula: str) -> Any:
        return self.evaluator.evaluate_formula(formula)

    def _bind_arguments(self, func: Function, args: List[Any]) -> Dict[str, Any]:
        bound: Dict[str, Any] = {}
        for index, param in enumerate(func.parameters):
            if index < len(args):
                bound[param] = args[index]
            elif param in func.defaults:
                bound[param] = copy_value(func.defaults[param])
            else:
                self.context.log(Level.WARNING, f"No default value for argument ${param} of {{{func.qualified_name}}}")
                bound[param] = None
        return bound

    def _call_native(self, func: Function, bound: Dict[str, Any]) -> Any:
        try:
            result = func.body(*bound.values())
        except HadesError:
            raise
        except ArithmeticError as e:
            raise HadesArithmeticError(f"{{{func.qualified_name}}}: {e}") from e
        except (TypeError, ValueError) as e:
            raise HadesTypeError(f"{{{func.qualified_name}}}: {e}") from e
        return to_value(result)

    def _run(self, code: str, zone: Optional[str]) -> Any:
        ctx = self.context
        if zone is not None:
            ctx.zone = zone
        lines = code.split("\n")
        blocks = BlockStack()
        index = 0
        while index < len(lines):
            ctx.line = index + 1
            text = lines[index].strip()
            index += 1
            if not text or text.startswith(";"):
                continue
            try:
                if blocks.capturing:
                    self._capture(blocks, text)
                    continue
                statement = parse_statement(text, ctx.line)
                if statement.command not in CONTROL_COMMANDS and not blocks.current.active:
                    continue
                flow = self._handlers[statement.command](statement, blocks)
            except HadesError as e:
                self._report(e)
                if e.level >= Level.ERROR:
                    raise
                continue
            if isinstance(flow, Return):
                return flow.value
            if isinstance(flow, LoopBack):
                index = flow.line - 1
        if blocks.depth > 0:
            raise HadesSyntaxError("Missing block end")
        return True

    def _capture(self, blocks: BlockStack, text: str):
        match = LINE_RE.match(text)
        command = KEYWORDS.get(match.group(1)) if match else None
        capture = blocks.capture_line(text, command in OPENING_COMMANDS, command is Command.END)
        if capture is not None and capture.register:
            self.functions.define(capture.name, capture.parameters, capture.defaults,
                                  "\n".join(capture.lines), namespace=capture.namespace)

    def _require(self, statement: Statement) -> str:
        if not statement.parameters:
            raise HadesSyntaxError(f"Missing parameters for '{statement.keyword}'")
        return statement.parameters

    def _parse_assign_list(self, text: str) -> List[Tuple[str, Optional[str]]]:
        entries = []
        for piece in split_top_level(text):
            match = ASSIGN_RE.match(piece)
            if not match:
                raise HadesSyntaxError("Invalid syntax in assignment list")
            entries.append((match.group(1), match.group(2)))
        return entries

    def echo(self, message: str):
        if self.context.silent:
            self.context.log(Level.NOTICE, message)
        else:
            self.output(message)

    # --- Statement handlers ---
    def _exec_return(self, statement: Statement, blocks: BlockStack):
        if statement.parameters is None:
            return Return(None)
        return Return(self._evaluate(statement.parameters))

    def _exec_echo(self, statement: Statement, blocks: BlockStack):
        self.echo(stringify(self._evaluate(self._require(statement))))

    def _exec_eval(self, statement: Statement, blocks: BlockStack):
        self.execute(stringify(self._evaluate(self._require(statement))))

    def _exec_import(self, statement: Statement, blocks: BlockStack):
        self.execute_file(stringify(self._evaluate(self._require(statement))))

    def _exec_namespace(self, statement: Statement, blocks: BlockStack):
        parameters = self._require(statement)
        if parameters == "global":
            self.context.namespace = None
        else:
            self.context.namespace = stringify(self._evaluate(parameters)) or None

    def _exec_declare(self, statement: Statement, blocks: BlockStack):
        lifetime = LIFETIMES[statement.keyword]
        for name, formula in self._parse_assign_list(self._require(statement)):
            value = self._evaluate(formula) if formula is not None else None
            try:
                self.variables.declare(name, value, lifetime)
            except HadesError as e:
                self._report(e)
                if e.level >= Level.ERROR:
                    raise

    def _exec_set(self, statement: Statement, blocks: BlockStack):
        match = SET_RE.match(self._require(statement))
        if not match:
            raise HadesSyntaxError("Invalid syntax")
        path, operator, formula = match.groups()
        self.variables.check_writable(path)
        value = self._evaluate(formula)
        if operator != "=":
            value = self._combine(operator, self.variables.get(path), value)
        self.variables.set(path, value)

    def _combine(self, operator: str, current: Any, value: Any) -> Any:
        if operator == "+" and isinstance(current, Collection) and not isinstance(value, Collection):
            result = copy_value(current)
            result.append(copy_value(value))
            return result
        if operator == "-" and isinstance(current, str) and isinstance(value, str):
            return current.replace(value, "")
        return self.evaluator.apply(operator, current, value)

    def _exec_if(self, statement: Statement, blocks: BlockStack):
        frame, _ = blocks.open(BlockKind.IF)
        condition = self._require(statement)
        if blocks.outer_active and truthy(self._evaluate(condition)):
            frame.active = frame.branch_taken = True

    def _exec_elseif(self, statement: Statement, blocks: BlockStack):
        frame = blocks.current
        if frame.kind is not BlockKind.IF:
            raise HadesSyntaxError("Unexpected elseif")
        condition = self._require(statement)
        frame.active = False
        if blocks.outer_active and not frame.branch_taken and truthy(self._evaluate(condition)):
            frame.active = frame.branch_taken = True

    def _exec_else(self, statement: Statement, blocks: BlockStack):
        frame = blocks.current
        if frame.kind is not BlockKind.IF:
            raise HadesSyntaxError("Unexpected else")
        if statement.parameters:
            raise HadesSyntaxError("Unexpected parameters after else")
        frame.active = blocks.outer_active and not frame.branch_taken
        if frame.active:
            frame.branch_taken = True

    def _exec_while(self, statement: Statement, blocks: BlockStack):
        frame, _ = blocks.open(BlockKind.WHILE)
        condition = self._require(statement)
        frame.active = False
        if blocks.outer_active and truthy(self._evaluate(condition)):
            frame.active = True
            frame.header_line = statement.line

    def _exec_for(self, statement: Statement, blocks: BlockStack):
        frame, revisit = blocks.open(BlockKind.FOR)
        match = FOR_RE.match(statement.parameters or "")
        if not match:
            raise HadesSyntaxError("Invalid syntax in for block")
        name, start_formula, rest = match.groups()
        stepped = STEP_RE.match(rest)
        end_formula, step_formula = stepped.groups() if stepped else (rest, None)
        frame.active = False
        if not blocks.outer_active:
            return
        start = to_number(self._evaluate(start_formula))
        end = to_number(self._evaluate(end_formula))
        step = to_number(self._evaluate(step_formula)) if step_formula else 1
        if step <= 0:
            raise HadesArithmeticError("Step of a for block must be positive")
        if not revisit:
            value = start
        else:
            current = to_number(self.variables.get(name))
            if end >= start:
                value = current + step
                if value > end:
                    return
            else:
                value = current - step
                if value < end:
                    return
        self.variables.set(name, value)
        frame.active = True
        frame.header_line = statement.line

    def _exec_foreach(self, statement: Statement, blocks: BlockStack):
        frame, revisit = blocks.open(BlockKind.FOREACH)
        match = FOREACH_RE.match(statement.parameters or "")
        if not match:
            raise HadesSyntaxError("Invalid variable name for foreach block")
        name, formula = match.groups()
        frame.active = False
        if not blocks.outer_active:
            return
        collection = self._evaluate(formula)
        if not isinstance(collection, Collection):
            raise HadesTypeError("Invalid argument supplied for foreach block")
        if revisit:
            frame.iteration += frame.step
        entries = collection.entries()
        if frame.iteration < len(entries):
            key, value = entries[frame.iteration]
            self.variables.set(name, Collection({"key": key, "value": value}))
            frame.active = True
            frame.header_line = statement.line

    def _exec_function(self, statement: Statement, blocks: BlockStack):
        blocks.open(BlockKind.FUNCTION)
        match = FUNCTION_RE.match(statement.parameters or "")
        if not match:
            raise HadesSyntaxError("Invalid syntax in function definition")
        name, arg_list = match.groups()
        capture = FunctionCapture(name, self.context.namespace, register=blocks.outer_active)
        blocks.begin_capture(capture)
        if not capture.register:
            return
        qualified = qualify(name, capture.namespace)
        if qualified in self.functions:
            raise HadesNameError(f"Cannot redefine function {{{qualified}}}")
        for param, formula in self._parse_assign_list(arg_list or ""):
            capture.parameters.append(param)
            if formula is not None:
                capture.defaults[param] = self._evaluate(formula)

    def _exec_end(self, statement: Statement, blocks: BlockStack):
        header = blocks.close()
        if header is not None:
            logger.debug("Loop back to line %d", header)
            return LoopBack(header)

    def _exec_call(self, statement: Statement, blocks: BlockStack):
        func = self.functions.resolve(statement.keyword)
        args = [self._evaluate(arg) for arg in split_top_level(statement.parameters or "")]
        self.call_function(func.qualified_name, args)
