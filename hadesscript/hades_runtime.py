"""
Host-facing runtime: builds interpreters from options and runs scripts,
returning structured results instead of raising.
"""
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Literal, Optional

from hadesscript.hades_config import InterpreterOptions
from hadesscript.hades_datatypes import HadesError
from hadesscript.hades_file import FileSourceLoader
from hadesscript.hades_interpreter import Interpreter

logger = logging.getLogger(__name__)


def create_interpreter(options: Optional[InterpreterOptions] = None,
                       loader: Optional[Callable[[str], str]] = None,
                       output: Optional[Callable[[str], None]] = None,
                       libraries: Optional[Iterable[Any]] = None) -> Interpreter:
    options = options or InterpreterOptions()
    return Interpreter(
        libraries=options.libraries if libraries is None else libraries,
        loader=loader or FileSourceLoader(options.source_dir),
        silent=options.silent,
        throw_errors=options.throw_errors,
        output=output,
    )


def _source_context(source: str, line: Optional[int], radius: int = 2) -> str:
    lines = source.splitlines()
    if not line or line < 1 or line > len(lines):
        return ""
    start = max(1, line - radius)
    end = min(len(lines), line + radius)
    width = len(str(end))
    out = []
    for i in range(start, end + 1):
        prefix = ">" if i == line else " "
        out.append(f"{prefix} {str(i).rjust(width)} | {lines[i - 1]}")
    return "\n".join(out)


@dataclass
class ExecutionResult:
    """The structured result of a script execution."""
    status: Literal['success', 'error']
    value: Any = None
    error_message: Optional[str] = None
    error_kind: Optional[str] = None
    error_line: Optional[int] = None
    error_zone: Optional[str] = None
    messages: List[str] = field(default_factory=list)
    side_effects: List[Dict] = field(default_factory=list)
    stacktrace: List[str] = field(default_factory=list)
    source_excerpt: str = ""

    def format_error(self) -> str:
        """Formats the error with its location, an excerpt and the active functions."""
        if self.status != 'error':
            return ""
        msg = str(self.error_message or "Unknown error")
        if self.error_kind:
            msg = f"{self.error_kind}: {msg}"
        if self.error_line:
            where = f" in {self.error_zone}" if self.error_zone else ""
            msg = f"Error on line {self.error_line}{where}: {msg}"
        if self.source_excerpt:
            msg += "\n" + self.source_excerpt
        if self.stacktrace:
            msg += "\nHadesScript stacktrace: " + " ".join(f"{{{name}}}" for name in self.stacktrace)
        return msg


class ScriptRunner:
    """Executes HadesScript source on behalf of a host."""

    def __init__(self, options: Optional[InterpreterOptions] = None,
                 loader: Optional[Callable[[str], str]] = None,
                 libraries: Optional[Iterable[Any]] = None):
        self.options = options or InterpreterOptions()
        self.side_effects: List[Dict] = []
        self.interpreter = create_interpreter(self.options, loader=loader,
                                              output=self._record_output, libraries=libraries)
        # The runner turns failures into results, so it always needs the exception.
        self.interpreter.context.throw_errors = True

    def _record_output(self, message: str):
        self.side_effects.append({'topics': ['stdout'], 'message': message})

    def handle_script(self, source_code: str, zone: str = 'main') -> ExecutionResult:
        """The main entry point to execute a script."""
        self.side_effects.clear()
        self.interpreter.context.call_stack.clear()
        first_message = len(self.interpreter.diagnostics)
        try:
            value = self.interpreter.execute(source_code, zone=zone)
        except HadesError as e:
            logger.debug("Script failed: %s", e)
            diagnostic = e.diagnostic
            line = diagnostic.line if diagnostic else None
            error_zone = diagnostic.zone if diagnostic else zone
            return ExecutionResult(
                status='error',
                error_message=e.message,
                error_kind=e.kind,
                error_line=line,
                error_zone=error_zone,
                messages=self._messages_since(first_message),
                side_effects=list(self.side_effects),
                stacktrace=list(e.stacktrace),
                source_excerpt=_source_context(source_code, line) if error_zone == zone else "",
            )
        return ExecutionResult(
            status='success',
            value=value,
            messages=self._messages_since(first_message),
            side_effects=list(self.side_effects),
        )

    def _messages_since(self, index: int) -> List[str]:
        return [str(d) for d in self.interpreter.diagnostics[index:]]

    def run_file(self, path: str) -> ExecutionResult:
        with open(path, "r", encoding="utf-8") as f:
            source = f.read()
        loader = self.interpreter.loader
        # Imports inside the file resolve next to it unless a source dir was configured
        if isinstance(loader, FileSourceLoader) and loader.base_dir is None:
            loader.base_dir = os.path.dirname(os.path.abspath(path))
        return self.handle_script(source, zone=path)
