import logging

from hadesscript.hades_datatypes import (
    Collection, Diagnostic, Level, Lifetime,
    HadesError, HadesSyntaxError, HadesNameError, HadesTypeError,
    HadesArithmeticError, HadesScopeError,
)
from hadesscript.hades_tokenizer import Token, tokenize
from hadesscript.hades_interpreter import Interpreter
from hadesscript.hades_stdlib import NativeLibrary, STANDARD_LIBRARIES
from hadesscript.hades_file import FileSourceLoader, MappingSourceLoader
from hadesscript.hades_printer import Printer
from hadesscript.hades_config import InterpreterOptions, load_options
from hadesscript.hades_runtime import ScriptRunner, ExecutionResult, create_interpreter

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    "Collection", "Diagnostic", "Level", "Lifetime",
    "HadesError", "HadesSyntaxError", "HadesNameError", "HadesTypeError",
    "HadesArithmeticError", "HadesScopeError",
    "Token", "tokenize", "Interpreter", "NativeLibrary", "STANDARD_LIBRARIES",
    "FileSourceLoader", "MappingSourceLoader", "Printer",
    "InterpreterOptions", "load_options",
    "ScriptRunner", "ExecutionResult", "create_interpreter",
]
