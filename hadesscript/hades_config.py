"""
Interpreter options, loadable from a YAML file.
"""
import os
from dataclasses import dataclass, field, fields
from typing import Any, List, Mapping, Optional

import yaml

CONFIG_ENV_VAR = "HADES_CONFIG"


def _default_libraries() -> List[str]:
    return ["math", "string", "array"]


@dataclass
class InterpreterOptions:
    silent: bool = False
    throw_errors: bool = True
    libraries: List[str] = field(default_factory=_default_libraries)
    source_dir: Optional[str] = None
    debug: bool = False

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> 'InterpreterOptions':
        data = dict(data or {})
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown interpreter option(s): {', '.join(unknown)}")
        if "libraries" in data:
            libraries = data["libraries"]
            if isinstance(libraries, str) or not isinstance(libraries, (list, tuple)):
                raise ValueError("'libraries' must be a list of library names")
            data["libraries"] = [str(name) for name in libraries]
        return cls(**data)

    @classmethod
    def from_file(cls, path: str) -> 'InterpreterOptions':
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
        if data is not None and not isinstance(data, Mapping):
            raise ValueError(f"Config file {path} must contain a mapping")
        options = cls.from_mapping(data)
        # Relative source dirs are taken from the config file's location
        if options.source_dir and not os.path.isabs(options.source_dir):
            base = os.path.dirname(os.path.abspath(path))
            options.source_dir = os.path.normpath(os.path.join(base, options.source_dir))
        return options


def load_options(path: Optional[str] = None) -> InterpreterOptions:
    """Options from ``path``, else from $HADES_CONFIG, else the defaults."""
    path = path or os.environ.get(CONFIG_ENV_VAR)
    if path:
        return InterpreterOptions.from_file(path)
    return InterpreterOptions()
