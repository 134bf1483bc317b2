from __future__ import annotations
import logging
import os
from typing import Dict, Optional

logger = logging.getLogger(__name__)


def _resolve_locator(locator: str, base_dir: Optional[str]) -> str:
    # 'file://' is optional for script identifiers
    rest = locator[7:] if locator.startswith("file://") else locator
    # Absolute filesystem path
    if rest.startswith("/"):
        return "/" + rest.lstrip("/")
    # Home directory
    if rest.startswith("~"):
        return os.path.expanduser(rest)
    # Empty → base dir or CWD
    base = base_dir or os.getcwd()
    if rest == "":
        return base
    return os.path.normpath(os.path.join(base, rest))


class FileSourceLoader:
    """Reads imported scripts from the filesystem."""

    def __init__(self, base_dir: Optional[str] = None, encoding: str = "utf-8"):
        self.base_dir = base_dir
        self.encoding = encoding

    def resolve(self, identifier: str) -> str:
        return _resolve_locator(identifier, self.base_dir)

    def __call__(self, identifier: str) -> str:
        path = self.resolve(identifier)
        if not os.path.isfile(path):
            raise FileNotFoundError(path)
        logger.debug("Loading script %s", path)
        with open(path, "r", encoding=self.encoding) as f:
            return f.read()


class MappingSourceLoader:
    """Serves script sources from an in-memory mapping."""

    def __init__(self, sources: Optional[Dict[str, str]] = None):
        self.sources = dict(sources or {})

    def __call__(self, identifier: str) -> str:
        try:
            return self.sources[identifier]
        except KeyError:
            raise FileNotFoundError(identifier) from None
