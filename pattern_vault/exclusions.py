"""
Path exclusion policy consulted once per ingestion call.
"""

from __future__ import annotations

import logging
import re
import threading
from typing import Iterable, Optional

logger = logging.getLogger(__name__)

DEFAULT_IGNORES = (
    "node_modules",
    ".git",
    ".venv",
    "dist",
    "build",
    "out",
    "target",
    ".DS_Store",
    "coverage",
    ".vscode",
    ".idea",
    "package-lock.json",
    "yarn.lock",
    "pnpm-lock.yaml",
)

_SEPARATORS = re.compile(r"[/\\]")


class ExclusionPolicy:
    """Decides which files never enter the vault.

    A path is excluded when any of its components is a default ignore, or
    when it equals (or lives under) a user-excluded path.
    """

    def __init__(self, excluded_paths: Optional[Iterable[str]] = None,
                 default_ignores: Iterable[str] = DEFAULT_IGNORES) -> None:
        self._defaults = frozenset(default_ignores)
        self._excluded: list[str] = []
        self._lock = threading.Lock()
        for path in excluded_paths or ():
            self.exclude(path)

    @property
    def excluded_paths(self) -> list[str]:
        with self._lock:
            return list(self._excluded)

    def exclude(self, file_path: str) -> None:
        path = file_path.rstrip("/\\")
        with self._lock:
            if path and path not in self._excluded:
                self._excluded.append(path)
                logger.info("[ExclusionPolicy] Excluded %s", path)

    def unexclude(self, file_path: str) -> None:
        path = file_path.rstrip("/\\")
        with self._lock:
            self._excluded = [p for p in self._excluded if p != path]

    def is_excluded(self, file_path: str) -> bool:
        parts = _SEPARATORS.split(file_path)
        if any(part in self._defaults for part in parts):
            return True
        normalized = file_path.replace("\\", "/")
        with self._lock:
            for path in self._excluded:
                prefix = path.replace("\\", "/")
                if normalized == prefix or normalized.startswith(prefix + "/"):
                    return True
        return False
