"""
pattern_vault: local semantic memory for code.

Public API for library usage::

    from pattern_vault import PatternEngine, MemoryInput

    engine = PatternEngine.from_config()
    engine.store(MemoryInput(content=source, file_path="src/auth.py"))
    matches = engine.query("validate a JWT and load the user")
"""

from .config import Config
from .engine import PatternEngine
from .models import (
    FailureEvent, FailureKind, MatchResult, Memory, MemoryInput,
    PatternCluster, RiskAlert, Source, StoreResult, VectorType,
)

__all__ = [
    "Config",
    "PatternEngine",
    "FailureEvent",
    "FailureKind",
    "MatchResult",
    "Memory",
    "MemoryInput",
    "PatternCluster",
    "RiskAlert",
    "Source",
    "StoreResult",
    "VectorType",
]
