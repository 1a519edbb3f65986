"""
Data model for the pattern vault.

Memories, derived vector records, pattern clusters and failure events are
plain dataclasses.  Each record type knows how to flatten itself into the
JSON payload stored next to its vector in :mod:`pattern_vault.storage` and
how to rebuild itself from that payload.
"""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class Source(str, Enum):
    """Who wrote a memory's code."""
    HUMAN = "human"
    AI = "ai"
    AI_CANDIDATE = "ai_candidate"


class FailureKind(str, Enum):
    RUNTIME = "runtime"
    TEST = "test"
    PROCESS = "process"


class VectorType(str, Enum):
    """Which text a stored vector embeds."""
    CODE = "code"
    PATTERN_ABSTRACTION = "pattern_abstraction"
    AI_RESPONSE = "ai_response"
    PROMPT = "prompt"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def utc_now() -> str:
    """ISO-8601 UTC timestamp; lexicographic order equals time order."""
    return datetime.now(timezone.utc).isoformat()


def new_id() -> str:
    return str(uuid.uuid4())


def _known_fields(cls, data: dict) -> dict:
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in data.items() if k in names}


# ---------------------------------------------------------------------------
# Input records
# ---------------------------------------------------------------------------

@dataclass
class MemoryInput:
    """Raw content submitted to :meth:`PatternEngine.store`."""

    content: str
    file_path: str
    language: str = ""
    workspace_name: str = ""
    prompt: str = ""
    failure_log: str = ""
    source: Source = Source.HUMAN
    confidence: float = 1.0
    conversation_id: str = ""
    pasted_response: str = ""
    final_edited_code: str = ""


@dataclass
class Chunk:
    """A structural piece of a file produced by the chunker.

    Line numbers are 0-based; ``end_line`` is exclusive.
    """

    content: str
    language: str
    file_path: str
    start_line: int
    end_line: int
    project_path: str = ""


# ---------------------------------------------------------------------------
# Stored records
# ---------------------------------------------------------------------------

@dataclass
class Memory:
    """A stored code fragment (or a derived record pointing at one).

    Derived records share the same shape: ``vector_type`` is not ``code``
    and ``related_id`` holds the id of the parent memory.
    """

    id: str
    content: str
    file_path: str
    language: str = ""
    workspace_name: str = ""
    timestamp: str = field(default_factory=utc_now)
    summary: str = ""
    project_path: str = ""
    prompt: str = ""
    failure_log: str = ""
    source: str = Source.HUMAN.value
    confidence: float = 1.0
    conversation_id: str = ""
    pasted_response: str = ""
    final_edited_code: str = ""
    match_context: str = ""
    pattern_description: str = ""
    vector_type: str = VectorType.CODE.value
    related_id: str = ""
    failure_count: int = 0
    last_failure: str = ""
    is_unstable: bool = False
    is_trusted: bool = False

    @property
    def is_derived(self) -> bool:
        return bool(self.related_id)

    def to_payload(self) -> dict[str, Any]:
        payload = asdict(self)
        payload.pop("id")
        return payload

    @classmethod
    def from_payload(cls, record_id: str, payload: dict) -> "Memory":
        return cls(id=record_id, **_known_fields(cls, payload))


@dataclass
class PatternCluster:
    """A recurring pattern: members whose abstractions embed close together.

    ``usage_count`` always equals ``len(member_ids)`` and is the weight of
    the centroid in the running mean.  ``access_count`` counts lookups of
    member memories and plays no part in the centroid.
    """

    id: str
    label: str
    centroid: list[float]
    member_ids: list[str] = field(default_factory=list)
    usage_count: int = 0
    last_used: str = field(default_factory=utc_now)
    access_count: int = 0

    def to_payload(self) -> dict[str, Any]:
        return {
            "label": self.label,
            "member_ids": list(self.member_ids),
            "usage_count": self.usage_count,
            "last_used": self.last_used,
            "access_count": self.access_count,
        }

    @classmethod
    def from_payload(
        cls, record_id: str, vector: list[float], payload: dict
    ) -> "PatternCluster":
        return cls(
            id=record_id,
            label=payload.get("label", ""),
            centroid=list(vector),
            member_ids=list(payload.get("member_ids", [])),
            usage_count=int(payload.get("usage_count", 0)),
            last_used=payload.get("last_used", ""),
            access_count=int(payload.get("access_count", 0)),
        )


@dataclass
class FailureEvent:
    id: str
    kind: str
    message: str
    file_path: str
    timestamp: str = field(default_factory=utc_now)
    related_memory_id: str = ""

    def to_payload(self) -> dict[str, Any]:
        payload = asdict(self)
        payload.pop("id")
        return payload

    @classmethod
    def from_payload(cls, record_id: str, payload: dict) -> "FailureEvent":
        return cls(id=record_id, **_known_fields(cls, payload))


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass
class RiskAlert:
    """Raised when new code sits close to a memory flagged unstable."""
    memory_id: str
    failure_count: int
    message: str
    type: str = "unstable"


@dataclass
class StoreResult:
    """Outcome of ingesting one chunk."""

    memory: Memory
    similar: Optional[Memory] = None
    similar_distance: Optional[float] = None
    matched_cluster: Optional[PatternCluster] = None
    risk_alert: Optional[RiskAlert] = None

    @property
    def id(self) -> str:
        return self.memory.id


@dataclass
class MatchResult:
    """One entry returned by a similarity query."""

    id: str
    content: str
    file_path: str
    summary: str
    score: float
    timestamp: str
    prompt: str = ""
    failure_log: str = ""
    match_context: str = ""
    pasted_response: str = ""
    final_edited_code: str = ""
    conversation_id: str = ""

    @classmethod
    def from_memory(cls, memory: Memory, distance: float,
                    match_context: str = "") -> "MatchResult":
        return cls(
            id=memory.id,
            content=memory.content,
            file_path=memory.file_path,
            summary=memory.summary,
            score=distance,
            timestamp=memory.timestamp,
            prompt=memory.prompt,
            failure_log=memory.failure_log,
            match_context=match_context or memory.match_context,
            pasted_response=memory.pasted_response,
            final_edited_code=memory.final_edited_code,
            conversation_id=memory.conversation_id,
        )
