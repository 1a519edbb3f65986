"""
Unit tests for pattern_vault.failures.FailureCorrelator
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from pattern_vault.embeddings import EmbeddingCache
from pattern_vault.failures import FailureCorrelator, normalize_whitespace
from pattern_vault.models import FailureKind, Memory, VectorType
from pattern_vault.storage import FAILURES, MEMORIES


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _ago(minutes: float) -> str:
    return (datetime.now(timezone.utc) - timedelta(minutes=minutes)).isoformat()


def _add_memory(store, pid, vector, file_path="src/auth.py", content="def login(): pass",
                **fields):
    memory = Memory(id=pid, content=content, file_path=file_path, **fields)
    store.insert(MEMORIES, vector, memory.to_payload(), point_id=pid)
    return memory


def _correlator(store, provider, **kwargs):
    return FailureCorrelator(store, EmbeddingCache(provider), **kwargs)


def _memory(store, pid) -> Memory:
    record = store.get(MEMORIES, pid)
    return Memory.from_payload(record.id, record.payload)


# ---------------------------------------------------------------------------
# Tests: record_failure
# ---------------------------------------------------------------------------

class TestRecordFailure:
    def test_links_nearest_memory_in_same_file(self, store, provider, vec):
        _add_memory(store, "near", vec(1.0, 0.0))
        _add_memory(store, "far", vec(0.0, 1.0))
        _add_memory(store, "other-file", vec(1.0, 0.0), file_path="src/db.py")
        provider.rules.append(("KeyError", vec(1.0, 0.1)))

        event = _correlator(store, provider).record_failure(
            "runtime", "KeyError: 'user'", "src/auth.py")

        assert event.related_memory_id == "near"
        assert event.kind == "runtime"
        stored = store.get(FAILURES, event.id)
        assert stored.payload["related_memory_id"] == "near"
        assert _memory(store, "near").failure_count == 1
        assert _memory(store, "far").failure_count == 0

    def test_derived_records_are_never_blamed(self, store, provider, vec):
        _add_memory(store, "prompt", vec(1.0, 0.0),
                    vector_type=VectorType.PROMPT.value, related_id="code")
        _add_memory(store, "code", vec(0.0, 1.0))
        provider.rules.append(("boom", vec(1.0, 0.0)))

        event = _correlator(store, provider).record_failure(
            FailureKind.TEST, "boom", "src/auth.py")
        assert event.related_memory_id == "code"

    def test_no_memory_in_file_leaves_event_unlinked(self, store, provider, vec):
        _add_memory(store, "m", vec(1.0), file_path="src/other.py")
        event = _correlator(store, provider).record_failure(
            "runtime", "crash", "src/auth.py")
        assert event.related_memory_id == ""
        assert store.count(FAILURES) == 1

    def test_max_link_distance_rejects_far_memory(self, store, provider, vec):
        _add_memory(store, "m", vec(0.0, 1.0))
        provider.rules.append(("crash", vec(1.0, 0.0)))
        event = _correlator(store, provider, max_link_distance=0.5).record_failure(
            "runtime", "crash", "src/auth.py")
        assert event.related_memory_id == ""
        assert _memory(store, "m").failure_count == 0

    def test_becomes_unstable_at_threshold(self, store, provider, vec):
        _add_memory(store, "m", vec(1.0))
        correlator = _correlator(store, provider, unstable_failure_count=3)

        correlator.record_failure("runtime", "first", "src/auth.py")
        correlator.record_failure("test", "second", "src/auth.py")
        after_two = _memory(store, "m")
        assert after_two.failure_count == 2
        assert after_two.is_unstable is False

        event = correlator.record_failure("runtime", "third", "src/auth.py")
        after_three = _memory(store, "m")
        assert after_three.failure_count == 3
        assert after_three.is_unstable is True
        assert after_three.last_failure == event.timestamp

    def test_embedding_failure_still_logs_event(self, store, provider, vec):
        _add_memory(store, "m", vec(1.0))
        provider.fail = True
        event = _correlator(store, provider).record_failure(
            "process", "lint failed", "src/auth.py")
        assert event.related_memory_id == ""
        assert store.get(FAILURES, event.id).payload["message"] == "lint failed"
        assert _memory(store, "m").failure_count == 0

    def test_message_truncated_for_embedding(self, store, provider):
        correlator = _correlator(store, provider, message_chars=10)
        correlator.record_failure("runtime", "x" * 50, "a.py")
        assert provider.calls == ["x" * 10]

    def test_unknown_kind_is_ignored(self, store, provider, vec):
        _add_memory(store, "m", vec(1.0))
        event = _correlator(store, provider).record_failure(
            "segfault", "core dumped", "src/auth.py")
        assert event is None
        assert store.count(FAILURES) == 0
        assert _memory(store, "m").failure_count == 0
        assert provider.calls == []


class TestSimilarFailures:
    def test_returns_nearest_events(self, store, provider, vec):
        provider.rules.extend([
            ("Timeout", vec(1.0, 0.0)),
            ("Syntax", vec(0.0, 1.0)),
        ])
        correlator = _correlator(store, provider, similar_k=1)
        correlator.record_failure("runtime", "Syntax error on line 3", "a.py")
        correlator.record_failure("runtime", "Timeout talking to db", "a.py")

        [event] = correlator.find_similar_failures("Timeout again")
        assert event.message == "Timeout talking to db"

    def test_provider_down_returns_empty(self, store, provider):
        correlator = _correlator(store, provider)
        correlator.record_failure("runtime", "crash", "a.py")
        provider.fail = True
        assert correlator.find_similar_failures("something new") == []

    def test_failures_for_memory(self, store, provider, vec):
        _add_memory(store, "m", vec(1.0))
        correlator = _correlator(store, provider)
        correlator.record_failure("runtime", "one", "src/auth.py")
        correlator.record_failure("runtime", "two", "src/auth.py")
        assert [e.message for e in correlator.failures_for_memory("m")] == ["one", "two"]


# ---------------------------------------------------------------------------
# Tests: churn
# ---------------------------------------------------------------------------

class TestChurn:
    def test_vanished_recent_memory_records_process_failure(self, store, provider, vec):
        _add_memory(store, "m", vec(1.0), content="def login(user):\n    return True",
                    timestamp=_ago(2))
        events = _correlator(store, provider).check_for_churn(
            "src/auth.py", "def logout():\n    pass")

        assert len(events) == 1
        assert events[0].kind == FailureKind.PROCESS.value
        assert "Silent churn" in events[0].message
        assert "m" in events[0].message
        assert events[0].related_memory_id == "m"
        assert store.count(FAILURES) == 1

    def test_surviving_code_ignores_whitespace(self, store, provider, vec):
        _add_memory(store, "m", vec(1.0), content="def login(user):\n    return True",
                    timestamp=_ago(2))
        events = _correlator(store, provider).check_for_churn(
            "src/auth.py", "import os\n\ndef   login(user):\n\treturn True\n")
        assert events == []

    def test_old_memories_are_not_checked(self, store, provider, vec):
        _add_memory(store, "m", vec(1.0), timestamp=_ago(30))
        assert _correlator(store, provider).check_for_churn("src/auth.py", "") == []

    def test_window_is_configurable(self, store, provider, vec):
        _add_memory(store, "m", vec(1.0), timestamp=_ago(30))
        correlator = _correlator(store, provider, churn_window_minutes=60)
        assert len(correlator.check_for_churn("src/auth.py", "")) == 1

    def test_derived_records_never_churn(self, store, provider, vec):
        _add_memory(store, "d", vec(1.0), content="an ai response",
                    vector_type=VectorType.AI_RESPONSE.value, related_id="x",
                    timestamp=_ago(1))
        assert _correlator(store, provider).check_for_churn("src/auth.py", "") == []

    def test_other_files_untouched(self, store, provider, vec):
        _add_memory(store, "m", vec(1.0), file_path="src/db.py", timestamp=_ago(1))
        assert _correlator(store, provider).check_for_churn("src/auth.py", "") == []


def test_normalize_whitespace():
    assert normalize_whitespace("  a\n\tb   c ") == "a b c"
