"""
Best-effort LLM helpers used during ingestion.

Every call is bounded by a hard timeout and returns ``None`` when the
model is unavailable, times out, or answers with nothing.  Callers treat
``None`` as "no description" and carry on.
"""

from __future__ import annotations

import logging
from typing import Optional

from .llm.base import LLMClient, LLMError

logger = logging.getLogger(__name__)

_MAX_CODE_CHARS = 1000
_MAX_INTENT_CHARS = 1500

_SUMMARY_PROMPT = (
    "Summarize this code in one or two sentences. Focus on what it does and "
    "the problem it solves. Do not explain the syntax.\n"
    "Code:\n{code}\nSummary:"
)

_ABSTRACT_PROMPT = (
    "Summarize the core problem this code solves in one sentence. Do not "
    "mention variable names or specific implementation details. Response "
    "must be a single sentence:\n{code}"
)

_INTENT_PROMPT = (
    "Analyze this code and infer the likely prompt or question that "
    "generated it.\nReturn ONLY the inferred prompt.\n\n"
    "Code:\n{code}\n\nLikely User Prompt:"
)


class PatternAssistant:
    """Summaries, pattern abstractions and intent inference over an LLM."""

    def __init__(self, llm_client: Optional[LLMClient],
                 timeout: float = 2.0, intent_timeout: float = 5.0) -> None:
        self._llm = llm_client
        self._timeout = timeout
        self._intent_timeout = intent_timeout

    def _complete(self, prompt: str, timeout: float) -> Optional[str]:
        if self._llm is None:
            return None
        try:
            text = self._llm.generate_response(prompt, timeout=timeout)
        except LLMError as exc:
            logger.debug("[PatternAssistant] LLM unavailable: %s", exc)
            return None
        return text.strip() or None

    def summarize(self, code: str) -> Optional[str]:
        return self._complete(
            _SUMMARY_PROMPT.format(code=code[:_MAX_CODE_CHARS]), self._timeout)

    def abstract_pattern(self, code: str) -> Optional[str]:
        """One-sentence, implementation-free description of what *code* solves."""
        return self._complete(
            _ABSTRACT_PROMPT.format(code=code[:_MAX_CODE_CHARS]), self._timeout)

    def infer_intent(self, code: str) -> Optional[str]:
        text = self._complete(
            _INTENT_PROMPT.format(code=code[:_MAX_INTENT_CHARS]),
            self._intent_timeout)
        if text is None:
            return None
        return text.strip("\"'").strip() or None
