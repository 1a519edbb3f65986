import logging
import random
import time
from abc import ABC, abstractmethod
from typing import Optional

logger = logging.getLogger(__name__)


class LLMError(Exception):
    """Raised when all LLM retries are exhausted."""


class LLMClient(ABC):

    def __init__(self, max_retries: int = 1, retry_delay: float = 0.5,
                 timeout: float = 2.0):
        self.max_retries = max(1, max_retries)
        self.retry_delay = retry_delay
        self.timeout = timeout

    # ── Public entry point ──

    def generate_response(self, prompt: str,
                          timeout: Optional[float] = None) -> str:
        """Generate a completion with retry and jittered exponential backoff.

        *timeout* overrides the client's default per-request timeout in
        seconds.  Raises :class:`LLMError` after all retries are exhausted
        or when every attempt returned an empty response.
        """
        last_error: Exception | None = None
        request_timeout = timeout if timeout is not None else self.timeout

        for attempt in range(1, self.max_retries + 1):
            try:
                result = self._generate(prompt, request_timeout)
                if result and result.strip():
                    return result.strip()
                logger.debug("[LLM] Empty response on attempt %d/%d",
                             attempt, self.max_retries)
                last_error = None
            except Exception as e:
                last_error = e
                logger.debug("[LLM] Error on attempt %d/%d: %s",
                             attempt, self.max_retries, e)

            if attempt < self.max_retries:
                wait = self.retry_delay * (2 ** (attempt - 1))
                if last_error is not None and "429" in str(last_error):
                    wait *= 2
                jitter = wait * 0.1 * random.random()
                time.sleep(wait + jitter)

        if last_error is None:
            raise LLMError("LLM returned empty response after all retries")
        raise LLMError(
            f"LLM failed after {self.max_retries} retries: {last_error}")

    # ── Subclass hooks ──

    @abstractmethod
    def _generate(self, prompt: str, timeout: float) -> str:
        """Non-streaming generation bounded by *timeout* seconds."""
