"""
OpenAI-compatible LLM client; works with OpenAI, Groq, Together.ai,
and any other provider that implements the OpenAI chat/completions API.
"""

import logging

import requests

from .base import LLMClient

logger = logging.getLogger(__name__)


class OpenAIClient(LLMClient):

    def __init__(self, base_url: str, model: str, api_key: str, **kwargs):
        super().__init__(**kwargs)
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.api_key = api_key

    def _headers(self) -> dict:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }

    def _generate(self, prompt: str, timeout: float) -> str:
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system",
                 "content": "You are a concise assistant that describes code."},
                {"role": "user", "content": prompt},
            ],
            "temperature": 0.2,
            "stream": False,
        }
        url = f"{self.base_url}/chat/completions"
        response = requests.post(url, headers=self._headers(), json=payload,
                                 timeout=timeout)
        response.raise_for_status()
        data = response.json()

        usage = data.get("usage", {})
        logger.debug("[OpenAI] Usage: prompt=%s completion=%s",
                     usage.get("prompt_tokens"), usage.get("completion_tokens"))

        choices = data.get("choices") or []
        if not choices:
            return ""
        return choices[0].get("message", {}).get("content") or ""
