import logging

import requests

from .base import LLMClient

logger = logging.getLogger(__name__)


class OllamaClient(LLMClient):

    def __init__(self, base_url: str, model: str, **kwargs):
        super().__init__(**kwargs)
        # Accept either the server root or a full /api/... URL
        if "/api/" in base_url:
            self._api_root = base_url.rsplit("/api/", 1)[0]
        else:
            self._api_root = base_url.rstrip("/")
        self.model = model

    @property
    def generate_url(self) -> str:
        return f"{self._api_root}/api/generate"

    def _generate(self, prompt: str, timeout: float) -> str:
        est_tokens = int(len(prompt.split()) * 1.3)
        logger.debug("[Ollama] Sending ~%d est. tokens", est_tokens)

        payload = {
            "model": self.model,
            "prompt": prompt,
            "stream": False,
        }
        response = requests.post(self.generate_url, json=payload,
                                 timeout=timeout)
        response.raise_for_status()
        data = response.json()
        result = data.get("response", "")
        logger.debug("[Ollama] Usage: prompt=%s completion=%s",
                     data.get("prompt_eval_count"), data.get("eval_count"))
        return result
