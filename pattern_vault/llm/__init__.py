from .base import LLMClient, LLMError
from .ollama import OllamaClient
from .openai_client import OpenAIClient


def create_llm_client(cfg) -> LLMClient:
    """Build the completion client selected by ``cfg.LLM_PROVIDER``."""
    kwargs = dict(
        max_retries=cfg.LLM_MAX_RETRIES,
        retry_delay=cfg.LLM_RETRY_DELAY,
        timeout=cfg.LLM_TIMEOUT,
    )
    if cfg.LLM_PROVIDER == "openai":
        return OpenAIClient(base_url=cfg.OPENAI_BASE_URL, model=cfg.LLM_MODEL,
                            api_key=cfg.OPENAI_API_KEY, **kwargs)
    return OllamaClient(base_url=cfg.LLM_ENDPOINT, model=cfg.LLM_MODEL, **kwargs)


__all__ = ["LLMClient", "LLMError", "OllamaClient", "OpenAIClient",
           "create_llm_client"]
