from __future__ import annotations

from infergate.core.config import Settings, get_settings
from infergate.core.errors import ProviderConfigError
from infergate.providers.llm.base import LLMProvider
from infergate.providers.llm.fake import FakeLLMProvider
from infergate.providers.llm.openai_chat import OpenAIChatProvider


def get_llm_provider(settings: Settings | None = None) -> LLMProvider:
    settings = settings or get_settings()
    provider = (settings.llm_provider or "openai").lower()

    if provider == "fake":
        return FakeLLMProvider()
    if provider == "openai":
        return OpenAIChatProvider(
            api_key=settings.openai_api_key,
            base_url=settings.openai_base_url,
            timeout_s=settings.openai_timeout_s,
            stream_usage=settings.openai_stream_usage,
        )
    raise ProviderConfigError(f"Unknown LLM provider: {settings.llm_provider}")
