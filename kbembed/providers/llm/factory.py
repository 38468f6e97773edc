from __future__ import annotations

from kbembed.core.config import Settings, get_settings
from kbembed.providers.llm.base import GenerativeProvider
from kbembed.providers.llm.fake import FakeGenerativeProvider
from kbembed.providers.llm.openai_responses import OpenAIResponsesProvider


_openai_provider: OpenAIResponsesProvider | None = None


def get_generative_provider(settings: Settings | None = None) -> GenerativeProvider:
    global _openai_provider
    settings = settings or get_settings()
    provider = (settings.llm_provider or "openai").lower()

    if provider == "fake":
        return FakeGenerativeProvider()
    # Share one provider so its httpx client pools connections across requests.
    if _openai_provider is None:
        _openai_provider = OpenAIResponsesProvider(settings)
    return _openai_provider


def reset_generative_provider() -> None:
    global _openai_provider
    _openai_provider = None
