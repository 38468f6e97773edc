from __future__ import annotations

import pytest

from kbembed.apps.api.deps import reset_dependency_caches
from kbembed.core.config import get_settings
from kbembed.providers.llm.factory import reset_generative_provider
from kbembed.services.rate_limit import reset_rate_limiter_state


@pytest.fixture(autouse=True)
def _reset_process_state() -> None:
    # Clear cached settings and singletons so env overrides never leak across tests.
    get_settings.cache_clear()
    reset_rate_limiter_state()
    reset_generative_provider()
    reset_dependency_caches()
    yield
    get_settings.cache_clear()
    reset_rate_limiter_state()
    reset_generative_provider()
    reset_dependency_caches()
