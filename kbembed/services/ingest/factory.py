from __future__ import annotations

from kbembed.core.config import Settings, get_settings
from kbembed.ingestion.extraction import SourceExtractor
from kbembed.persistence.store import KnowledgeStore
from kbembed.providers.google.drive import GoogleDriveClient
from kbembed.providers.google.oauth import GoogleOAuthClient
from kbembed.providers.llm.factory import get_generative_provider
from kbembed.services.audit import AuditLogger, RequestContext
from kbembed.services.crypto.keyring import Keyring
from kbembed.services.ingest.runner import IngestRunner


def build_ingest_runner(
    store: KnowledgeStore,
    *,
    settings: Settings | None = None,
    keyring: Keyring | None = None,
    context: RequestContext | None = None,
    function_name: str = "ingest_runner",
) -> IngestRunner:
    # Wire a runner for entrypoints that live outside the API dependency graph.
    settings = settings or get_settings()
    provider = get_generative_provider(settings)
    return IngestRunner(
        store,
        keyring or Keyring.from_settings(settings),
        GoogleOAuthClient(settings),
        SourceExtractor(GoogleDriveClient(settings), provider, settings),
        provider,
        AuditLogger(store, function_name=function_name, context=context, settings=settings),
        settings,
    )
