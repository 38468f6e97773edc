from __future__ import annotations

import pytest

from kbembed.core.errors import IngestionError, ProviderRequestError
from kbembed.domain.records import ProjectRecord, SourceRecord
from kbembed.ingestion.extraction import (
    GUARDRAIL_OCR_PAGES,
    GUARDRAIL_PDF_FALLBACKS,
    STRATEGY_DRIVE_EXPORT,
    STRATEGY_PDF_BASELINE,
    STRATEGY_PDF_FALLBACK,
    STRATEGY_PDF_OCR_CAP,
    FallbackBudget,
    SourceExtractor,
    estimate_pdf_pages,
    extract_printable_text,
)
from kbembed.tests.utils.google import FakeDrive, pdf_bytes
from kbembed.tests.utils.providers import ScriptedProvider
from kbembed.tests.utils.settings import make_settings


PROJECT = ProjectRecord(id="p-1", handle="acme", owner_account_id="owner-1", max_ocr_pages_per_sync=5)
LONG_TEXT = "Refunds are issued within thirty days of purchase for all plans."


def _source(source_type: str, file_id: str = "f-1") -> SourceRecord:
    return SourceRecord(id="s-1", project_id="p-1", source_type=source_type, drive_file_id=file_id, title="Doc")


def _extractor(drive: FakeDrive, provider: ScriptedProvider | None = None, **settings) -> SourceExtractor:
    values = {"pdf_low_text_min_chars": 40}
    values.update(settings)
    return SourceExtractor(drive, provider or ScriptedProvider(), make_settings(**values))


async def _extract(extractor: SourceExtractor, source: SourceRecord, budget: FallbackBudget | None = None):
    return await extractor.extract(
        access_token="at",
        source=source,
        project=PROJECT,
        budget=budget or FallbackBudget(limit=2),
    )


def test_printable_runs_and_page_estimate() -> None:
    data = pdf_bytes(LONG_TEXT, pages=3)
    assert extract_printable_text(data) == LONG_TEXT
    assert estimate_pdf_pages(data) == 3
    assert estimate_pdf_pages(b"no markers") == 1


@pytest.mark.asyncio
async def test_docs_use_text_export() -> None:
    drive = FakeDrive(texts={"f-1": "Heading  \r\n\r\n\r\nBody"})
    result = await _extract(_extractor(drive), _source("gdoc"))
    assert result.text == "Heading\n\nBody"
    assert result.strategy == STRATEGY_DRIVE_EXPORT


@pytest.mark.asyncio
async def test_slides_fall_back_to_pdf_scan_when_text_export_is_empty() -> None:
    drive = FakeDrive(texts={"f-1": "   "}, pdfs={"f-1": pdf_bytes(LONG_TEXT)})
    result = await _extract(_extractor(drive), _source("gslides"))
    assert result.text == LONG_TEXT
    assert ("export_pdf", "f-1") in drive.calls


@pytest.mark.asyncio
async def test_pdf_with_enough_text_keeps_baseline() -> None:
    provider = ScriptedProvider(supports_pdf=True, pdf_text="unused")
    drive = FakeDrive(pdfs={"f-1": pdf_bytes(LONG_TEXT)})
    result = await _extract(_extractor(drive, provider), _source("gpdf"))
    assert result.strategy == STRATEGY_PDF_BASELINE
    assert result.text == LONG_TEXT
    assert "pdf" not in provider.stages()


@pytest.mark.asyncio
async def test_low_text_pdf_over_page_cap_skips_fallback() -> None:
    provider = ScriptedProvider(supports_pdf=True, pdf_text="x" * 500)
    drive = FakeDrive(pdfs={"f-1": pdf_bytes(pages=9)})
    result = await _extract(_extractor(drive, provider), _source("gpdf"))
    assert result.strategy == STRATEGY_PDF_OCR_CAP
    assert [hit.guardrail for hit in result.guardrails] == [GUARDRAIL_OCR_PAGES]
    assert result.guardrails[0].details["estimated_pdf_pages"] == 9
    assert "pdf" not in provider.stages()


@pytest.mark.asyncio
async def test_low_text_pdf_uses_fallback_and_consumes_budget() -> None:
    provider = ScriptedProvider(supports_pdf=True, pdf_text="Scanned page text recovered by the model.")
    drive = FakeDrive(pdfs={"f-1": pdf_bytes(pages=2)})
    budget = FallbackBudget(limit=1)
    result = await _extract(_extractor(drive, provider), _source("gpdf"), budget)
    assert result.strategy == STRATEGY_PDF_FALLBACK
    assert result.text == "Scanned page text recovered by the model."
    assert budget.used == 1
    assert budget.exhausted


@pytest.mark.asyncio
async def test_failed_fallback_call_leaves_budget_unspent() -> None:
    provider = ScriptedProvider(supports_pdf=True, pdf_text=ProviderRequestError("PDF extraction failed (502)."))
    drive = FakeDrive(pdfs={"f-1": pdf_bytes(pages=2)})
    budget = FallbackBudget(limit=1)
    with pytest.raises(ProviderRequestError):
        await _extract(_extractor(drive, provider), _source("gpdf"), budget)
    assert budget.used == 0
    assert not budget.exhausted


@pytest.mark.asyncio
async def test_exhausted_budget_records_guardrail() -> None:
    provider = ScriptedProvider(supports_pdf=True, pdf_text="never used")
    drive = FakeDrive(pdfs={"f-1": pdf_bytes(pages=2)})
    result = await _extract(_extractor(drive, provider), _source("gpdf"), FallbackBudget(limit=1, used=1))
    assert result.strategy == STRATEGY_PDF_BASELINE
    assert [hit.guardrail for hit in result.guardrails] == [GUARDRAIL_PDF_FALLBACKS]
    assert "pdf" not in provider.stages()


@pytest.mark.asyncio
async def test_fallback_disabled_keeps_baseline() -> None:
    provider = ScriptedProvider(supports_pdf=True, pdf_text="text")
    drive = FakeDrive(pdfs={"f-1": pdf_bytes(pages=2)})
    result = await _extract(_extractor(drive, provider, pdf_fallback_enabled=False), _source("gpdf"))
    assert result.strategy == STRATEGY_PDF_BASELINE
    assert result.guardrails == []


@pytest.mark.asyncio
async def test_oversized_pdf_is_rejected() -> None:
    drive = FakeDrive(pdfs={"f-1": pdf_bytes(LONG_TEXT)})
    with pytest.raises(IngestionError, match="max size"):
        await _extract(_extractor(drive, pdf_max_bytes_per_file=10), _source("gpdf"))


@pytest.mark.asyncio
async def test_unknown_source_type_is_rejected() -> None:
    with pytest.raises(IngestionError):
        await _extract(_extractor(FakeDrive()), _source("sheet"))
