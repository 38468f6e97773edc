from __future__ import annotations

from dataclasses import dataclass, field
import logging
import re
from typing import Any

from kbembed.core.config import Settings
from kbembed.core.errors import IngestionError
from kbembed.domain.records import ProjectRecord, SourceRecord
from kbembed.providers.google.drive import MIME_TEXT, GoogleDriveClient
from kbembed.providers.llm.base import GenerativeProvider
from kbembed.services.text import sanitize_text


logger = logging.getLogger(__name__)

SOURCE_GDOC = "gdoc"
SOURCE_GSLIDES = "gslides"
SOURCE_GPDF = "gpdf"

STRATEGY_DRIVE_EXPORT = "drive_export_text"
STRATEGY_PDF_BASELINE = "pdf_baseline"
STRATEGY_PDF_FALLBACK = "pdf_openai_fallback"
STRATEGY_PDF_OCR_CAP = "pdf_baseline_ocr_cap_enforced"

GUARDRAIL_OCR_PAGES = "max_ocr_pages_per_sync"
GUARDRAIL_PDF_FALLBACKS = "max_pdf_fallbacks_per_run"

MIN_PRINTABLE_RUN = 24

_WHITESPACE_RE = re.compile(r"\s+")
_PAGE_MARKER_RE = re.compile(rb"/Type\s*/Page\b")


def _is_printable(byte: int) -> bool:
    return 32 <= byte <= 126 or byte in (9, 10, 13)


def extract_printable_text(data: bytes) -> str:
    # Baseline PDF text: runs of printable ASCII long enough to be prose.
    runs: list[str] = []
    current = bytearray()

    def flush() -> None:
        normalized = _WHITESPACE_RE.sub(" ", current.decode("ascii")).strip()
        if len(normalized) >= MIN_PRINTABLE_RUN:
            runs.append(normalized)
        current.clear()

    for byte in data:
        if _is_printable(byte):
            current.append(byte)
        else:
            flush()
    flush()
    return sanitize_text("\n".join(runs))


def estimate_pdf_pages(data: bytes) -> int:
    return max(1, len(_PAGE_MARKER_RE.findall(data)))


def is_low_text(text: str, min_chars: int) -> bool:
    return len(_WHITESPACE_RE.sub("", text)) < min_chars


@dataclass
class FallbackBudget:
    # Shared by every job in one runner invocation.
    limit: int
    used: int = 0

    @property
    def exhausted(self) -> bool:
        return self.used >= self.limit


@dataclass(frozen=True)
class GuardrailHit:
    guardrail: str
    details: dict[str, Any]


@dataclass
class ExtractionResult:
    text: str
    strategy: str
    guardrails: list[GuardrailHit] = field(default_factory=list)


class SourceExtractor:
    def __init__(
        self,
        drive: GoogleDriveClient,
        provider: GenerativeProvider,
        settings: Settings,
    ) -> None:
        self._drive = drive
        self._provider = provider
        self._settings = settings

    async def extract(
        self,
        *,
        access_token: str,
        source: SourceRecord,
        project: ProjectRecord,
        budget: FallbackBudget,
    ) -> ExtractionResult:
        if source.source_type == SOURCE_GDOC:
            text = await self._drive.export_text(access_token, source.drive_file_id)
            return ExtractionResult(sanitize_text(text), STRATEGY_DRIVE_EXPORT)
        if source.source_type == SOURCE_GSLIDES:
            return ExtractionResult(await self._slides_text(access_token, source), STRATEGY_DRIVE_EXPORT)
        if source.source_type == SOURCE_GPDF:
            return await self._pdf_text(access_token, source, project, budget)
        raise IngestionError(f"Unsupported source type: {source.source_type}")

    async def _slides_text(self, access_token: str, source: SourceRecord) -> str:
        response = await self._drive.export(access_token, source.drive_file_id, MIME_TEXT)
        if response.status_code < 400:
            text = sanitize_text(response.text)
            if text:
                return text
        # Image-only decks export empty text; scan the PDF rendition instead.
        pdf_bytes = await self._drive.export_pdf(access_token, source.drive_file_id)
        return extract_printable_text(pdf_bytes)

    def _fallback_available(self) -> bool:
        return self._settings.pdf_fallback_enabled and self._provider.supports_pdf_extraction

    async def _pdf_text(
        self,
        access_token: str,
        source: SourceRecord,
        project: ProjectRecord,
        budget: FallbackBudget,
    ) -> ExtractionResult:
        settings = self._settings
        pdf_bytes = await self._drive.download(access_token, source.drive_file_id)
        if len(pdf_bytes) > settings.pdf_max_bytes_per_file:
            raise IngestionError("PDF exceeds configured max size for ingestion.")

        result = ExtractionResult(extract_printable_text(pdf_bytes), STRATEGY_PDF_BASELINE)
        if not is_low_text(result.text, settings.pdf_low_text_min_chars):
            return result

        estimated_pages = estimate_pdf_pages(pdf_bytes)
        if estimated_pages > project.max_ocr_pages_per_sync:
            result.strategy = STRATEGY_PDF_OCR_CAP
            result.guardrails.append(
                GuardrailHit(
                    GUARDRAIL_OCR_PAGES,
                    {
                        "max_ocr_pages_per_sync": project.max_ocr_pages_per_sync,
                        "estimated_pdf_pages": estimated_pages,
                        "source_id": source.id,
                    },
                )
            )
            return result
        if not self._fallback_available():
            return result
        if budget.exhausted:
            result.guardrails.append(
                GuardrailHit(
                    GUARDRAIL_PDF_FALLBACKS,
                    {
                        "max_pdf_fallbacks_per_run": budget.limit,
                        "pdf_fallbacks_used": budget.used,
                        "source_id": source.id,
                    },
                )
            )
            return result

        fallback_text = sanitize_text(
            await self._provider.extract_pdf_text(model=settings.openai_pdf_extraction_model, pdf_bytes=pdf_bytes)
        )
        budget.used += 1
        logger.info(
            "pdf_fallback_used source_id=%s baseline_chars=%s fallback_chars=%s",
            source.id,
            len(result.text),
            len(fallback_text),
        )
        if len(fallback_text) > len(result.text):
            result.text = fallback_text
            result.strategy = STRATEGY_PDF_FALLBACK
        return result
