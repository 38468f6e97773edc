from __future__ import annotations

from typing import Any, Protocol, Sequence


class GenerativeProvider(Protocol):
    @property
    def supports_pdf_extraction(self) -> bool: ...

    async def complete_json(
        self,
        *,
        model: str,
        instruction: str,
        user_content: str,
    ) -> dict[str, Any]: ...

    async def embed(self, *, model: str, texts: Sequence[str]) -> list[list[float]]: ...

    async def extract_pdf_text(self, *, model: str, pdf_bytes: bytes) -> str: ...
