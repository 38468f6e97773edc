from __future__ import annotations

import re
from typing import Any, Sequence

from kbembed.ingestion.embeddings import hash_embedding


_CHUNK_ID_RE = re.compile(r"\[chunk_id=(\d+);")


class FakeGenerativeProvider:
    def __init__(self, answer: str = "This is a fake grounded answer.") -> None:
        # Deterministic responses keep local runs stable without external calls.
        self._answer = answer

    @property
    def supports_pdf_extraction(self) -> bool:
        return False

    async def complete_json(
        self,
        *,
        model: str,
        instruction: str,
        user_content: str,
    ) -> dict[str, Any]:
        _ = model
        if instruction.startswith("You are an input safety validator"):
            return {"allowed": True, "reason": "ok"}
        if instruction.startswith("You are an output validator"):
            return {"allowed": True, "reason": "ok", "citations_ok": True}
        chunk_ids = _CHUNK_ID_RE.findall(user_content)
        citations = [{"chunk_id": int(chunk_ids[0])}] if chunk_ids else []
        return {"answer": self._answer, "citations": citations, "warnings": []}

    async def embed(self, *, model: str, texts: Sequence[str]) -> list[list[float]]:
        _ = model
        return [hash_embedding(text) for text in texts]

    async def extract_pdf_text(self, *, model: str, pdf_bytes: bytes) -> str:
        _ = (model, pdf_bytes)
        return ""
