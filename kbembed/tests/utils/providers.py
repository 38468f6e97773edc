from __future__ import annotations

from typing import Any, Sequence

from kbembed.core.config import EMBED_DIM


STAGE_INPUT = "input"
STAGE_GENERATION = "generation"
STAGE_OUTPUT = "output"


def stage_for(instruction: str) -> str:
    if instruction.startswith("You are an input safety validator"):
        return STAGE_INPUT
    if instruction.startswith("You are an output validator"):
        return STAGE_OUTPUT
    return STAGE_GENERATION


def unit_vector(index: int = 0) -> list[float]:
    vector = [0.0] * EMBED_DIM
    vector[index % EMBED_DIM] = 1.0
    return vector


class ScriptedProvider:
    """GenerativeProvider whose replies are set per stage.

    A reply that is an exception instance is raised instead of returned.
    """

    def __init__(
        self,
        *,
        input_verdict: Any = None,
        generation: Any = None,
        output_verdict: Any = None,
        embeddings: Any = None,
        pdf_text: Any = "",
        supports_pdf: bool = False,
    ) -> None:
        self.replies = {
            STAGE_INPUT: input_verdict if input_verdict is not None else {"allowed": True, "reason": "ok"},
            STAGE_GENERATION: generation if generation is not None else {"answer": "Grounded answer.", "citations": []},
            STAGE_OUTPUT: output_verdict
            if output_verdict is not None
            else {"allowed": True, "citations_ok": True, "reason": "ok"},
        }
        self.embeddings = embeddings
        self.pdf_text = pdf_text
        self._supports_pdf = supports_pdf
        self.calls: list[tuple[str, dict[str, Any]]] = []

    @property
    def supports_pdf_extraction(self) -> bool:
        return self._supports_pdf

    def stages(self) -> list[str]:
        return [name for name, _ in self.calls]

    async def complete_json(self, *, model: str, instruction: str, user_content: str) -> dict[str, Any]:
        stage = stage_for(instruction)
        self.calls.append((stage, {"model": model, "instruction": instruction, "user_content": user_content}))
        reply = self.replies[stage]
        if isinstance(reply, Exception):
            raise reply
        return reply

    async def embed(self, *, model: str, texts: Sequence[str]) -> list[list[float]]:
        self.calls.append(("embed", {"model": model, "texts": list(texts)}))
        if isinstance(self.embeddings, Exception):
            raise self.embeddings
        if self.embeddings is not None:
            return self.embeddings
        return [unit_vector(index) for index, _ in enumerate(texts)]

    async def extract_pdf_text(self, *, model: str, pdf_bytes: bytes) -> str:
        self.calls.append(("pdf", {"model": model, "size": len(pdf_bytes)}))
        if isinstance(self.pdf_text, Exception):
            raise self.pdf_text
        return self.pdf_text
