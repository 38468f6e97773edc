from __future__ import annotations

import base64
import json
import logging
import time
from typing import Any, Sequence

import httpx

from kbembed.core.config import Settings, get_settings
from kbembed.core.errors import ProviderConfigError, ProviderFormatError, ProviderRequestError
from kbembed.providers.llm.types import EmbeddingResponse, parse_payload


logger = logging.getLogger(__name__)

_PDF_EXTRACTION_PROMPT = (
    "Extract as much readable text as possible from this PDF. Return plain text only. "
    "Do not summarize."
)


def extract_response_text(payload: dict[str, Any]) -> str:
    # Prefer the aggregated output_text, then fall back to output[].content[] blocks.
    output_text = payload.get("output_text")
    if isinstance(output_text, str) and output_text.strip():
        return output_text.strip()
    parts: list[str] = []
    output = payload.get("output")
    for item in output if isinstance(output, list) else []:
        if not isinstance(item, dict):
            continue
        content = item.get("content")
        for block in content if isinstance(content, list) else []:
            if isinstance(block, dict) and block.get("type") == "output_text" and isinstance(block.get("text"), str):
                parts.append(block["text"])
    return "\n".join(parts).strip()


class OpenAIResponsesProvider:
    def __init__(self, settings: Settings | None = None, client: httpx.AsyncClient | None = None) -> None:
        self._settings = settings or get_settings()
        self._client = client

    @property
    def supports_pdf_extraction(self) -> bool:
        return bool(self._settings.openai_api_key)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        # Reuse a single client per provider for connection pooling.
        timeout_s = self._settings.ext_call_timeout_ms / 1000.0
        self._client = httpx.AsyncClient(timeout=timeout_s)
        return self._client

    def _headers(self) -> dict[str, str]:
        api_key = self._settings.openai_api_key
        if not api_key:
            raise ProviderConfigError("OPENAI_API_KEY is required for the OpenAI provider")
        return {"Authorization": f"Bearer {api_key}"}

    async def _post(self, path: str, body: dict[str, Any], *, operation: str) -> dict[str, Any]:
        headers = self._headers()
        url = f"{self._settings.openai_base_url.rstrip('/')}/{path}"
        start = time.monotonic()
        try:
            response = await self._get_client().post(url, json=body, headers=headers)
        except httpx.HTTPError as exc:
            logger.warning("openai_request_failed operation=%s", operation, exc_info=exc)
            raise ProviderRequestError(f"OpenAI {operation} request failed.") from exc
        latency_ms = (time.monotonic() - start) * 1000.0
        if response.status_code >= 400:
            logger.warning(
                "openai_request_rejected operation=%s status=%s latency_ms=%.1f",
                operation,
                response.status_code,
                latency_ms,
            )
            raise ProviderRequestError(
                f"OpenAI {operation} error: {response.status_code}",
                status_code=response.status_code,
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderFormatError(f"OpenAI {operation} response was not JSON.") from exc
        if not isinstance(payload, dict):
            raise ProviderFormatError(f"OpenAI {operation} response was not an object.")
        return payload

    async def complete_json(
        self,
        *,
        model: str,
        instruction: str,
        user_content: str,
    ) -> dict[str, Any]:
        body = {
            "model": model,
            "input": [
                {"role": "system", "content": [{"type": "input_text", "text": instruction}]},
                {"role": "user", "content": [{"type": "input_text", "text": user_content}]},
            ],
            "max_output_tokens": self._settings.openai_max_output_tokens,
        }
        payload = await self._post("responses", body, operation="responses")
        text = extract_response_text(payload)
        if not text:
            raise ProviderFormatError("OpenAI response did not include text.")
        try:
            parsed = json.loads(text)
        except ValueError as exc:
            raise ProviderFormatError("OpenAI response was not valid JSON.") from exc
        if not isinstance(parsed, dict):
            raise ProviderFormatError("OpenAI response JSON was not an object.")
        return parsed

    async def embed(self, *, model: str, texts: Sequence[str]) -> list[list[float]]:
        if not texts:
            return []
        payload = await self._post("embeddings", {"model": model, "input": list(texts)}, operation="embeddings")
        vectors = parse_payload(EmbeddingResponse, payload).vectors()
        if len(vectors) != len(texts):
            raise ProviderFormatError("OpenAI embeddings count did not match the input batch.")
        return vectors

    async def extract_pdf_text(self, *, model: str, pdf_bytes: bytes) -> str:
        encoded = base64.b64encode(pdf_bytes).decode("ascii")
        body = {
            "model": model,
            "input": [
                {
                    "role": "user",
                    "content": [
                        {"type": "input_text", "text": _PDF_EXTRACTION_PROMPT},
                        {
                            "type": "input_file",
                            "filename": "source.pdf",
                            "file_data": f"data:application/pdf;base64,{encoded}",
                        },
                    ],
                }
            ],
            "max_output_tokens": self._settings.openai_pdf_max_output_tokens,
        }
        payload = await self._post("responses", body, operation="pdf_extraction")
        return extract_response_text(payload)
