from __future__ import annotations

import logging
from urllib.parse import quote

import httpx

from kbembed.core.config import Settings
from kbembed.core.errors import ProviderRequestError


logger = logging.getLogger(__name__)

MIME_TEXT = "text/plain"
MIME_PDF = "application/pdf"


class GoogleDriveClient:
    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None) -> None:
        self._settings = settings
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._settings.ext_call_timeout_ms / 1000.0)
        return self._client

    def _file_url(self, file_id: str) -> str:
        return f"{self._settings.google_drive_api_base.rstrip('/')}/files/{quote(file_id, safe='')}"

    async def _get(self, url: str, access_token: str, *, params: dict[str, str], operation: str) -> httpx.Response:
        try:
            response = await self._get_client().get(
                url,
                params=params,
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.HTTPError as exc:
            logger.warning("drive_request_failed operation=%s", operation, exc_info=exc)
            raise ProviderRequestError(f"Drive {operation} request failed.") from exc
        return response

    async def export(self, access_token: str, file_id: str, mime_type: str) -> httpx.Response:
        # Callers inspect the status; slides fall back to PDF export on an unusable text export.
        return await self._get(
            f"{self._file_url(file_id)}/export",
            access_token,
            params={"mimeType": mime_type},
            operation="export",
        )

    async def export_text(self, access_token: str, file_id: str) -> str:
        response = await self.export(access_token, file_id, MIME_TEXT)
        if response.status_code >= 400:
            raise ProviderRequestError(
                f"Drive export failed ({response.status_code}).", status_code=response.status_code
            )
        return response.text

    async def export_pdf(self, access_token: str, file_id: str) -> bytes:
        response = await self.export(access_token, file_id, MIME_PDF)
        if response.status_code >= 400:
            raise ProviderRequestError(
                f"Slides export failed ({response.status_code}).", status_code=response.status_code
            )
        return response.content

    async def download(self, access_token: str, file_id: str) -> bytes:
        response = await self._get(
            self._file_url(file_id),
            access_token,
            params={"alt": "media"},
            operation="download",
        )
        if response.status_code >= 400:
            raise ProviderRequestError(
                f"PDF download failed ({response.status_code}).", status_code=response.status_code
            )
        return response.content
