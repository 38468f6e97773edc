from __future__ import annotations

from dataclasses import dataclass, field

import httpx

from kbembed.providers.google.oauth import TokenGrant


def pdf_bytes(text: str = "", *, pages: int = 1) -> bytes:
    # Minimal PDF-shaped bytes: page markers plus an optional printable text run.
    body = b"%PDF-1.4\n\x00\x01"
    body += b"\x00".join(b"<< /Type /Page >>" for _ in range(pages))
    if text:
        body += b"\x00" + text.encode("ascii") + b"\x00"
    return body + b"\x02%%EOF"


@dataclass
class FakeDrive:
    """Stands in for GoogleDriveClient; keyed by Drive file id."""

    texts: dict[str, str] = field(default_factory=dict)
    pdfs: dict[str, bytes] = field(default_factory=dict)
    text_status: int = 200
    errors: dict[str, Exception] = field(default_factory=dict)
    calls: list[tuple[str, str]] = field(default_factory=list)

    def _raise_for(self, file_id: str) -> None:
        if file_id in self.errors:
            raise self.errors[file_id]

    async def export(self, access_token: str, file_id: str, mime_type: str) -> httpx.Response:
        self.calls.append(("export", mime_type))
        self._raise_for(file_id)
        return httpx.Response(self.text_status, text=self.texts.get(file_id, ""))

    async def export_text(self, access_token: str, file_id: str) -> str:
        self.calls.append(("export_text", file_id))
        self._raise_for(file_id)
        return self.texts.get(file_id, "")

    async def export_pdf(self, access_token: str, file_id: str) -> bytes:
        self.calls.append(("export_pdf", file_id))
        self._raise_for(file_id)
        return self.pdfs.get(file_id, b"")

    async def download(self, access_token: str, file_id: str) -> bytes:
        self.calls.append(("download", file_id))
        self._raise_for(file_id)
        return self.pdfs.get(file_id, b"")


@dataclass
class FakeOAuth:
    """Stands in for GoogleOAuthClient."""

    access_token: str = "access-token"
    grant: TokenGrant | None = None
    exchange_error: Exception | None = None
    refresh_error: Exception | None = None
    subject: str | None = None
    refreshed_with: list[str] = field(default_factory=list)

    async def exchange_code(self, code: str) -> TokenGrant:
        if self.exchange_error is not None:
            raise self.exchange_error
        assert self.grant is not None
        return self.grant

    async def refresh_access_token(self, refresh_token: str) -> str:
        self.refreshed_with.append(refresh_token)
        if self.refresh_error is not None:
            raise self.refresh_error
        return self.access_token

    async def fetch_subject(self, access_token: str) -> str | None:
        return self.subject


@dataclass
class FakeSessions:
    """Stands in for OwnerSessionVerifier; maps session tokens to account ids."""

    accounts: dict[str, str] = field(default_factory=dict)

    async def resolve_account_id(self, session_token: str) -> str | None:
        return self.accounts.get(session_token)
