from __future__ import annotations

import pytest
from sqlalchemy.exc import OperationalError

from kbembed.core.errors import StoreError
from kbembed.domain.models import GoogleConnection
from kbembed.persistence.repos.connections import to_record
from kbembed.persistence.sql_store import SqlKnowledgeStore


class _BrokenSession:
    async def __aenter__(self):
        raise OperationalError("SELECT 1", {}, Exception("connection refused"))

    async def __aexit__(self, *exc_info) -> None:
        return None


@pytest.mark.asyncio
async def test_database_errors_become_store_errors() -> None:
    store = SqlKnowledgeStore(lambda: _BrokenSession())
    with pytest.raises(StoreError, match="get_project failed"):
        await store.get_project("p-1")


def test_connection_rows_decode_bytea_columns() -> None:
    row = GoogleConnection(
        account_id="owner-1",
        google_subject="google-sub",
        refresh_token_ciphertext="\\x0102",
        refresh_token_nonce="\\xaabb",
        key_version=3,
        scopes=["openid"],
    )
    record = to_record(row)
    assert record.refresh_token.ciphertext == b"\x01\x02"
    assert record.refresh_token.nonce == b"\xaa\xbb"
    assert record.refresh_token.key_version == 3
    assert record.scopes == ("openid",)
