from __future__ import annotations

from sqlalchemy import func
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from kbembed.domain.models import GoogleConnection
from kbembed.domain.records import GoogleConnectionRecord
from kbembed.services.crypto.keyring import EncryptedSecret
from kbembed.services.crypto.utils import from_bytea, to_bytea


def to_record(connection: GoogleConnection) -> GoogleConnectionRecord:
    return GoogleConnectionRecord(
        account_id=connection.account_id,
        google_subject=connection.google_subject,
        refresh_token=EncryptedSecret(
            ciphertext=from_bytea(connection.refresh_token_ciphertext),
            nonce=from_bytea(connection.refresh_token_nonce),
            key_version=connection.key_version,
        ),
        scopes=tuple(connection.scopes or ()),
    )


async def get_connection(session: AsyncSession, account_id: str) -> GoogleConnectionRecord | None:
    connection = await session.get(GoogleConnection, account_id)
    return to_record(connection) if connection else None


async def upsert_connection(session: AsyncSession, record: GoogleConnectionRecord) -> None:
    # One row per owning account; a reconnect overwrites the previous grant.
    values = {
        "account_id": record.account_id,
        "google_subject": record.google_subject,
        "refresh_token_ciphertext": to_bytea(record.refresh_token.ciphertext),
        "refresh_token_nonce": to_bytea(record.refresh_token.nonce),
        "key_version": record.refresh_token.key_version,
        "scopes": list(record.scopes),
    }
    stmt = insert(GoogleConnection).values(**values)
    stmt = stmt.on_conflict_do_update(
        index_elements=[GoogleConnection.account_id],
        set_={
            **{key: stmt.excluded[key] for key in values if key != "account_id"},
            "updated_at": func.now(),
        },
    )
    await session.execute(stmt)
