"""Business logic for reading and writing session documents."""
from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.exc import NoResultFound
from sqlalchemy.ext.asyncio import AsyncSession

from . import schemas
from .models import SessionRecord

_FIELDS = ("payload", "admin_pin", "updated")


def normalize_session_id(value: str) -> str:
    return value.strip().replace("/", "_").replace(".", "_").upper()


async def get_document(session: AsyncSession, session_id: str) -> SessionRecord | None:
    stmt = select(SessionRecord).where(SessionRecord.id == normalize_session_id(session_id))
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def set_document(
    session: AsyncSession,
    session_id: str,
    data: schemas.SessionWrite,
    *,
    merge: bool = True,
) -> SessionRecord:
    """Create the document or overwrite it.

    With ``merge`` only the fields present in ``data`` change; otherwise the
    document is replaced and missing fields are cleared.
    """

    record = await get_document(session, session_id)
    if record is None:
        record = SessionRecord(id=normalize_session_id(session_id))
        session.add(record)
    values = data.model_dump(exclude_unset=merge)
    for field in _FIELDS:
        if field in values:
            setattr(record, field, values[field])
    record.revision = (record.revision or 0) + 1
    await session.flush()
    return record


async def update_document(
    session: AsyncSession, session_id: str, data: schemas.SessionWrite
) -> SessionRecord:
    record = await get_document(session, session_id)
    if record is None:
        raise NoResultFound(f"Session {normalize_session_id(session_id)} not found")
    for field, value in data.model_dump(exclude_unset=True).items():
        setattr(record, field, value)
    record.revision = (record.revision or 0) + 1
    await session.flush()
    return record


def to_schema(record: SessionRecord) -> schemas.SessionOut:
    return schemas.SessionOut(
        id=record.id,
        payload=record.payload,
        admin_pin=record.admin_pin,
        updated=record.updated,
        revision=record.revision or 0,
    )


__all__ = [
    "get_document",
    "normalize_session_id",
    "set_document",
    "to_schema",
    "update_document",
]
