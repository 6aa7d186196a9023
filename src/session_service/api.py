"""FastAPI router configuration."""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Response, status
from sqlalchemy.exc import NoResultFound
from sqlalchemy.ext.asyncio import AsyncSession

from . import crud, schemas
from .auth import TokenIssuer, provide_settings, provide_token_issuer, require_client
from .config import Settings, get_settings
from .database import get_session

logger = logging.getLogger(__name__)

router = APIRouter()


def _etag(revision: int) -> str:
    return f'"{revision}"'


@router.get("/health", response_model=schemas.HealthStatus, tags=["system"])
async def health_check(settings: Settings = Depends(provide_settings)) -> schemas.HealthStatus:
    return schemas.HealthStatus(environment=settings.environment)


@router.post("/auth/anonymous", response_model=schemas.AnonymousToken, tags=["auth"])
async def sign_in_anonymously(
    issuer: TokenIssuer = Depends(provide_token_issuer),
) -> schemas.AnonymousToken:
    token, uid, issued_at, expires_at = issuer.issue()
    return schemas.AnonymousToken(
        token=token, uid=uid, issued_at=issued_at, expires_at=expires_at
    )


@router.get("/sessions/{session_id}", response_model=schemas.SessionOut, tags=["sessions"])
async def read_session(
    session_id: str,
    settings: Settings = Depends(provide_settings),
    _client: str = Depends(require_client),
    session: AsyncSession = Depends(get_session),
) -> schemas.SessionOut:
    if not settings.allow_session_reads:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Reads are not allowed on this path",
        )
    record = await crud.get_document(session, session_id)
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")
    return crud.to_schema(record)


@router.get(
    "/sessions/{session_id}/snapshot",
    response_model=schemas.SessionOut,
    tags=["sessions"],
    responses={304: {"description": "Document unchanged since the given ETag"}},
)
async def read_snapshot(
    session_id: str,
    response: Response,
    if_none_match: str | None = Header(default=None),
    _client: str = Depends(require_client),
    session: AsyncSession = Depends(get_session),
):
    record = await crud.get_document(session, session_id)
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")
    etag = _etag(record.revision or 0)
    if if_none_match == etag:
        return Response(status_code=status.HTTP_304_NOT_MODIFIED, headers={"ETag": etag})
    response.headers["ETag"] = etag
    return crud.to_schema(record)


@router.put("/sessions/{session_id}", response_model=schemas.SessionOut, tags=["sessions"])
async def write_session(
    session_id: str,
    payload: schemas.SessionWrite,
    merge: bool = Query(default=True),
    _client: str = Depends(require_client),
    session: AsyncSession = Depends(get_session),
) -> schemas.SessionOut:
    record = await crud.set_document(session, session_id, payload, merge=merge)
    await session.commit()
    await session.refresh(record)
    logger.debug("Wrote session %s (revision %s)", record.id, record.revision)
    return crud.to_schema(record)


@router.patch("/sessions/{session_id}", response_model=schemas.SessionOut, tags=["sessions"])
async def update_session(
    session_id: str,
    payload: schemas.SessionWrite,
    _client: str = Depends(require_client),
    session: AsyncSession = Depends(get_session),
) -> schemas.SessionOut:
    try:
        record = await crud.update_document(session, session_id, payload)
    except NoResultFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    await session.commit()
    await session.refresh(record)
    return crud.to_schema(record)


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    app = FastAPI(title=settings.app_name)
    app.dependency_overrides[provide_settings] = lambda: settings
    app.include_router(router)
    return app


app = create_app()


__all__ = ["app", "create_app", "router"]
