"""Ingestion API router: endpoints called by emission devices."""

from typing import Any

from fastapi import APIRouter, Body, HTTPException, Query

from corrispettivi_engine.common.exceptions import ValidationError
from corrispettivi_engine.ingestion.schemas import DocumentAck, JournalAck, SessionSeedResponse

router = APIRouter()


def _get_service():
    from corrispettivi_engine.deps import get_ingestion_service
    return get_ingestion_service()


def _get_aggregation():
    from corrispettivi_engine.deps import get_aggregation_service
    return get_aggregation_service()


def _get_db():
    from corrispettivi_engine.deps import get_db
    return get_db()


@router.get("/api/session/seed", response_model=SessionSeedResponse)
async def get_session_seed(device_id: str | None = Query(None)):
    svc = _get_service()
    db = _get_db()
    async with db.get_session() as session:
        seed = await svc.issue_seed(session, device_id)
        return SessionSeedResponse(session_id=seed.session_id, seed=seed.seed)


@router.post("/api/document", response_model=DocumentAck)
async def ingest_document(body: dict[str, Any] = Body(...)):
    svc = _get_service()
    db = _get_db()
    try:
        async with db.get_session() as session:
            result = await svc.ingest_receipt(session, body)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=e.errors)
    return DocumentAck(
        message_id=result.receipt.message_id,
        received_at=result.receipt.created_at,
        status="received" if result.created else "duplicate",
    )


@router.post("/api/journal", response_model=JournalAck)
async def ingest_journal(body: dict[str, Any] = Body(...)):
    svc = _get_service()
    db = _get_db()
    try:
        key = svc.journal_key(body)
        async with svc.locks.hold(key):
            async with db.get_session() as session:
                result = await svc.ingest_journal(session, body)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=e.errors)

    # Aggregation runs after the journal is committed and never blocks the reply.
    if result.integrity.valid:
        _get_aggregation().schedule(key)

    return JournalAck(
        message_id=result.journal.message_id,
        status="received" if result.integrity.valid else "integrity_error",
        integrity_valid=result.integrity.valid,
        errors=result.integrity.errors,
    )
