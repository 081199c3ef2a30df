"""Audit API router: asynchronous journal and document queries."""

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import Response

from corrispettivi_engine.audit.schemas import (
    AuditArtifactList,
    AuditJobCreated,
    AuditJobStatus,
    DocumentAuditRequest,
    JournalAuditRequest,
)
from corrispettivi_engine.audit.service import AuditKind
from corrispettivi_engine.common.exceptions import NotFoundError, StateError, ValidationError
from corrispettivi_engine.common.security import require_api_key

router = APIRouter(dependencies=[Depends(require_api_key)])


def _get_service():
    from corrispettivi_engine.deps import get_audit_service
    return get_audit_service()


def _get_db():
    from corrispettivi_engine.deps import get_db
    return get_db()


@router.post("/audit/journal", response_model=AuditJobCreated)
async def request_journal_audit(body: JournalAuditRequest):
    svc = _get_service()
    db = _get_db()
    try:
        async with db.get_session() as session:
            job = await svc.create_journal_job(
                session, body.device_id, body.date_from, body.date_to,
                vat_number=body.vat_number,
            )
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=e.errors)
    svc.launch(job.id)
    return AuditJobCreated(job_id=job.id)


@router.post("/audit/document", response_model=AuditJobCreated)
async def request_document_audit(body: DocumentAuditRequest):
    svc = _get_service()
    db = _get_db()
    try:
        async with db.get_session() as session:
            job = await svc.create_document_job(
                session,
                hashes=body.hashes,
                device_id=body.device_id,
                date_from=body.date_from,
                date_to=body.date_to,
            )
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=e.errors)
    svc.launch(job.id)
    return AuditJobCreated(job_id=job.id)


@router.get("/audit/{kind}/{job_id}/status", response_model=AuditJobStatus)
async def get_audit_status(kind: AuditKind, job_id: str):
    svc = _get_service()
    db = _get_db()
    try:
        async with db.get_session() as session:
            job = await svc.get_job(session, job_id, kind.value)
            return AuditJobStatus(job_id=job.id, status=job.status, error=job.error)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)


@router.get("/audit/{kind}/{job_id}", response_model=AuditArtifactList)
async def list_audit_artifacts(kind: AuditKind, job_id: str):
    svc = _get_service()
    db = _get_db()
    try:
        async with db.get_session() as session:
            files = await svc.list_artifacts(session, job_id, kind.value)
            return AuditArtifactList(job_id=job_id, files=files)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    except StateError as e:
        raise HTTPException(status_code=409, detail=e.message)


@router.get("/audit/{kind}/{job_id}/file/{name}")
async def download_audit_artifact(kind: AuditKind, job_id: str, name: str):
    svc = _get_service()
    db = _get_db()
    try:
        async with db.get_session() as session:
            data = await svc.download_artifact(session, job_id, kind.value, name)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    except StateError as e:
        raise HTTPException(status_code=409, detail=e.message)
    return Response(
        content=data,
        media_type="application/xml",
        headers={"Content-Disposition": f'attachment; filename="{name}"'},
    )
