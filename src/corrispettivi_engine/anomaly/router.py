"""Anomaly API router."""

from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Query

from corrispettivi_engine.anomaly.schemas import (
    AnomalyListResponse,
    AnomalyRecordedResponse,
    AnomalyResolveRequest,
    AnomalyResponse,
)
from corrispettivi_engine.common.security import require_api_key

router = APIRouter()


def _get_service():
    from corrispettivi_engine.deps import get_anomaly_service
    return get_anomaly_service()


def _get_db():
    from corrispettivi_engine.deps import get_db
    return get_db()


@router.post("/api/anomaly", response_model=AnomalyRecordedResponse)
async def report_anomaly(body: dict[str, Any] = Body(...)):
    svc = _get_service()
    db = _get_db()
    async with db.get_session() as session:
        anomaly = await svc.record_from_device(session, body)
        return AnomalyRecordedResponse(id=anomaly.id)


@router.get("/anomalies", response_model=AnomalyListResponse)
async def list_anomalies(
    resolved: bool | None = Query(None),
    severity: str | None = Query(None),
    anomaly_type: str | None = Query(None),
    device_id: str | None = Query(None),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    _=Depends(require_api_key),
):
    svc = _get_service()
    db = _get_db()
    async with db.get_session() as session:
        items, total = await svc.list_anomalies(
            session,
            resolved=resolved,
            severity=severity,
            anomaly_type=anomaly_type,
            device_id=device_id,
            limit=limit,
            offset=offset,
        )
        return AnomalyListResponse(
            items=[AnomalyResponse.model_validate(a) for a in items],
            total=total,
        )


@router.post("/anomalies/{anomaly_id}/resolve", response_model=AnomalyResponse)
async def resolve_anomaly(
    anomaly_id: str,
    body: AnomalyResolveRequest,
    _=Depends(require_api_key),
):
    svc = _get_service()
    db = _get_db()
    async with db.get_session() as session:
        anomaly = await svc.resolve_anomaly(session, anomaly_id, body.resolved_by)
        if anomaly is None:
            raise HTTPException(status_code=404, detail="Anomaly not found")
        return AnomalyResponse.model_validate(anomaly)
