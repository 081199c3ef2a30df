"""Anomaly service: record, list and resolve anomalies.

Anomalies come from two places: devices pushing opaque records (sync
failures and the like) and the elaboration point itself (integrity
failures on ingest, outcomes that never arrived). Each one is stored as a
row for querying and as a raw JSON blob for retention.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from corrispettivi_engine.anomaly.models import AnomalyModel
from corrispettivi_engine.common.config import CorrispettiviSettings
from corrispettivi_engine.storage.blob import BlobStore

logger = logging.getLogger(__name__)

INTEGRITY_ERROR = "INTEGRITY_ERROR"
SYNC_FAILURE = "SYNC_FAILURE"
OUTCOME_UNRESOLVED = "OUTCOME_UNRESOLVED"

_SEVERITY_BY_TYPE = {
    INTEGRITY_ERROR: "critical",
    OUTCOME_UNRESOLVED: "high",
    SYNC_FAILURE: "medium",
}


def severity_for(anomaly_type: str) -> str:
    return _SEVERITY_BY_TYPE.get(anomaly_type, "medium")


class AnomalyService:
    """Anomaly persistence and management."""

    def __init__(self, settings: CorrispettiviSettings, blob_store: Optional[BlobStore] = None):
        self.settings = settings
        self.blob_store = blob_store

    async def record(
        self,
        session: AsyncSession,
        anomaly_type: str,
        *,
        source: str = "pel",
        vat_number: Optional[str] = None,
        device_id: Optional[str] = None,
        reference_date: Optional[str] = None,
        details: str = "",
        detail: Optional[dict[str, Any]] = None,
        severity: Optional[str] = None,
    ) -> AnomalyModel:
        anomaly = AnomalyModel(
            anomaly_type=anomaly_type,
            source=source,
            severity=severity or severity_for(anomaly_type),
            vat_number=vat_number,
            device_id=device_id,
            reference_date=reference_date,
            details=details,
            detail=detail or {},
        )
        session.add(anomaly)
        await session.flush()

        if self.blob_store is not None:
            stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
            key = f"anomalies/{device_id or 'unknown'}/{stamp}-{anomaly.id}.json"
            await self.blob_store.store(key, json.dumps({
                "id": anomaly.id,
                "type": anomaly_type,
                "source": source,
                "vat_number": vat_number,
                "device_id": device_id,
                "reference_date": reference_date,
                "details": details,
                "detail": anomaly.detail,
            }, default=str).encode("utf-8"))
            anomaly.blob_key = key
            await session.flush()

        logger.warning(
            "Anomaly recorded: %s (%s) device=%s date=%s: %s",
            anomaly_type, anomaly.severity, device_id, reference_date, details,
        )
        return anomaly

    async def record_from_device(
        self,
        session: AsyncSession,
        body: dict[str, Any],
    ) -> AnomalyModel:
        """Store an anomaly pushed by an emission device as-is."""
        details = body.get("details", "")
        return await self.record(
            session,
            str(body.get("type") or "UNKNOWN"),
            source="pem",
            vat_number=body.get("vat_number"),
            device_id=body.get("device_id"),
            reference_date=body.get("reference_date"),
            details=details if isinstance(details, str) else json.dumps(details, default=str),
            detail=body,
        )

    async def list_anomalies(
        self,
        session: AsyncSession,
        resolved: Optional[bool] = None,
        severity: Optional[str] = None,
        anomaly_type: Optional[str] = None,
        device_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[AnomalyModel], int]:
        """List anomalies with count. Returns (items, total)."""
        filters = []
        if resolved is not None:
            filters.append(AnomalyModel.resolved == resolved)
        if severity is not None:
            filters.append(AnomalyModel.severity == severity)
        if anomaly_type is not None:
            filters.append(AnomalyModel.anomaly_type == anomaly_type)
        if device_id is not None:
            filters.append(AnomalyModel.device_id == device_id)

        count_q = select(func.count(AnomalyModel.id))
        if filters:
            count_q = count_q.where(*filters)
        total = (await session.execute(count_q)).scalar() or 0

        query = select(AnomalyModel)
        if filters:
            query = query.where(*filters)
        query = query.order_by(AnomalyModel.created_at.desc()).offset(offset).limit(limit)
        result = await session.execute(query)
        return list(result.scalars().all()), total

    async def resolve_anomaly(
        self,
        session: AsyncSession,
        anomaly_id: str,
        resolved_by: str,
    ) -> Optional[AnomalyModel]:
        """Mark an anomaly as resolved."""
        result = await session.execute(
            select(AnomalyModel).where(AnomalyModel.id == anomaly_id)
        )
        anomaly = result.scalar_one_or_none()
        if anomaly is None:
            return None
        anomaly.resolved = True
        anomaly.resolved_by = resolved_by
        anomaly.resolved_at = datetime.now(timezone.utc)
        await session.flush()
        return anomaly
