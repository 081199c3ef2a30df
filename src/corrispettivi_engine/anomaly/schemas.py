"""Pydantic schemas for anomaly API responses."""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel


class AnomalyRecordedResponse(BaseModel):
    status: str = "recorded"
    id: str


class AnomalyResponse(BaseModel):
    id: str
    anomaly_type: str
    source: str
    severity: str
    vat_number: Optional[str] = None
    device_id: Optional[str] = None
    reference_date: Optional[str] = None
    details: str = ""
    detail: dict[str, Any] = {}
    resolved: bool
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class AnomalyListResponse(BaseModel):
    items: list[AnomalyResponse]
    total: int


class AnomalyResolveRequest(BaseModel):
    resolved_by: str
