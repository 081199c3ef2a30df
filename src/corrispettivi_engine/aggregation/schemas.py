"""Pydantic schemas for daily report API requests/responses."""

from datetime import datetime
from decimal import Decimal
from typing import Any, Literal, Optional

from pydantic import BaseModel


class DailyReportResponse(BaseModel):
    id: str
    vat_number: str
    device_id: str
    reference_date: str
    document_count: int
    total_amount: Decimal
    vat_breakdown: list[dict[str, Any]] = []
    journal_head_hash: Optional[str] = None
    revision: int
    transmission_status: str
    transmitted_at: Optional[datetime] = None
    outcome_code: Optional[str] = None
    outcome_description: Optional[str] = None
    outcome_received_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class OutcomeRequest(BaseModel):
    status: Literal["accepted", "rejected"]
    code: str = ""
    description: str = ""
