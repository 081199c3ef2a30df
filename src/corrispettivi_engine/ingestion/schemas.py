"""Pydantic schemas for the device-facing ingestion API."""

from datetime import datetime

from pydantic import BaseModel


class SessionSeedResponse(BaseModel):
    session_id: str
    seed: str


class DocumentAck(BaseModel):
    message_id: str
    received_at: datetime
    status: str = "received"


class JournalAck(BaseModel):
    message_id: str
    status: str
    integrity_valid: bool
    errors: list[str] = []
