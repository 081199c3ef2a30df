"""Pydantic schemas for the audit API."""

from typing import Optional

from pydantic import BaseModel


class JournalAuditRequest(BaseModel):
    device_id: str
    date_from: str
    date_to: str
    vat_number: Optional[str] = None


class DocumentAuditRequest(BaseModel):
    hashes: list[str] = []
    device_id: Optional[str] = None
    date_from: Optional[str] = None
    date_to: Optional[str] = None


class AuditJobCreated(BaseModel):
    job_id: str


class AuditJobStatus(BaseModel):
    job_id: str
    status: str
    error: Optional[str] = None


class AuditArtifact(BaseModel):
    name: str
    size: int


class AuditArtifactList(BaseModel):
    job_id: str
    files: list[AuditArtifact]
