"""Shared Pydantic schemas for Corrispettivi-Engine."""

from pydantic import BaseModel


class HealthResponse(BaseModel):
    status: str = "ok"
    version: str = "0.1.0"
    service: str = "corrispettivi-engine"


class ErrorResponse(BaseModel):
    error: str
    code: str
    detail: list[str] = []
