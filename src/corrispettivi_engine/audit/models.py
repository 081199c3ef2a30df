"""SQLAlchemy model for asynchronous audit jobs."""

from datetime import datetime

from sqlalchemy import DateTime, JSON, String
from sqlalchemy.orm import Mapped, mapped_column

from corrispettivi_engine.common.models import Base, TimestampMixin, generate_uuid


class AuditJobModel(Base, TimestampMixin):
    __tablename__ = "audit_jobs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    kind: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="PROCESSING", index=True)
    query: Mapped[dict] = mapped_column(JSON, default=dict)
    result_files: Mapped[list] = mapped_column(JSON, default=list)
    error: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
