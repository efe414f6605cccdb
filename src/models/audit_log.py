"""Audit log model for tracking engine actions and job runs."""

from typing import Any

from sqlalchemy import JSON, String
from sqlalchemy.orm import Mapped, mapped_column

from src.models import Base, BaseModel


class AuditLog(Base, BaseModel):
    """Audit log entry for tracking changes to key entities.

    Records who (actor) did what (action) to which entity (entity_type,
    entity_id) and an optional JSON summary (changes). Scheduled job runs are
    logged with entity_type "job".
    """

    __tablename__ = "audit_logs"

    entity_type: Mapped[str] = mapped_column(String(50), index=False)
    """Entity type being audited: "bill", "payment", "job", etc."""

    entity_id: Mapped[int | None] = mapped_column(nullable=True, index=False)
    """Primary key of the entity being audited. None for job runs."""

    action: Mapped[str] = mapped_column(String(50), index=False)
    """Action performed: "generate", "settle", "run", etc."""

    actor: Mapped[str] = mapped_column(String(100), default="system", index=False)
    """Who performed the action: "scheduler", "admin", "equity", ..."""

    changes: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True, index=False)
    """Optional JSON snapshot: {"created": 99, "errors": 1}."""

    def __repr__(self) -> str:
        return (
            f"<AuditLog(id={self.id}, entity_type={self.entity_type}, entity_id={self.entity_id}, "
            f"action={self.action}, actor={self.actor}, created_at={self.created_at})>"
        )


__all__ = ["AuditLog"]
