"""Audit service for logging engine actions."""

from sqlalchemy.orm import Session

from src.models.audit_log import AuditLog


class AuditService:
    """Service for audit log operations.

    Adds entries to the caller's session so they commit (or roll back)
    together with the unit they describe.
    """

    @staticmethod
    def log(
        db: Session,
        entity_type: str,
        entity_id: int | None,
        action: str,
        actor: str = "system",
        changes: dict | None = None,
    ) -> AuditLog:
        """Create audit log entry (one-liner).

        Args:
            db: Database session
            entity_type: Type of entity ("payment", "job", etc.)
            entity_id: Primary key of the entity (None for job runs)
            action: Action performed ("settle", "run", etc.)
            actor: Who performed the action
            changes: Optional JSON snapshot of changed fields

        Returns:
            Created AuditLog object
        """
        audit = AuditLog(
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            actor=actor,
            changes=changes,
        )
        db.add(audit)
        return audit


__all__ = ["AuditService"]
