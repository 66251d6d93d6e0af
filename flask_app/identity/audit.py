"""
Best-effort audit sink.

Audit events are written after the operation they describe has committed, in
their own transaction. A failing write is logged and swallowed; it never
changes the outcome of the operation being audited.
"""

from __future__ import annotations

from typing import Any, Mapping

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from flask_app.models import AuditEvent, db

AUDIT_LEVELS = ("debug", "info", "success", "warning", "error")


class AuditLogSink:
    """Persist audit events to the ``audit_events`` table."""

    def __init__(self, session: Session | None = None):
        self.session = session or db.session

    def record(
        self,
        *,
        organization_id: int | None,
        action: str,
        message: str,
        level: str = "info",
        actor_id: str | None = None,
        details: Mapping[str, Any] | None = None,
    ) -> bool:
        if level not in AUDIT_LEVELS:
            level = "info"
        try:
            self.session.add(
                AuditEvent(
                    organization_id=organization_id,
                    actor_id=actor_id,
                    level=level,
                    action=action,
                    message=message,
                    details=dict(details or {}),
                )
            )
            self.session.commit()
            return True
        except SQLAlchemyError:
            self.session.rollback()
            current_app.logger.warning(
                "Audit event could not be recorded",
                exc_info=True,
                extra={"audit_action": action, "organization_id": organization_id},
            )
            return False
