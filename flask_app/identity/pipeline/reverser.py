"""
Resolution reverser.

Undoing a run closes the graph edges and deactivates the identity links that
carry its ``run_id``. Rows are never deleted, and edges or links written by
other runs are left alone even when they connect the same records.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any

from flask import current_app
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config.monitoring import IdentityMonitoring
from flask_app.identity.audit import AuditLogSink
from flask_app.identity.errors import StateConflictError
from flask_app.identity.pipeline.guards import require_organization, require_run
from flask_app.identity.store import RecordStore
from flask_app.models import GraphEdge, IdentityLink, ResolutionRun, ResolutionRunStatus, db


@dataclass(slots=True)
class ReverseResult:
    run_id: int
    status: str
    edges_deactivated: int = 0
    links_deactivated: int = 0

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


class ResolutionReverser:
    def __init__(
        self,
        session: Session | None = None,
        *,
        store: RecordStore | None = None,
        audit: AuditLogSink | None = None,
    ):
        self.session = session or db.session
        self.store = store or RecordStore(self.session)
        self.audit = audit or AuditLogSink(self.session)

    def reverse(self, organization_id: int, run_id: int, actor_id: str | None = None) -> ReverseResult:
        """
        Reverse an applied or partially applied run.

        Candidate rows keep their status so the run's review history stays
        intact; the run itself moves to ``reversed``.

        Raises:
            NotFoundError: the run does not exist for this tenant.
            StateConflictError: the run is not applied, including already reversed
                runs and runs whose apply is still in progress.
        """
        org_id = require_organization(organization_id, self.session)
        run = require_run(self.session, org_id, run_id)
        run_pk = run.id
        now = datetime.now(timezone.utc)

        moved = self.store.transition_run(
            run_id=run_pk,
            organization_id=org_id,
            expected=(ResolutionRunStatus.APPLIED, ResolutionRunStatus.PARTIALLY_APPLIED),
            new_status=ResolutionRunStatus.REVERSED,
            reversed_at=now,
        )
        if not moved:
            self.session.rollback()
            current = self.session.scalar(select(ResolutionRun.status).where(ResolutionRun.id == run_pk))
            status = current.value if current is not None else None
            raise StateConflictError(
                f"Resolution run {run_pk} is {status}; only applied or partially_applied runs can be reversed",
                current_status=status,
            )

        result = ReverseResult(run_id=run_pk, status=ResolutionRunStatus.REVERSED.value)
        try:
            edges = self.session.scalars(
                select(GraphEdge).where(
                    GraphEdge.organization_id == org_id,
                    GraphEdge.run_id == run_pk,
                    GraphEdge.valid_until.is_(None),
                )
            ).all()
            for edge in edges:
                edge.close(when=now)
            links = self.session.scalars(
                select(IdentityLink).where(
                    IdentityLink.organization_id == org_id,
                    IdentityLink.run_id == run_pk,
                    IdentityLink.is_active.is_(True),
                )
            ).all()
            for link in links:
                link.deactivate(reason=f"resolution run {run_pk} reversed", when=now)

            result.edges_deactivated = len(edges)
            result.links_deactivated = len(links)
            stats = dict(run.stats_json or {})
            stats["reverse"] = result.as_dict()
            run.stats_json = stats
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            current_app.logger.error(
                "Identity resolution reverse failed",
                exc_info=True,
                extra={"identity_run_id": run_pk, "organization_id": org_id},
            )
            raise

        IdentityMonitoring.record_reverse()
        current_app.logger.info(
            "Identity resolution reversed",
            extra={
                "identity_run_id": run_pk,
                "organization_id": org_id,
                "identity_edges_deactivated": result.edges_deactivated,
                "identity_links_deactivated": result.links_deactivated,
            },
        )
        try:
            self.audit.record(
                organization_id=org_id,
                actor_id=actor_id,
                action="identity_resolution_reverse",
                level="warning",
                message=(
                    f"Reversed identity resolution run {run_pk}: {result.edges_deactivated} edges and "
                    f"{result.links_deactivated} links deactivated"
                ),
                details=result.as_dict(),
            )
        except Exception:
            current_app.logger.warning("Audit sink raised; ignoring", exc_info=True)
        return result


def reverse_resolution(organization_id: int, run_id: int, actor_id: str | None = None) -> ReverseResult:
    return ResolutionReverser().reverse(organization_id, run_id, actor_id)
