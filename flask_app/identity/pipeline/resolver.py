"""
Waterfall resolver: the compute phase of identity resolution.

Loads every configured source for a tenant, runs the matching tiers over that
snapshot, and stages the resulting candidates under a new ``pending_review``
run. The run row and its candidates are written in a single transaction after
matching has finished; if reading or writing fails, only a ``failed`` run row
is left behind.
"""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Sequence

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config.monitoring import IdentityMonitoring
from flask_app.identity.audit import AuditLogSink
from flask_app.identity.errors import SourceReadError
from flask_app.identity.pipeline.guards import require_organization
from flask_app.identity.pipeline.tiers import DEFAULT_TIERS, MatchSettings, TierDefinition, TierMatch, run_waterfall
from flask_app.identity.settings import build_match_settings, get_candidate_batch_size, get_configured_sources
from flask_app.identity.store import RecordStore, SourceRecord
from flask_app.models import (
    CandidateStatus,
    MatchCandidate,
    ResolutionRun,
    ResolutionRunStatus,
    SourceType,
    db,
)


@dataclass(slots=True)
class TierStats:
    tier: str
    priority: int
    count: int
    needs_review: int = 0


@dataclass(slots=True)
class ComputeResult:
    """Summary returned by ``compute_resolution``."""

    run_id: int
    status: str
    total_records_scanned: int
    unique_emails: int
    total_candidates: int
    by_tier: list[TierStats] = field(default_factory=list)
    needs_review_count: int = 0
    duration_ms: int = 0
    sources: list[str] = field(default_factory=list)
    records_by_source: dict[str, int] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_candidate(run: ResolutionRun, match: TierMatch) -> MatchCandidate:
    return MatchCandidate(
        run=run,
        organization_id=run.organization_id,
        source_a_type=match.record_a.source_type,
        source_a_id=match.record_a.record_id,
        source_a_label=match.record_a.label[:255],
        source_b_type=match.record_b.source_type,
        source_b_id=match.record_b.record_id,
        source_b_label=match.record_b.label[:255],
        match_tier=match.tier.priority,
        tier=match.tier,
        confidence=match.confidence,
        match_signals=list(match.signals),
        matched_on=match.matched_on[:500],
        needs_review=match.needs_review,
        status=CandidateStatus.PENDING,
    )


class WaterfallResolver:
    """Compute identity-resolution candidates for a tenant."""

    def __init__(
        self,
        session: Session | None = None,
        *,
        store: RecordStore | None = None,
        audit: AuditLogSink | None = None,
        tiers: Sequence[TierDefinition] = DEFAULT_TIERS,
    ):
        self.session = session or db.session
        self.store = store or RecordStore(self.session)
        self.audit = audit or AuditLogSink(self.session)
        self.tiers = tuple(tiers)

    def compute(
        self,
        organization_id: int,
        actor_id: str | None = None,
        *,
        sources: Sequence[SourceType] | None = None,
        settings: MatchSettings | None = None,
    ) -> ComputeResult:
        """
        Run the waterfall and stage a new ``pending_review`` run.

        Raises:
            ValidationError: unknown or inactive organization.
            SourceReadError: a configured source failed to load; a ``failed``
                run records the failure and no candidates are persisted.
        """
        org_id = require_organization(organization_id, self.session)
        started = time.perf_counter()
        source_types = tuple(sources) if sources else get_configured_sources()
        settings = settings or build_match_settings(org_id)

        try:
            snapshot = self.store.load_snapshot(org_id, source_types)
        except SourceReadError as exc:
            self.session.rollback()
            self._record_failure(org_id, actor_id, exc, started, failed_source=exc.source)
            raise

        records: list[SourceRecord] = [record for source_type in source_types for record in snapshot[source_type]]
        tier_results = run_waterfall(records, tiers=self.tiers, settings=settings)
        matches = [match for result in tier_results for match in result.matches]

        by_tier = [
            TierStats(
                tier=result.tier.value,
                priority=result.tier.priority,
                count=result.count,
                needs_review=sum(1 for match in result.matches if match.needs_review),
            )
            for result in tier_results
        ]
        records_by_source = {source_type.value: len(snapshot[source_type]) for source_type in source_types}
        unique_emails = len({record.email for record in records if record.email})
        needs_review_count = sum(stats.needs_review for stats in by_tier)

        run = ResolutionRun(
            organization_id=org_id,
            status=ResolutionRunStatus.PENDING_REVIEW,
            computed_at=_utcnow(),
            created_by=actor_id,
        )
        try:
            self.session.add(run)
            self.session.flush()
            self.store.insert_candidates(
                [_to_candidate(run, match) for match in matches],
                batch_size=get_candidate_batch_size(),
            )
            duration_ms = int((time.perf_counter() - started) * 1000)
            result = ComputeResult(
                run_id=run.id,
                status=ResolutionRunStatus.PENDING_REVIEW.value,
                total_records_scanned=len(records),
                unique_emails=unique_emails,
                total_candidates=len(matches),
                by_tier=by_tier,
                needs_review_count=needs_review_count,
                duration_ms=duration_ms,
                sources=[name for name, count in records_by_source.items() if count],
                records_by_source=records_by_source,
            )
            run.stats_json = {"compute": result.as_dict()}
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            self._record_failure(org_id, actor_id, exc, started)
            raise

        IdentityMonitoring.record_compute(
            status=result.status,
            duration_seconds=duration_ms / 1000.0,
            by_tier={stats.tier: stats.count for stats in by_tier},
        )
        current_app.logger.info(
            "Identity resolution computed",
            extra={
                "identity_run_id": run.id,
                "organization_id": org_id,
                "identity_records_scanned": result.total_records_scanned,
                "identity_candidates": result.total_candidates,
                "identity_needs_review": needs_review_count,
                "identity_duration_ms": duration_ms,
            },
        )
        self._emit_audit(
            organization_id=org_id,
            actor_id=actor_id,
            action="identity_resolution_compute",
            level="info",
            message=(
                f"Identity resolution computed in {duration_ms}ms: {result.total_records_scanned} records scanned, "
                f"{result.total_candidates} candidates found across {sum(1 for s in by_tier if s.count)} tiers"
            ),
            details={
                "run_id": run.id,
                "duration_ms": duration_ms,
                "total_records_scanned": result.total_records_scanned,
                "total_candidates": result.total_candidates,
                "by_tier": {stats.tier: stats.count for stats in by_tier},
                "needs_review": needs_review_count,
            },
        )
        return result

    def _record_failure(
        self,
        organization_id: int,
        actor_id: str | None,
        exc: Exception,
        started: float,
        *,
        failed_source: str | None = None,
    ) -> ResolutionRun | None:
        """Leave a terminal ``failed`` run behind so the aborted compute is visible in run history."""
        duration_ms = int((time.perf_counter() - started) * 1000)
        run = ResolutionRun(
            organization_id=organization_id,
            status=ResolutionRunStatus.FAILED,
            computed_at=_utcnow(),
            created_by=actor_id,
            error_summary=str(exc)[:2000],
            stats_json={"compute": {"failed_source": failed_source, "duration_ms": duration_ms}},
        )
        try:
            self.session.add(run)
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            current_app.logger.error(
                "Could not record failed identity resolution run",
                exc_info=True,
                extra={"organization_id": organization_id},
            )
            run = None

        IdentityMonitoring.record_compute(status=ResolutionRunStatus.FAILED.value, duration_seconds=duration_ms / 1000.0)
        current_app.logger.error(
            "Identity resolution compute failed",
            extra={
                "organization_id": organization_id,
                "identity_run_id": run.id if run else None,
                "identity_failed_source": failed_source,
                "identity_error": str(exc),
            },
        )
        self._emit_audit(
            organization_id=organization_id,
            actor_id=actor_id,
            action="identity_resolution_compute",
            level="error",
            message=f"Identity resolution compute failed: {exc}",
            details={"run_id": run.id if run else None, "failed_source": failed_source},
        )
        return run

    def _emit_audit(self, **event: Any) -> None:
        try:
            self.audit.record(**event)
        except Exception:
            current_app.logger.warning("Audit sink raised; ignoring", exc_info=True)


def compute_resolution(organization_id: int, actor_id: str | None = None, **kwargs: Any) -> ComputeResult:
    """Convenience wrapper around ``WaterfallResolver.compute``."""
    return WaterfallResolver().compute(organization_id, actor_id, **kwargs)
