"""
Read-side helpers for identity resolution: candidate listings, run history
and the per-tenant resolution summary.

Routes, CLI commands and tasks all go through these helpers so filtering and
serialization stay in one place.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from flask_app.identity.pipeline.guards import require_organization, require_run
from flask_app.identity.settings import get_configured_sources
from flask_app.identity.store import RecordStore
from flask_app.models import CandidateStatus, MatchCandidate, ResolutionRun, ResolutionRunStatus, db

DEFAULT_PAGE = 1
DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 500
DEFAULT_RUNS_LIMIT = 20
RECENT_RUNS_IN_SUMMARY = 5


@dataclass(frozen=True)
class CandidateFilters:
    """Validated pagination and filter options for a candidate listing."""

    page: int = DEFAULT_PAGE
    page_size: int = DEFAULT_PAGE_SIZE
    statuses: tuple[CandidateStatus, ...] = field(default_factory=tuple)
    needs_review: bool | None = None

    @classmethod
    def coerce(
        cls,
        *,
        page: int | str | None = None,
        page_size: int | str | None = None,
        status: str | Iterable[str] | None = None,
        needs_review: str | bool | None = None,
        default_page_size: int = DEFAULT_PAGE_SIZE,
        max_page_size: int = MAX_PAGE_SIZE,
    ) -> "CandidateFilters":
        resolved_page = _coerce_positive_int(page, fallback=DEFAULT_PAGE)
        resolved_size = min(_coerce_positive_int(page_size, fallback=default_page_size), max_page_size)

        raw_statuses: Iterable[str]
        if status is None or status == "":
            raw_statuses = ()
        elif isinstance(status, str):
            raw_statuses = status.split(",")
        else:
            raw_statuses = status
        resolved_statuses: list[CandidateStatus] = []
        for value in raw_statuses:
            if value is None or str(value).strip() == "":
                continue
            candidate_status = _coerce_status(value)
            if candidate_status not in resolved_statuses:
                resolved_statuses.append(candidate_status)

        return cls(
            page=resolved_page,
            page_size=resolved_size,
            statuses=tuple(resolved_statuses),
            needs_review=_coerce_optional_bool(needs_review),
        )


@dataclass(slots=True)
class CandidateListResult:
    items: list[dict[str, Any]]
    total: int
    page: int
    page_size: int
    total_pages: int

    def as_dict(self) -> dict[str, Any]:
        return {
            "candidates": self.items,
            "total": self.total,
            "page": self.page,
            "page_size": self.page_size,
            "total_pages": self.total_pages,
        }


def serialize_candidate(candidate: MatchCandidate) -> dict[str, Any]:
    return {
        "id": candidate.id,
        "run_id": candidate.run_id,
        "source_a": {
            "type": candidate.source_a_type.value,
            "id": candidate.source_a_id,
            "label": candidate.source_a_label,
        },
        "source_b": {
            "type": candidate.source_b_type.value,
            "id": candidate.source_b_id,
            "label": candidate.source_b_label,
        },
        "match_tier": candidate.match_tier,
        "tier": candidate.tier.value,
        "confidence": candidate.confidence,
        "match_signals": list(candidate.match_signals or []),
        "matched_on": candidate.matched_on,
        "needs_review": candidate.needs_review,
        "status": candidate.status.value,
        "graph_edge_id": candidate.graph_edge_id,
        "decided_at": _isoformat(candidate.decided_at),
        "decided_by": candidate.decided_by,
    }


def serialize_run(run: ResolutionRun, *, include_stats: bool = True) -> dict[str, Any]:
    payload = {
        "id": run.id,
        "organization_id": run.organization_id,
        "status": run.status.value,
        "computed_at": _isoformat(run.computed_at),
        "applied_at": _isoformat(run.applied_at),
        "reversed_at": _isoformat(run.reversed_at),
        "created_by": run.created_by,
        "applied_by": run.applied_by,
        "error_summary": run.error_summary,
        "is_reversible": run.is_reversible,
    }
    if include_stats:
        payload["stats"] = run.stats_json or {}
    return payload


class CandidateService:
    """Tenant-scoped queries over runs and their candidates."""

    def __init__(self, session: Session | None = None, *, store: RecordStore | None = None) -> None:
        self.session: Session = session or db.session
        self.store = store or RecordStore(self.session)

    def list_candidates(self, organization_id: int, run_id: int, filters: CandidateFilters) -> CandidateListResult:
        """Candidates of one run, ordered by tier ascending then confidence descending."""
        org_id = require_organization(organization_id, self.session)
        run = require_run(self.session, org_id, run_id)

        predicates = [MatchCandidate.run_id == run.id, MatchCandidate.organization_id == org_id]
        if filters.statuses:
            predicates.append(MatchCandidate.status.in_(filters.statuses))
        if filters.needs_review is not None:
            predicates.append(MatchCandidate.needs_review.is_(filters.needs_review))

        total = int(self.session.scalar(select(func.count()).select_from(MatchCandidate).where(*predicates)) or 0)
        if total == 0:
            return CandidateListResult(items=[], total=0, page=filters.page, page_size=filters.page_size, total_pages=0)

        rows = self.session.scalars(
            select(MatchCandidate)
            .where(*predicates)
            .order_by(MatchCandidate.match_tier.asc(), MatchCandidate.confidence.desc(), MatchCandidate.id.asc())
            .offset((filters.page - 1) * filters.page_size)
            .limit(filters.page_size)
        ).all()
        total_pages = (total + filters.page_size - 1) // filters.page_size
        return CandidateListResult(
            items=[serialize_candidate(candidate) for candidate in rows],
            total=total,
            page=filters.page,
            page_size=filters.page_size,
            total_pages=total_pages,
        )

    def list_runs(
        self,
        organization_id: int,
        *,
        limit: int = DEFAULT_RUNS_LIMIT,
        statuses: Iterable[ResolutionRunStatus] | None = None,
    ) -> list[ResolutionRun]:
        org_id = require_organization(organization_id, self.session)
        stmt = select(ResolutionRun).where(ResolutionRun.organization_id == org_id)
        if statuses:
            stmt = stmt.where(ResolutionRun.status.in_(tuple(statuses)))
        stmt = stmt.order_by(ResolutionRun.computed_at.desc(), ResolutionRun.id.desc()).limit(max(1, limit))
        return list(self.session.scalars(stmt))

    def get_run(self, organization_id: int, run_id: int) -> ResolutionRun:
        org_id = require_organization(organization_id, self.session)
        return require_run(self.session, org_id, run_id)

    def candidate_status_counts(self, run_id: int) -> dict[str, int]:
        rows = self.session.execute(
            select(MatchCandidate.status, func.count()).where(MatchCandidate.run_id == run_id).group_by(MatchCandidate.status)
        ).all()
        counts = {status.value: 0 for status in CandidateStatus}
        for status, count in rows:
            counts[status.value] = int(count)
        return counts

    def get_resolution_summary(self, organization_id: int) -> dict[str, Any]:
        """
        Dashboard summary for a tenant.

        Unique people are estimated as total records minus active
        ``same_person`` edges; each edge collapses one duplicate. Chains of
        more than two records make this an upper bound.
        """
        org_id = require_organization(organization_id, self.session)

        source_counts = {
            source_type.value: self.store.count_records(org_id, source_type) for source_type in get_configured_sources()
        }
        total_records = sum(source_counts.values())
        active_edges = self.store.count_active_identity_edges(org_id)

        latest_pending = self.session.scalar(
            select(ResolutionRun)
            .where(
                ResolutionRun.organization_id == org_id,
                ResolutionRun.status == ResolutionRunStatus.PENDING_REVIEW,
            )
            .order_by(ResolutionRun.computed_at.desc(), ResolutionRun.id.desc())
            .limit(1)
        )
        recent_runs = self.list_runs(org_id, limit=RECENT_RUNS_IN_SUMMARY)

        return {
            "organization_id": org_id,
            "sources": source_counts,
            "sources_present": [name for name, count in source_counts.items() if count > 0],
            "total_records": total_records,
            "active_identity_edges": active_edges,
            "estimated_unique_people": max(total_records - active_edges, 0),
            "pending_run": serialize_run(latest_pending) if latest_pending is not None else None,
            "recent_runs": [serialize_run(run, include_stats=False) for run in recent_runs],
        }


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _coerce_positive_int(candidate: int | str | None, *, fallback: int) -> int:
    if candidate in (None, ""):
        return fallback
    if isinstance(candidate, bool):
        raise ValueError(f"Expected positive integer for pagination, received '{candidate}'.")
    if isinstance(candidate, int):
        return max(1, candidate)
    if isinstance(candidate, str) and candidate.strip().isdigit():
        return max(1, int(candidate.strip()))
    raise ValueError(f"Expected positive integer for pagination, received '{candidate}'.")


def _coerce_status(value: str | CandidateStatus) -> CandidateStatus:
    if isinstance(value, CandidateStatus):
        return value
    normalized = str(value).strip().lower()
    try:
        return CandidateStatus(normalized)
    except ValueError:
        raise ValueError(f"Unsupported candidate status filter '{value}'.") from None


def _coerce_optional_bool(candidate: str | bool | None) -> bool | None:
    if candidate is None or candidate == "":
        return None
    if isinstance(candidate, bool):
        return candidate
    normalized = str(candidate).strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Unable to interpret boolean value '{candidate}'.")
