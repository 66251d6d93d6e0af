"""Resolution triggered after a connector sync, with tenant-configured auto-apply."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any

from flask import current_app
from sqlalchemy import select

from flask_app.identity.pipeline.applier import ApplyResult, ResolutionApplier
from flask_app.identity.pipeline.resolver import WaterfallResolver
from flask_app.identity.settings import get_auto_apply_settings
from flask_app.models import CandidateStatus, MatchCandidate, db

SYSTEM_ACTOR = "system:post-sync"


@dataclass(slots=True)
class PostSyncResult:
    run_id: int
    total_candidates: int
    auto_applied: int
    pending_review: int
    auto_apply_enabled: bool
    auto_apply_threshold: float
    apply: dict[str, Any] | None = None

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


def trigger_post_sync_resolution(organization_id: int, actor_id: str | None = None) -> PostSyncResult:
    """
    Compute a fresh run and auto-apply its confident candidates.

    Only candidates at or above the tenant's auto-apply threshold that do not
    need review are applied; everything else stays ``pending``. When nothing
    qualifies the run is left in ``pending_review`` for a human.
    """
    session = db.session
    actor = actor_id or SYSTEM_ACTOR
    computed = WaterfallResolver(session).compute(organization_id, actor)
    enabled, threshold = get_auto_apply_settings(int(organization_id))

    qualifying: list[int] = []
    if enabled and computed.total_candidates:
        qualifying = list(
            session.scalars(
                select(MatchCandidate.id).where(
                    MatchCandidate.run_id == computed.run_id,
                    MatchCandidate.status == CandidateStatus.PENDING,
                    MatchCandidate.needs_review.is_(False),
                    MatchCandidate.confidence >= threshold,
                )
            )
        )

    applied: ApplyResult | None = None
    if qualifying:
        applied = ResolutionApplier(session).apply(organization_id, computed.run_id, actor, accepted_ids=qualifying)

    auto_applied = applied.candidates_applied if applied else 0
    result = PostSyncResult(
        run_id=computed.run_id,
        total_candidates=computed.total_candidates,
        auto_applied=auto_applied,
        pending_review=computed.total_candidates - len(qualifying),
        auto_apply_enabled=enabled,
        auto_apply_threshold=threshold,
        apply=applied.as_dict() if applied else None,
    )
    current_app.logger.info(
        "Post-sync identity resolution finished",
        extra={
            "identity_run_id": result.run_id,
            "organization_id": organization_id,
            "identity_candidates": result.total_candidates,
            "identity_auto_applied": auto_applied,
            "identity_pending_review": result.pending_review,
        },
    )
    return result
