"""
Error taxonomy for identity resolution.

Routes translate these into JSON responses via ``http_status``; services raise
them directly and never retry.
"""

from __future__ import annotations

from http import HTTPStatus


class IdentityResolutionError(Exception):
    """Base class for resolution failures surfaced to callers."""

    http_status = HTTPStatus.INTERNAL_SERVER_ERROR
    code = "identity_error"

    def to_dict(self) -> dict:
        return {"error": str(self), "code": self.code}


class ValidationError(IdentityResolutionError):
    """Required input is missing or malformed."""

    http_status = HTTPStatus.BAD_REQUEST
    code = "validation_error"


class NotFoundError(IdentityResolutionError):
    """Referenced run does not exist for the tenant."""

    http_status = HTTPStatus.NOT_FOUND
    code = "not_found"


class StateConflictError(IdentityResolutionError):
    """Operation is invalid for the run's current status."""

    http_status = HTTPStatus.CONFLICT
    code = "state_conflict"

    def __init__(self, message: str, *, current_status: str | None = None):
        super().__init__(message)
        self.current_status = current_status

    def to_dict(self) -> dict:
        payload = super().to_dict()
        payload["current_status"] = self.current_status
        return payload


class SourceReadError(IdentityResolutionError):
    """A configured source could not be read; compute is aborted."""

    http_status = HTTPStatus.BAD_GATEWAY
    code = "source_read_error"

    def __init__(self, source: str, reason: str):
        super().__init__(f"Failed to read source '{source}': {reason}")
        self.source = source
        self.reason = reason

    def to_dict(self) -> dict:
        payload = super().to_dict()
        payload["source"] = self.source
        return payload


class PartialApplyError(IdentityResolutionError):
    """A single candidate failed during apply.

    Apply catches these per candidate and folds them into its error tally;
    they never escape ``apply_resolution``.
    """

    code = "partial_apply_error"

    def __init__(self, candidate_id: int, reason: str):
        super().__init__(f"Candidate {candidate_id} could not be applied: {reason}")
        self.candidate_id = candidate_id
        self.reason = reason
