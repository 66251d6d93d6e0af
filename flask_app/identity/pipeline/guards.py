"""Input guards shared by the resolution services."""

from __future__ import annotations

from typing import Any, Iterable

from sqlalchemy.orm import Session

from flask_app.identity.errors import NotFoundError, ValidationError
from flask_app.models import Organization, ResolutionRun, db


def coerce_id(value: Any, name: str) -> int:
    if value is None or value == "" or isinstance(value, bool):
        raise ValidationError(f"{name} is required")
    try:
        number = int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{name} must be an integer, got {value!r}") from exc
    if number <= 0:
        raise ValidationError(f"{name} must be positive, got {number}")
    return number


def coerce_id_list(values: Iterable[Any] | None, name: str) -> list[int] | None:
    """``None`` stays ``None`` (no selection); anything else must be a list of ids."""
    if values is None:
        return None
    if isinstance(values, (str, bytes)) or not hasattr(values, "__iter__"):
        raise ValidationError(f"{name} must be a list of candidate ids")
    return [coerce_id(value, name) for value in values]


def require_organization(organization_id: Any, session: Session | None = None) -> int:
    """Validate a tenant id and make sure the organization exists and is active."""
    org_id = coerce_id(organization_id, "organization_id")
    session = session or db.session
    organization = session.get(Organization, org_id)
    if organization is None or not organization.is_active:
        raise ValidationError(f"Organization {org_id} does not exist or is inactive")
    return org_id


def require_run(session: Session, organization_id: int, run_id: Any) -> ResolutionRun:
    """Fetch a run scoped to the tenant; other tenants' runs are reported as missing."""
    run_pk = coerce_id(run_id, "run_id")
    run = session.get(ResolutionRun, run_pk)
    if run is None or run.organization_id != organization_id:
        raise NotFoundError(f"Resolution run {run_pk} not found")
    return run
