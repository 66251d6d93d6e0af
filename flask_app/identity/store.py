"""
Record store adapter for identity resolution.

Maps each connector's source table onto a common ``SourceRecord`` snapshot,
and owns the guarded writes the resolver relies on: batched candidate inserts
and conditional run-status transitions.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Iterable, Mapping, Sequence

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from flask_app.identity.errors import SourceReadError
from flask_app.identity.pipeline.normalize import (
    canonical_email,
    email_domain,
    normalize_company,
    normalize_email,
    normalize_name,
    normalize_phone,
    normalize_postal_code,
    split_full_name,
)
from flask_app.models import (
    SAME_PERSON_RELATION,
    CrmContact,
    EcomCustomer,
    EmailProfile,
    GraphEdge,
    MatchCandidate,
    ResolutionRun,
    ResolutionRunStatus,
    SourceType,
    db,
)

DEFAULT_BATCH_SIZE = 500


@dataclass(frozen=True)
class SourceRecord:
    """Normalized, read-only view of one synced person record."""

    source_type: SourceType
    record_id: int
    organization_id: int
    label: str
    email: str | None = None
    canonical_email: str | None = None
    email_domain: str | None = None
    phone: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    company: str | None = None
    city: str | None = None
    postal_code: str | None = None
    address_line1: str | None = None
    sublabel: str | None = None

    @property
    def key(self) -> str:
        return f"{self.source_type.value}:{self.record_id}"

    @property
    def full_name(self) -> str | None:
        if not self.last_name:
            return None
        return " ".join(part for part in (self.first_name, self.last_name) if part)


def _name_parts(first: object | None, last: object | None) -> tuple[str | None, str | None]:
    first_norm = normalize_name(first)
    last_norm = normalize_name(last)
    if first_norm is None and last_norm and " " in last_norm:
        return split_full_name(last_norm)
    if last_norm is None and first_norm and " " in first_norm:
        return split_full_name(first_norm)
    return first_norm, last_norm


def _display_label(first: object | None, last: object | None, email: object | None, fallback: str) -> str:
    name = " ".join(str(part).strip() for part in (first, last) if part and str(part).strip())
    if name:
        return name
    if email and str(email).strip():
        return str(email).strip()
    return fallback


def _build_record(
    source_type: SourceType,
    row: Any,
    *,
    first: object | None,
    last: object | None,
    email: object | None,
    phone: object | None,
    company: object | None,
    city: object | None,
    postal_code: object | None,
    address_line1: object | None,
    fallback_label: str,
    sublabel: str | None = None,
) -> SourceRecord:
    first_name, last_name = _name_parts(first, last)
    return SourceRecord(
        source_type=source_type,
        record_id=row.id,
        organization_id=row.organization_id,
        label=_display_label(first, last, email, fallback_label),
        email=normalize_email(email),
        canonical_email=canonical_email(email),
        email_domain=email_domain(email),
        phone=normalize_phone(phone),
        first_name=first_name,
        last_name=last_name,
        company=normalize_company(company),
        city=normalize_name(city),
        postal_code=normalize_postal_code(postal_code),
        address_line1=normalize_name(address_line1),
        sublabel=sublabel,
    )


def _extract_crm_contact(row: CrmContact) -> SourceRecord:
    return _build_record(
        SourceType.CRM,
        row,
        first=row.first_name,
        last=row.last_name,
        email=row.email,
        phone=row.phone,
        company=row.company_name,
        city=row.city,
        postal_code=row.postal_code,
        address_line1=row.address_line1,
        fallback_label="Unknown Contact",
        sublabel=row.job_title or row.lifecycle_stage,
    )


def _extract_ecom_customer(row: EcomCustomer) -> SourceRecord:
    address: Mapping[str, Any] = row.default_address or {}
    return _build_record(
        SourceType.ECOM,
        row,
        first=row.first_name,
        last=row.last_name,
        email=row.email,
        phone=row.phone or address.get("phone"),
        company=address.get("company"),
        city=address.get("city"),
        postal_code=address.get("zip"),
        address_line1=address.get("address1"),
        fallback_label="Unknown Customer",
        sublabel=f"{row.orders_count} orders" if row.orders_count else None,
    )


def _extract_email_profile(row: EmailProfile) -> SourceRecord:
    location: Mapping[str, Any] = row.location or {}
    return _build_record(
        SourceType.EMAIL_PLATFORM,
        row,
        first=row.first_name,
        last=row.last_name,
        email=row.email,
        phone=row.phone_number,
        company=row.organization,
        city=location.get("city"),
        postal_code=location.get("zip"),
        address_line1=location.get("address1"),
        fallback_label="Unknown Subscriber",
        sublabel=row.subscription_status,
    )


@dataclass(frozen=True)
class SourceDefinition:
    """How one source table is read and projected into ``SourceRecord``s."""

    source_type: SourceType
    model: type
    table: str
    connector: str
    extract: Callable[[Any], SourceRecord]


SOURCE_DEFINITIONS: dict[SourceType, SourceDefinition] = {
    SourceType.CRM: SourceDefinition(SourceType.CRM, CrmContact, "crm_contacts", "hubspot", _extract_crm_contact),
    SourceType.ECOM: SourceDefinition(
        SourceType.ECOM, EcomCustomer, "ecom_customers", "shopify", _extract_ecom_customer
    ),
    SourceType.EMAIL_PLATFORM: SourceDefinition(
        SourceType.EMAIL_PLATFORM, EmailProfile, "email_profiles", "klaviyo", _extract_email_profile
    ),
}


def resolve_source_types(configured: Iterable[str | SourceType] | None) -> tuple[SourceType, ...]:
    """Map configured source names to ``SourceType``s, keeping order and raising on unknowns."""

    if not configured:
        return tuple(SOURCE_DEFINITIONS)
    resolved: list[SourceType] = []
    unknown: list[str] = []
    for item in configured:
        try:
            source_type = item if isinstance(item, SourceType) else SourceType(str(item).strip().lower())
        except ValueError:
            unknown.append(str(item))
            continue
        if source_type not in resolved:
            resolved.append(source_type)
    if unknown:
        raise ValueError("Unknown identity sources configured: " + ", ".join(sorted(unknown)))
    return tuple(resolved)


class RecordStore:
    """Tenant-scoped reads and guarded writes used by the resolution services."""

    def __init__(self, session: Session | None = None, definitions: Mapping[SourceType, SourceDefinition] | None = None):
        self.session = session or db.session
        self.definitions = dict(definitions or SOURCE_DEFINITIONS)

    def definition_for(self, source_type: SourceType) -> SourceDefinition:
        return self.definitions[source_type]

    def load_records(self, organization_id: int, source_type: SourceType) -> list[SourceRecord]:
        """
        Read every record of one source for a tenant.

        Raises:
            SourceReadError: if the query or the projection fails.
        """
        definition = self.definition_for(source_type)
        try:
            rows = self.session.scalars(
                select(definition.model)
                .where(definition.model.organization_id == organization_id)
                .order_by(definition.model.id.asc())
            ).all()
            return [definition.extract(row) for row in rows]
        except SQLAlchemyError as exc:
            raise SourceReadError(definition.table, str(exc)) from exc
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            raise SourceReadError(definition.table, f"could not normalize row: {exc}") from exc

    def load_snapshot(
        self, organization_id: int, source_types: Sequence[SourceType]
    ) -> dict[SourceType, list[SourceRecord]]:
        """Load all sources up front; the first failing source aborts the whole read."""
        return {source_type: self.load_records(organization_id, source_type) for source_type in source_types}

    def count_records(self, organization_id: int, source_type: SourceType) -> int:
        model = self.definition_for(source_type).model
        return int(
            self.session.scalar(
                select(func.count()).select_from(model).where(model.organization_id == organization_id)
            )
            or 0
        )

    def count_active_identity_edges(self, organization_id: int) -> int:
        return int(
            self.session.scalar(
                select(func.count())
                .select_from(GraphEdge)
                .where(
                    GraphEdge.organization_id == organization_id,
                    GraphEdge.relation_type == SAME_PERSON_RELATION,
                    GraphEdge.valid_until.is_(None),
                )
            )
            or 0
        )

    def insert_candidates(self, candidates: Sequence[MatchCandidate], *, batch_size: int = DEFAULT_BATCH_SIZE) -> int:
        """Add candidates in flush-sized batches; the caller owns the transaction."""
        size = max(1, batch_size)
        for start in range(0, len(candidates), size):
            self.session.add_all(candidates[start : start + size])
            self.session.flush()
        return len(candidates)

    def transition_run(
        self,
        *,
        run_id: int,
        organization_id: int,
        expected: Iterable[ResolutionRunStatus],
        new_status: ResolutionRunStatus,
        **values: Any,
    ) -> bool:
        """
        Move a run to ``new_status`` only if it is currently in one of ``expected``.

        The status check and the write happen in one UPDATE statement, so two
        concurrent callers cannot both succeed. Returns True when the row moved.
        """
        expected_statuses = tuple(expected)
        result = self.session.execute(
            update(ResolutionRun)
            .where(
                ResolutionRun.id == run_id,
                ResolutionRun.organization_id == organization_id,
                ResolutionRun.status.in_(expected_statuses),
            )
            .values(status=new_status, **values)
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount == 1
