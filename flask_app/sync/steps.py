"""
Import steps: upsert connector payload rows into the source record tables.

Rows are keyed by their extracted external id. A row without one is skipped,
a row whose mapped fields did not change is skipped, and a row that fails to
write is rolled back on its own savepoint and counted as an error.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Mapping

from flask import current_app
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from flask_app.identity.pipeline.applier import ensure_graph_node
from flask_app.identity.store import SOURCE_DEFINITIONS
from flask_app.models import SOURCE_MODELS, SourceType, db
from flask_app.sync.extract import (
    ID_COLUMNS,
    extract_decimal,
    extract_external_id,
    extract_int,
    extract_mapping,
    first_present,
)

SUBSCRIPTION_STATUSES = {
    "subscribed": "subscribed",
    "unsubscribed": "unsubscribed",
    "never_subscribed": "never_subscribed",
    "suppressed": "unsubscribed",
}


@dataclass(slots=True)
class StepCounters:
    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


def _truncate(value: str | None, length: int) -> str | None:
    return value[:length] if value else value


def map_crm_contact(row: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "first_name": _truncate(first_present(row, ("firstname", "first_name")), 120),
        "last_name": _truncate(first_present(row, ("lastname", "last_name")), 120),
        "email": _truncate(first_present(row, ("email", "hs_email")), 255),
        "phone": _truncate(first_present(row, ("phone", "mobilephone")), 50),
        "company_name": _truncate(first_present(row, ("company", "company_name")), 255),
        "job_title": _truncate(first_present(row, ("jobtitle", "job_title")), 255),
        "lifecycle_stage": _truncate(first_present(row, ("lifecyclestage", "lifecycle_stage")), 50),
        "city": _truncate(first_present(row, ("city",)), 120),
        "postal_code": _truncate(first_present(row, ("zip", "postal_code")), 20),
        "address_line1": _truncate(first_present(row, ("address", "address_line1")), 255),
    }


def map_ecom_customer(row: Mapping[str, Any]) -> dict[str, Any]:
    address = extract_mapping(row, ("default_address", "defaultAddress"))
    if address:
        address = {key: address.get(key) for key in ("address1", "city", "zip", "company", "country", "phone")}
    return {
        "first_name": _truncate(first_present(row, ("first_name", "firstName")), 120),
        "last_name": _truncate(first_present(row, ("last_name", "lastName")), 120),
        "email": _truncate(first_present(row, ("email",)), 255),
        "phone": _truncate(first_present(row, ("phone",)), 50),
        "default_address": address,
        "orders_count": extract_int(row, ("orders_count", "numberOfOrders")),
        "total_spent": extract_decimal(row, ("total_spent", "amountSpent")),
    }


def map_email_profile(row: Mapping[str, Any]) -> dict[str, Any]:
    status = first_present(row, ("subscription_status", "consent"))
    location = extract_mapping(row, ("location",))
    if location:
        location = {key: location.get(key) for key in ("address1", "city", "zip", "region", "country")}
    return {
        "email": _truncate(first_present(row, ("email",)), 255),
        "phone_number": _truncate(first_present(row, ("phone_number", "phone")), 50),
        "first_name": _truncate(first_present(row, ("first_name",)), 120),
        "last_name": _truncate(first_present(row, ("last_name",)), 120),
        "organization": _truncate(first_present(row, ("organization", "company")), 255),
        "location": location,
        "subscription_status": SUBSCRIPTION_STATUSES.get(status.lower()) if status else None,
    }


ROW_MAPPERS: dict[SourceType, Callable[[Mapping[str, Any]], dict[str, Any]]] = {
    SourceType.CRM: map_crm_contact,
    SourceType.ECOM: map_ecom_customer,
    SourceType.EMAIL_PLATFORM: map_email_profile,
}


class SourceRecordImporter:
    """Upsert payload rows for one source type into its table."""

    def __init__(self, source_type: SourceType, session: Session | None = None):
        self.source_type = source_type
        self.session = session or db.session
        self.model = SOURCE_MODELS[source_type]
        self.mapper = ROW_MAPPERS[source_type]
        self.id_columns = ID_COLUMNS[source_type]

    def import_rows(self, organization_id: int, rows: Iterable[Mapping[str, Any]]) -> StepCounters:
        counters = StepCounters()
        now = datetime.now(timezone.utc)
        for row in rows:
            if not isinstance(row, Mapping):
                counters.skipped += 1
                continue
            external_id = extract_external_id(row, self.id_columns)
            if not external_id:
                counters.skipped += 1
                continue
            try:
                with self.session.begin_nested():
                    outcome = self._upsert(organization_id, external_id, row, now)
            except (SQLAlchemyError, ValueError):
                counters.errors += 1
                current_app.logger.warning(
                    f"Failed to import {self.source_type.value} row {external_id}",
                    exc_info=True,
                    extra={"organization_id": organization_id, "sync_source": self.source_type.value},
                )
                continue
            setattr(counters, outcome, getattr(counters, outcome) + 1)
        self.session.commit()
        return counters

    def _upsert(self, organization_id: int, external_id: str, row: Mapping[str, Any], now: datetime) -> str:
        values = self.mapper(row)
        record = self.session.scalar(
            select(self.model).where(
                self.model.organization_id == organization_id,
                self.model.external_id == external_id,
            )
        )
        if record is None:
            self.session.add(
                self.model(
                    organization_id=organization_id,
                    external_id=external_id,
                    raw_json=dict(row),
                    last_synced_at=now,
                    **values,
                )
            )
            self.session.flush()
            return "created"

        changed = {key: value for key, value in values.items() if getattr(record, key) != value}
        record.last_synced_at = now
        if not changed:
            return "skipped"
        for key, value in changed.items():
            setattr(record, key, value)
        record.raw_json = dict(row)
        self.session.flush()
        return "updated"


def sync_graph_nodes(organization_id: int, source_type: SourceType, session: Session | None = None) -> StepCounters:
    """Make sure every record of a source has its person node."""
    session = session or db.session
    definition = SOURCE_DEFINITIONS[source_type]
    counters = StepCounters()
    rows = session.scalars(
        select(definition.model).where(definition.model.organization_id == organization_id).order_by(definition.model.id)
    ).all()
    for row in rows:
        record = definition.extract(row)
        _, created = ensure_graph_node(
            session,
            organization_id,
            source_type,
            record.record_id,
            label=record.label,
            sublabel=record.sublabel,
        )
        if created:
            counters.created += 1
        else:
            counters.updated += 1
    session.commit()
    return counters
