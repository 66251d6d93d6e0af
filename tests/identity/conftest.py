from __future__ import annotations

import pytest

from flask_app.identity.store import SourceRecord
from flask_app.identity.pipeline.normalize import (
    canonical_email,
    email_domain,
    normalize_company,
    normalize_email,
    normalize_name,
    normalize_phone,
    normalize_postal_code,
)
from flask_app.models import CrmContact, EcomCustomer, EmailProfile, SourceType, db


def make_record(source_type: SourceType, record_id: int, **fields) -> SourceRecord:
    """Build a normalized ``SourceRecord`` without touching the database."""
    email = fields.get("email")
    return SourceRecord(
        source_type=source_type,
        record_id=record_id,
        organization_id=fields.get("organization_id", 1),
        label=fields.get("label") or f"{source_type.value}-{record_id}",
        email=normalize_email(email),
        canonical_email=canonical_email(email),
        email_domain=email_domain(email),
        phone=normalize_phone(fields.get("phone")),
        first_name=normalize_name(fields.get("first_name")),
        last_name=normalize_name(fields.get("last_name")),
        company=normalize_company(fields.get("company")),
        city=normalize_name(fields.get("city")),
        postal_code=normalize_postal_code(fields.get("postal_code")),
        address_line1=normalize_name(fields.get("address_line1")),
    )


@pytest.fixture
def record():
    return make_record


@pytest.fixture
def crm_contact_factory(test_organization):
    counter = {"value": 0}

    def _factory(*, organization=None, **fields) -> CrmContact:
        counter["value"] += 1
        contact = CrmContact(
            organization_id=(organization or test_organization).id,
            external_id=fields.pop("external_id", f"hs-{counter['value']}"),
            **fields,
        )
        db.session.add(contact)
        db.session.commit()
        return contact

    return _factory


@pytest.fixture
def ecom_customer_factory(test_organization):
    counter = {"value": 0}

    def _factory(*, organization=None, **fields) -> EcomCustomer:
        counter["value"] += 1
        customer = EcomCustomer(
            organization_id=(organization or test_organization).id,
            external_id=fields.pop("external_id", f"shop-{counter['value']}"),
            orders_count=fields.pop("orders_count", 0),
            **fields,
        )
        db.session.add(customer)
        db.session.commit()
        return customer

    return _factory


@pytest.fixture
def email_profile_factory(test_organization):
    counter = {"value": 0}

    def _factory(*, organization=None, **fields) -> EmailProfile:
        counter["value"] += 1
        profile = EmailProfile(
            organization_id=(organization or test_organization).id,
            external_id=fields.pop("external_id", f"kl-{counter['value']}"),
            **fields,
        )
        db.session.add(profile)
        db.session.commit()
        return profile

    return _factory


@pytest.fixture
def shared_email_pair(crm_contact_factory, ecom_customer_factory):
    """A CRM contact and a store customer with the same address: one exact-email candidate."""
    contact = crm_contact_factory(first_name="Ada", last_name="Lovelace", email="ada@example.com")
    customer = ecom_customer_factory(first_name="Ada", last_name="Lovelace", email="ADA@example.com ")
    return contact, customer
