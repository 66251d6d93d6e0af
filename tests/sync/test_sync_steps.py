from decimal import Decimal

import pytest

from flask_app.models import CrmContact, EcomCustomer, EmailProfile, GraphNode, SourceType, db
from flask_app.sync import steps as steps_module
from flask_app.sync.steps import SourceRecordImporter, map_email_profile, sync_graph_nodes

pytestmark = pytest.mark.integration


def test_crm_rows_are_created_then_updated_then_skipped(test_organization):
    importer = SourceRecordImporter(SourceType.CRM)
    row = {"id": "hs-1", "properties": {"firstname": "Ada", "lastname": "Lovelace", "email": "ada@example.com"}}

    first = importer.import_rows(test_organization.id, [row])
    assert first.as_dict() == {"created": 1, "updated": 0, "skipped": 0, "errors": 0}

    changed = {"id": "hs-1", "properties": {"firstname": "Ada", "lastname": "King", "email": "ada@example.com"}}
    second = importer.import_rows(test_organization.id, [changed])
    assert second.updated == 1

    third = importer.import_rows(test_organization.id, [changed])
    assert third.skipped == 1

    contact = db.session.query(CrmContact).one()
    assert contact.last_name == "King"
    assert contact.raw_json == changed
    assert contact.last_synced_at is not None


def test_rows_without_an_id_are_skipped(test_organization):
    counters = SourceRecordImporter(SourceType.CRM).import_rows(
        test_organization.id, [{"email": "ghost@example.com"}, "not-a-row", {"id": "hs-2"}]
    )

    assert counters.skipped == 2
    assert counters.created == 1


def test_same_external_id_in_two_tenants(test_organization, other_organization):
    importer = SourceRecordImporter(SourceType.ECOM)
    importer.import_rows(test_organization.id, [{"id": 1, "email": "a@x.com"}])
    counters = importer.import_rows(other_organization.id, [{"id": 1, "email": "a@x.com"}])

    assert counters.created == 1
    assert db.session.query(EcomCustomer).count() == 2


def test_ecom_mapping(test_organization):
    row = {
        "id": 5,
        "first_name": "Grace",
        "email": "grace@navy.mil",
        "orders_count": 4,
        "total_spent": "120.50",
        "default_address": {"address1": "1 Yard St", "city": "Arlington", "zip": "22202", "province": "VA"},
    }
    SourceRecordImporter(SourceType.ECOM).import_rows(test_organization.id, [row])

    customer = db.session.query(EcomCustomer).one()
    assert customer.orders_count == 4
    assert customer.total_spent == Decimal("120.50")
    assert customer.default_address["city"] == "Arlington"
    assert "province" not in customer.default_address


def test_email_profile_subscription_status_mapping():
    assert map_email_profile({"subscription_status": "SUPPRESSED"})["subscription_status"] == "unsubscribed"
    assert map_email_profile({"consent": "subscribed"})["subscription_status"] == "subscribed"
    assert map_email_profile({"subscription_status": "pending"})["subscription_status"] is None


def test_failing_row_is_counted_and_others_survive(monkeypatch, test_organization):
    original = steps_module.map_email_profile

    def picky_mapper(row):
        if row.get("email") == "bad@example.com":
            raise ValueError("unparseable profile")
        return original(row)

    monkeypatch.setitem(steps_module.ROW_MAPPERS, SourceType.EMAIL_PLATFORM, picky_mapper)

    counters = SourceRecordImporter(SourceType.EMAIL_PLATFORM).import_rows(
        test_organization.id,
        [{"id": "k1", "email": "good@example.com"}, {"id": "k2", "email": "bad@example.com"}],
    )

    assert counters.created == 1
    assert counters.errors == 1
    assert [profile.email for profile in db.session.query(EmailProfile).all()] == ["good@example.com"]


def test_sync_graph_nodes_is_idempotent(test_organization):
    SourceRecordImporter(SourceType.CRM).import_rows(
        test_organization.id,
        [{"id": "1", "firstname": "Ada", "lastname": "Lovelace", "jobtitle": "Analyst"}, {"id": "2"}],
    )

    first = sync_graph_nodes(test_organization.id, SourceType.CRM)
    second = sync_graph_nodes(test_organization.id, SourceType.CRM)

    assert first.created == 2
    assert second.created == 0
    assert second.updated == 2
    labels = sorted(node.label for node in db.session.query(GraphNode).all())
    assert "Ada Lovelace" in labels
