from decimal import Decimal

import pytest

from flask_app.models import SourceType
from flask_app.sync.extract import (
    ID_COLUMNS,
    extract_decimal,
    extract_external_id,
    extract_int,
    extract_mapping,
    first_present,
)
from flask_app.sync.registry import GRAPH_NODES_STEP, get_connector_registry, resolve_connector

pytestmark = pytest.mark.unit


def test_first_present_walks_columns_in_order():
    row = {"hs_email": "b@x.com", "email": "  ", "properties": {"email": "a@x.com"}}
    assert first_present(row, ("email", "hs_email")) == "b@x.com"


def test_first_present_reads_nested_properties():
    row = {"properties": {"firstname": "Ada"}, "attributes": {"lastname": "Lovelace"}}
    assert first_present(row, ("firstname",)) == "Ada"
    assert first_present(row, ("lastname",)) == "Lovelace"


def test_first_present_ignores_containers():
    assert first_present({"email": ["a@x.com"]}, ("email",)) is None


def test_external_id_is_per_row():
    rows = [{"id": 11}, {"email": "no-id@x.com"}, {"hs_object_id": "901", "id": "11"}]
    ids = [extract_external_id(row, ID_COLUMNS[SourceType.CRM]) for row in rows]
    assert ids == ["11", None, "901"]


def test_shopify_global_ids_are_reduced():
    row = {"admin_graphql_api_id": "gid://shopify/Customer/207119551"}
    assert extract_external_id(row, ID_COLUMNS[SourceType.ECOM]) == "207119551"


def test_numeric_extractors():
    row = {"orders_count": "3.0", "total_spent": "199.90", "bad": "n/a"}
    assert extract_int(row, ("orders_count",)) == 3
    assert extract_int(row, ("bad",)) == 0
    assert extract_int(row, ("missing",)) == 0
    assert extract_decimal(row, ("total_spent",)) == Decimal("199.90")
    assert extract_decimal(row, ("bad",)) is None


def test_extract_mapping_skips_empty_objects():
    row = {"default_address": {}, "defaultAddress": {"city": "Hampton"}}
    assert extract_mapping(row, ("default_address", "defaultAddress")) == {"city": "Hampton"}


def test_registry_lists_three_connectors():
    registry = get_connector_registry()

    assert list(registry) == ["crm", "ecom", "email_platform"]
    assert all(descriptor.steps[-1] == GRAPH_NODES_STEP for descriptor in registry.values())
    assert [name for name, d in registry.items() if d.triggers_resolution] == ["ecom"]


def test_resolve_connector_accepts_provider_alias():
    assert resolve_connector(" Shopify ").name == "ecom"
    assert resolve_connector("klaviyo").source_type == SourceType.EMAIL_PLATFORM
    with pytest.raises(ValueError):
        resolve_connector("ledger")
