import json

import pytest

from flask_app.models import CrmContact, db

pytestmark = pytest.mark.integration


def _parse_sse(body):
    frames = []
    for chunk in body.strip().split("\n\n"):
        lines = dict(line.split(": ", 1) for line in chunk.splitlines())
        frames.append((lines["event"], json.loads(lines["data"])))
    return frames


def test_list_connectors(client):
    response = client.get("/api/sync/connectors")

    assert response.status_code == 200
    connectors = response.get_json()["connectors"]
    assert [c["name"] for c in connectors] == ["crm", "ecom", "email_platform"]
    assert connectors[1]["provider"] == "shopify"
    assert connectors[0]["steps"][0] == {"key": "contacts_import", "label": "Importing contacts"}


def test_unknown_connector_is_not_found(client, org_headers):
    response = client.post("/api/sync/ledger", headers=org_headers, json={})

    assert response.status_code == 404
    assert response.get_json()["code"] == "unknown_connector"


def test_sync_requires_organization(client):
    assert client.post("/api/sync/crm", json={}).status_code == 400


def test_records_must_be_an_object(client, org_headers):
    response = client.post("/api/sync/crm", headers=org_headers, json={"records": [1, 2]})

    assert response.status_code == 400


def test_sync_returns_json_summary(client, org_headers):
    response = client.post(
        "/api/sync/crm",
        headers=org_headers,
        json={"records": {"contacts_import": [{"id": "hs-1", "email": "ada@example.com"}]}},
    )

    assert response.status_code == 200
    payload = response.get_json()
    assert payload["status"] == "success"
    assert payload["steps"]["contacts_import"]["created"] == 1
    assert db.session.query(CrmContact).count() == 1


def test_async_sync_conflicts_without_worker(client, org_headers):
    response = client.post("/api/sync/crm?async=true", headers=org_headers, json={})

    assert response.status_code == 409


@pytest.mark.slow
def test_sync_streams_server_sent_events(client, org_headers):
    response = client.post(
        "/api/sync/crm?stream=true",
        headers=org_headers,
        json={"records": {"contacts_import": [{"id": "hs-1", "email": "ada@example.com"}]}},
    )

    assert response.status_code == 200
    assert response.mimetype == "text/event-stream"
    frames = _parse_sse(response.get_data(as_text=True))
    assert [name for name, _ in frames] == ["progress", "progress", "progress", "progress", "complete"]
    assert frames[1][1]["result"]["created"] == 1
    assert frames[-1][1]["status"] == "success"
    db.session.expire_all()
    assert db.session.query(CrmContact).count() == 1
