from fastapi.testclient import TestClient

from casadw.main import create_app
from casadw.persistence import InMemoryPersistence
from casadw.services.sync import DEFAULT_CATEGORIES, DEFAULT_PAYMENT_METHODS, DEFAULT_SUPPLIERS
from casadw.storage import InMemoryMediaStorage

client = TestClient(create_app(persistence=InMemoryPersistence(), media=InMemoryMediaStorage()))


def test_unseen_user_gets_documented_defaults() -> None:
    res = client.get("/api/sync/never-seen")
    assert res.status_code == 200
    body = res.json()
    assert body["expenses"] == []
    assert body["income"] == []
    assert body["notes"] == []
    assert body["fleet"] == {"vehicles": []}
    assert body["systemUsers"] == []
    assert body["years"] == [2024, 2025, 2026]
    assert body["categories"] == DEFAULT_CATEGORIES
    assert len(body["categories"]) == 10
    assert body["suppliers"] == DEFAULT_SUPPLIERS
    assert len(body["suppliers"]) == 15
    assert body["paymentMethods"] == DEFAULT_PAYMENT_METHODS
    assert len(body["paymentMethods"]) == 4
    assert body["maintenance"] == []
    assert body["maintenanceTypes"] == []
    assert body["maintenanceAreas"] == []
    assert isinstance(body["timestamp"], int)


def test_sync_write_requires_user_id() -> None:
    res = client.post("/api/sync", json={"fleet": {"vehicles": []}})
    assert res.status_code == 400
    body = res.json()
    assert body["success"] is False
    assert body["error"]["code"] == "VALIDATION_ERROR"


def test_fleet_only_sync_keeps_records() -> None:
    seeded = client.post(
        "/api/sync",
        json={
            "userId": "merge-user",
            "expenses": [{"month": 3, "year": 2025, "items": [{"desc": "rent", "value": 1200}]}],
            "income": [{"month": 3, "year": 2025, "items": [{"desc": "salary", "value": 5000}]}],
            "notes": [{"month": 3, "year": 2025, "content": "pay taxes"}],
        },
    )
    assert seeded.status_code == 200
    assert seeded.json()["success"] is True

    res = client.post("/api/sync", json={"userId": "merge-user", "fleet": {"vehicles": [{"plate": "ABC1234"}]}})
    assert res.status_code == 200

    state = client.get("/api/sync/merge-user").json()
    assert state["fleet"] == {"vehicles": [{"plate": "ABC1234"}]}
    assert state["expenses"][0]["items"] == [{"desc": "rent", "value": 1200}]
    assert state["income"][0]["items"] == [{"desc": "salary", "value": 5000}]
    assert state["notes"][0]["content"] == "pay taxes"


def test_sync_upserts_records_by_month_and_year() -> None:
    client.post("/api/sync", json={"userId": "upsert-user", "expenses": [{"month": 2, "year": 2025, "items": ["feb"]}]})
    client.post("/api/sync", json={"userId": "upsert-user", "expenses": [{"month": 1, "year": 2025, "items": ["jan"]}]})
    client.post("/api/sync", json={"userId": "upsert-user", "expenses": [{"month": 2, "year": 2025, "items": ["feb v2"]}]})

    expenses = client.get("/api/sync/upsert-user").json()["expenses"]
    assert [(e["month"], e["year"], e["items"]) for e in expenses] == [
        (2, 2025, ["feb v2"]),
        (1, 2025, ["jan"]),
    ]


def test_sync_fleet_without_vehicles_defaults_to_empty_list() -> None:
    client.post("/api/sync", json={"userId": "fleet-user", "fleet": {"vehicles": [{"plate": "X"}]}})
    client.post("/api/sync", json={"userId": "fleet-user", "fleet": {"owner": "Ana"}})

    fleet = client.get("/api/sync/fleet-user").json()["fleet"]
    assert fleet == {"owner": "Ana", "vehicles": []}


def test_sync_replaces_config_lists_and_null_restores_default() -> None:
    client.post("/api/sync", json={"userId": "config-user", "categories": ["Only"], "years": [2030]})
    state = client.get("/api/sync/config-user").json()
    assert state["categories"] == ["Only"]
    assert state["years"] == [2030]
    assert state["suppliers"] == DEFAULT_SUPPLIERS

    client.post("/api/sync", json={"userId": "config-user", "categories": None})
    state = client.get("/api/sync/config-user").json()
    assert state["categories"] == DEFAULT_CATEGORIES
    assert state["years"] == [2030]


def test_sync_rejects_malformed_period_without_partial_write() -> None:
    res = client.post(
        "/api/sync",
        json={
            "userId": "bad-period",
            "categories": ["Changed"],
            "expenses": [{"month": 1, "year": 2025, "items": []}, {"month": "june", "year": 2025, "items": []}],
        },
    )
    assert res.status_code == 400
    assert res.json()["error"]["code"] == "VALIDATION_ERROR"

    state = client.get("/api/sync/bad-period").json()
    assert state["expenses"] == []
    assert state["categories"] == DEFAULT_CATEGORIES


def test_delete_user_document() -> None:
    client.post("/api/sync", json={"userId": "gone-user", "years": [1999]})
    res = client.delete("/api/sync/gone-user")
    assert res.status_code == 200
    assert res.json()["success"] is True
    assert client.get("/api/sync/gone-user").json()["years"] == [2024, 2025, 2026]


def test_sync_stores_opaque_config_and_fleet_values_as_sent() -> None:
    res = client.post(
        "/api/sync",
        json={"userId": "opaque-user", "years": "2025", "maintenanceTypes": {"oil": 10000}, "fleet": ["car"]},
    )
    assert res.status_code == 200

    state = client.get("/api/sync/opaque-user").json()
    assert state["years"] == "2025"
    assert state["maintenanceTypes"] == {"oil": 10000}
    assert state["fleet"] == ["car"]
    assert client.get("/api/fleet/opaque-user").json()["vehicles"] == ["car"]
