from __future__ import annotations

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import select

from rota_factories import add_carer, add_entry, add_package, add_task, day, memory_database, rate

from api import create_app  # noqa: E402
from database import AuditLog  # noqa: E402


@pytest.fixture()
def rota_db():
    engine, session_factory = memory_database()
    task = add_task(session_factory, "Medication")
    package = add_package(session_factory, "Harbour View", tasks=[task])
    carer = add_carer(session_factory, "Amira Patel")
    rate(session_factory, carer, task, "EXPERT")
    yield {"session_factory": session_factory, "task": task, "package": package, "carer": carer}
    engine.dispose()


@pytest.fixture()
def client(rota_db):
    with TestClient(create_app(rota_db["session_factory"])) as test_client:
        yield test_client


def _entry_payload(rota_db, date_value, **overrides):
    payload = {
        "carer_id": rota_db["carer"].id,
        "package_id": rota_db["package"].id,
        "date": date_value.isoformat(),
        "shift_type": "DAY",
        "start_time": "08:00",
        "end_time": "20:00",
        "actor": "manager",
    }
    payload.update(overrides)
    return payload


def test_health(client) -> None:
    assert client.get("/health").json() == {"status": "ok"}


def test_rule_catalog_lists_limits(client) -> None:
    body = client.get("/api/v1/rota/rules").json()
    assert body["limits"]["weekly_hour_limit"] == 36
    assert any(rule["rule"] == "REST_PERIOD_VIOLATION" for rule in body["rules"])


def test_create_then_duplicate_then_get(client, rota_db) -> None:
    created = client.post("/api/v1/rota", json=_entry_payload(rota_db, day(0)))
    assert created.status_code == 201
    body = created.json()
    assert body["saved"] is True
    entry_id = body["entry"]["id"]

    duplicate = client.post("/api/v1/rota", json=_entry_payload(rota_db, day(0), start_time="09:00"))
    assert duplicate.status_code == 409
    assert duplicate.json()["message"] == "Carer already scheduled on Monday 1"

    fetched = client.get(f"/api/v1/rota/{entry_id}").json()
    assert fetched["carer_name"] == "Amira Patel"
    assert fetched["package_name"] == "Harbour View"

    with rota_db["session_factory"]() as session:
        actions = session.scalars(select(AuditLog.action)).all()
    assert "ROTA_CREATE" in actions


def test_create_rejects_bad_payloads(client, rota_db) -> None:
    assert client.post("/api/v1/rota", json={"carer_id": "x"}).status_code == 400
    bad_clock = _entry_payload(rota_db, day(0), end_time="8pm")
    assert client.post("/api/v1/rota", json=bad_clock).status_code == 400
    unknown = _entry_payload(rota_db, day(0), carer_id="ghost")
    assert client.post("/api/v1/rota", json=unknown).status_code == 404


def test_validate_endpoint(client, rota_db) -> None:
    add_entry(rota_db["session_factory"], rota_db["carer"], rota_db["package"], day(1), "NIGHT", "20:00", "08:00")
    body = client.post("/api/v1/rota/validate", json=_entry_payload(rota_db, day(2))).json()
    assert body["is_valid"] is False
    assert body["violations"][0]["rule"] == "REST_PERIOD_VIOLATION"


def test_bulk_validate_only_and_reject(client, rota_db) -> None:
    entries = [_entry_payload(rota_db, day(offset)) for offset in (0, 1)]
    preview = client.post("/api/v1/rota/bulk", json={"entries": entries, "validate_only": True})
    assert preview.status_code == 200
    assert preview.json()["total_entries"] == 2
    assert preview.json()["created_count"] == 0

    for offset in (4, 5, 6):
        add_entry(rota_db["session_factory"], rota_db["carer"], rota_db["package"], day(offset))
    rejected = client.post("/api/v1/rota/bulk", json={"entries": entries})
    assert rejected.status_code == 400
    assert rejected.json()["valid_entries"] == 0
    week = client.get(f"/api/v1/rota/weekly/{rota_db['package'].id}", params={"week_start": "2024-04-01"}).json()
    assert len(week["entries"]) == 3


def test_bulk_commits(client, rota_db) -> None:
    entries = [_entry_payload(rota_db, day(offset)) for offset in (0, 1)]
    response = client.post("/api/v1/rota/bulk", json={"entries": entries, "actor": "planner"})
    assert response.status_code == 201
    assert response.json()["created_count"] == 2


def test_bulk_entry_with_foreign_id_is_still_validated(client, rota_db) -> None:
    monday = add_entry(rota_db["session_factory"], rota_db["carer"], rota_db["package"], day(0))
    for offset in (1, 2):
        add_entry(rota_db["session_factory"], rota_db["carer"], rota_db["package"], day(offset))
    entries = [_entry_payload(rota_db, day(3), id=monday.id)]
    response = client.post("/api/v1/rota/bulk", json={"entries": entries})
    assert response.status_code == 400
    assert response.json()["created_count"] == 0
    rules = [violation["rule"] for violation in response.json()["results"][0]["violations"]]
    assert "WEEKLY_HOUR_LIMIT" in rules
    week = client.get(f"/api/v1/rota/weekly/{rota_db['package'].id}", params={"week_start": "2024-04-01"}).json()
    assert len(week["entries"]) == 3


def test_update_confirm_and_delete(client, rota_db) -> None:
    entry_id = client.post("/api/v1/rota", json=_entry_payload(rota_db, day(0))).json()["entry"]["id"]

    updated = client.put(f"/api/v1/rota/{entry_id}", json={"start_time": "07:00", "end_time": "15:00"})
    assert updated.status_code == 200
    assert updated.json()["entry"]["start_time"] == "07:00"

    confirmed = client.post(f"/api/v1/rota/{entry_id}/confirm")
    assert confirmed.json()["is_confirmed"] is True

    assert client.delete(f"/api/v1/rota/{entry_id}").status_code == 200
    assert client.get(f"/api/v1/rota/{entry_id}").status_code == 404
    assert client.put("/api/v1/rota/missing", json={"start_time": "07:00"}).status_code == 404


def test_batch_delete_reports_missing_ids(client, rota_db) -> None:
    entry = add_entry(rota_db["session_factory"], rota_db["carer"], rota_db["package"], day(0))
    response = client.post("/api/v1/rota/batch-delete", json={"ids": [entry.id, "missing"]})
    assert response.status_code == 404
    assert response.json()["not_found_ids"] == ["missing"]

    response = client.post("/api/v1/rota/batch-delete", json={"ids": [entry.id]})
    assert response.json()["deleted_count"] == 1


def test_weekly_view_endpoint(client, rota_db) -> None:
    add_entry(rota_db["session_factory"], rota_db["carer"], rota_db["package"], day(0))
    response = client.get(f"/api/v1/rota/weekly/{rota_db['package'].id}", params={"week_start": "2024-04-01"})
    assert response.status_code == 200
    schedules = response.json()["schedules"]
    assert schedules[0]["carer_name"] == "Amira Patel"
    assert schedules[0]["total_hours"] == 12

    assert client.get("/api/v1/rota/weekly/missing", params={"week_start": "2024-04-01"}).status_code == 404
    bad_week = client.get(f"/api/v1/rota/weekly/{rota_db['package'].id}", params={"week_start": "April"})
    assert bad_week.status_code == 400


def test_availability_endpoint(client, rota_db) -> None:
    payload = {
        "date": "2024-04-01",
        "start_time": "08:00",
        "end_time": "20:00",
        "package_id": rota_db["package"].id,
        "shift_type": "DAY",
        "pool": "all",
        "required_task_ids": [rota_db["task"].id],
        "competent_only": True,
    }
    body = client.post("/api/v1/rota/availability", json=payload).json()
    assert [check["carer_name"] for check in body["available"]] == ["Amira Patel"]
    assert body["unavailable"] == []

    payload["pool"] = "nobody"
    assert client.post("/api/v1/rota/availability", json=payload).status_code == 400


def test_policy_update_changes_engine_limits(client) -> None:
    active = client.get("/api/v1/policy/active").json()
    assert active["name"] == "Baseline Rota Rules"

    response = client.put(
        "/api/v1/policy/active",
        json={"name": "Extended Hours", "params": {"scheduling_rules": {"weekly_hour_limit": 40}}, "actor": "admin"},
    )
    assert response.status_code == 200
    assert client.get("/api/v1/rota/rules").json()["limits"]["weekly_hour_limit"] == 40
