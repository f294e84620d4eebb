from decimal import Decimal

from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from clinicos.api import get_db, router
from clinicos.db import Base
from clinicos.models import Patient, Procedure, Professional, Room
from clinicos.repository import get_or_create_tenant


def make_client(tmp_path):
    db_path = tmp_path / "test_clinicos_appointments.db"
    database_url = f"sqlite:///{db_path}"
    engine = create_engine(database_url, connect_args={"check_same_thread": False})
    testing_session_local = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    Base.metadata.create_all(bind=engine)

    app = FastAPI()
    app.include_router(router)

    def override_get_db():
        db = testing_session_local()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    client = TestClient(app)
    client.testing_session_local = testing_session_local
    return client


def _headers(tenant: str = "clinic-a", actor: str = "desk-1") -> dict:
    return {"X-Tenant-Slug": tenant, "X-Actor-Id": actor}


def seed(client, tenant: str = "clinic-a") -> dict:
    with client.testing_session_local() as db:
        tenant_row = get_or_create_tenant(db, tenant)
        patient = Patient(tenant_id=tenant_row.id, name="Maria Silva")
        ana = Professional(tenant_id=tenant_row.id, name="Ana")
        bruno = Professional(tenant_id=tenant_row.id, name="Bruno")
        room = Room(tenant_id=tenant_row.id, name="Room 1")
        procedure = Procedure(tenant_id=tenant_row.id, name="Cleaning", price=Decimal("200"))
        db.add_all([patient, ana, bruno, room, procedure])
        db.commit()
        return {
            "patient": patient.id,
            "ana": ana.id,
            "bruno": bruno.id,
            "room": room.id,
            "procedure": procedure.id,
        }


def _payload(ids, professional="ana", start="2026-03-02T10:00:00", end="2026-03-02T11:00:00", room=True):
    return {
        "patient_id": ids["patient"],
        "professional_id": ids[professional],
        "room_id": ids["room"] if room else None,
        "procedure_id": ids["procedure"],
        "start_time": start,
        "end_time": end,
        "notes": "first visit",
    }


def test_create_get_and_list_appointment(tmp_path):
    client = make_client(tmp_path)
    ids = seed(client)

    created = client.post("/api/appointments", headers=_headers(), json=_payload(ids))
    assert created.status_code == 201
    body = created.json()
    assert body["status"] == "scheduled"
    assert body["created_by"] == "desk-1"

    fetched = client.get(f"/api/appointments/{body['id']}", headers=_headers())
    assert fetched.status_code == 200
    assert fetched.json()["notes"] == "first visit"

    listed = client.get(
        "/api/appointments",
        headers=_headers(),
        params={"start": "2026-03-02", "end": "2026-03-02", "professional_id": ids["ana"]},
    )
    assert listed.status_code == 200
    assert [row["id"] for row in listed.json()] == [body["id"]]


def test_double_booking_returns_conflict(tmp_path):
    client = make_client(tmp_path)
    ids = seed(client)
    first = client.post("/api/appointments", headers=_headers(), json=_payload(ids))
    assert first.status_code == 201

    clash = client.post(
        "/api/appointments",
        headers=_headers(),
        json=_payload(ids, start="2026-03-02T10:30:00", end="2026-03-02T11:30:00", room=False),
    )
    assert clash.status_code == 409
    assert clash.headers["X-Error-Code"] == "professional_conflict"

    room_clash = client.post(
        "/api/appointments",
        headers=_headers(),
        json=_payload(ids, professional="bruno", start="2026-03-02T10:30:00", end="2026-03-02T11:30:00"),
    )
    assert room_clash.status_code == 409
    assert room_clash.headers["X-Error-Code"] == "room_conflict"

    touching = client.post(
        "/api/appointments",
        headers=_headers(),
        json=_payload(ids, start="2026-03-02T11:00:00", end="2026-03-02T12:00:00"),
    )
    assert touching.status_code == 201


def test_end_before_start_is_rejected(tmp_path):
    client = make_client(tmp_path)
    ids = seed(client)

    res = client.post(
        "/api/appointments",
        headers=_headers(),
        json=_payload(ids, start="2026-03-02T11:00:00", end="2026-03-02T10:00:00"),
    )
    assert res.status_code == 422


def test_missing_appointment_and_foreign_tenant_return_404(tmp_path):
    client = make_client(tmp_path)
    ids = seed(client)
    created = client.post("/api/appointments", headers=_headers(), json=_payload(ids)).json()

    assert client.get("/api/appointments/9999", headers=_headers()).status_code == 404
    other = client.get(f"/api/appointments/{created['id']}", headers=_headers("clinic-b"))
    assert other.status_code == 404
    assert other.headers["X-Error-Code"] == "not_found"


def test_dry_run_conflict_check(tmp_path):
    client = make_client(tmp_path)
    ids = seed(client)
    created = client.post("/api/appointments", headers=_headers(), json=_payload(ids)).json()

    check = {
        "professional_id": ids["ana"],
        "room_id": ids["room"],
        "start_time": "2026-03-02T10:30:00",
        "end_time": "2026-03-02T11:30:00",
    }
    res = client.post("/api/appointments/conflicts", headers=_headers(), json=check)
    assert res.status_code == 200
    assert res.json()["conflict"] is True
    assert res.json()["kind"] == "professional"
    assert res.json()["appointment_id"] == created["id"]

    check["exclude_appointment_id"] = created["id"]
    res = client.post("/api/appointments/conflicts", headers=_headers(), json=check)
    assert res.json() == {
        "conflict": False,
        "kind": None,
        "appointment_id": None,
        "start_time": None,
        "end_time": None,
    }


def test_status_flow_and_history(tmp_path):
    client = make_client(tmp_path)
    ids = seed(client)
    created = client.post("/api/appointments", headers=_headers(), json=_payload(ids)).json()
    url = f"/api/appointments/{created['id']}/status"

    confirmed = client.post(url, headers=_headers(actor="bot"), json={"status": "confirmed", "confirmed_via": "sms"})
    assert confirmed.status_code == 200
    assert confirmed.json()["confirmed_via"] == "sms"
    assert confirmed.json()["confirmed_at"] is not None

    missing_reason = client.post(url, headers=_headers(), json={"status": "cancelled"})
    assert missing_reason.status_code == 400
    assert missing_reason.headers["X-Error-Code"] == "validation_error"

    cancelled = client.post(
        url, headers=_headers(), json={"status": "cancelled", "cancellation_reason": "patient travelling"}
    )
    assert cancelled.status_code == 200
    assert cancelled.json()["cancelled_by"] == "desk-1"

    reopened = client.post(url, headers=_headers(), json={"status": "scheduled"})
    assert reopened.status_code == 400
    assert reopened.headers["X-Error-Code"] == "invalid_transition"

    unknown = client.post(url, headers=_headers(), json={"status": "archived"})
    assert unknown.status_code == 400

    events = client.get(f"/api/appointments/{created['id']}/events", headers=_headers())
    assert events.status_code == 200
    assert [e["to_status"] for e in events.json()] == ["scheduled", "confirmed", "cancelled"]


def test_cancelled_slot_can_be_rebooked(tmp_path):
    client = make_client(tmp_path)
    ids = seed(client)
    created = client.post("/api/appointments", headers=_headers(), json=_payload(ids)).json()
    client.post(
        f"/api/appointments/{created['id']}/status",
        headers=_headers(),
        json={"status": "cancelled", "cancellation_reason": "rescheduled by phone"},
    )

    again = client.post("/api/appointments", headers=_headers(), json=_payload(ids))
    assert again.status_code == 201


def test_patch_reschedules_and_guards_closed_appointments(tmp_path):
    client = make_client(tmp_path)
    ids = seed(client)
    created = client.post("/api/appointments", headers=_headers(), json=_payload(ids)).json()
    url = f"/api/appointments/{created['id']}"

    moved = client.patch(
        url,
        headers=_headers(),
        json={"start_time": "2026-03-02T10:30:00", "end_time": "2026-03-02T11:30:00"},
    )
    assert moved.status_code == 200
    assert moved.json()["start_time"] == "2026-03-02T10:30:00"

    assert client.patch(url, headers=_headers(), json={}).status_code == 400

    client.post(f"{url}/status", headers=_headers(), json={"status": "completed"})
    blocked = client.patch(url, headers=_headers(), json={"room_id": None})
    assert blocked.status_code == 400
    assert blocked.headers["X-Error-Code"] == "invalid_mutation"

    noted = client.patch(url, headers=_headers(), json={"internal_notes": "paid in cash"})
    assert noted.status_code == 200
    assert noted.json()["internal_notes"] == "paid in cash"


def test_patch_cannot_clear_start_or_end_time(tmp_path):
    client = make_client(tmp_path)
    ids = seed(client)
    created = client.post("/api/appointments", headers=_headers(), json=_payload(ids)).json()
    url = f"/api/appointments/{created['id']}"

    for field in ("start_time", "end_time"):
        res = client.patch(url, headers=_headers(), json={field: None})
        assert res.status_code == 400
        assert res.headers["X-Error-Code"] == "validation_error"

    unchanged = client.get(url, headers=_headers()).json()
    assert unchanged["start_time"] == "2026-03-02T10:00:00"
    assert unchanged["end_time"] == "2026-03-02T11:00:00"


def test_available_slots_endpoint(tmp_path):
    client = make_client(tmp_path)
    ids = seed(client)
    client.post(
        "/api/appointments",
        headers=_headers(),
        json=_payload(ids, start="2026-03-02T08:00:00", end="2026-03-02T17:00:00"),
    )

    res = client.get(
        "/api/appointments/available-slots",
        headers=_headers(),
        params={"professional_id": ids["ana"], "day": "2026-03-02", "slot_minutes": 30},
    )
    assert res.status_code == 200
    assert res.json()["slots"] == ["2026-03-02T17:00:00", "2026-03-02T17:30:00"]

    bad = client.get(
        "/api/appointments/available-slots",
        headers=_headers(),
        params={"professional_id": ids["ana"], "day": "2026-03-02", "slot_minutes": 0},
    )
    assert bad.status_code == 400


def test_risk_indicators_endpoint(tmp_path):
    client = make_client(tmp_path)
    ids = seed(client)
    created = client.post("/api/appointments", headers=_headers(), json=_payload(ids)).json()

    res = client.get(f"/api/appointments/{created['id']}/risk-indicators", headers=_headers())
    assert res.status_code == 200
    body = res.json()
    assert body["appointment_id"] == created["id"]
    assert body["no_show_risk"] is False
    assert body["is_confirmed"] is False
