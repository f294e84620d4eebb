from fastapi.testclient import TestClient

from clinicos.config import settings
from clinicos.db import is_overlap_violation
from clinicos.main import app


class _FakeIntegrityError(Exception):
    def __init__(self, message: str):
        super().__init__(message)
        self.orig = message


def test_health_ready_ok():
    client = TestClient(app)
    response = client.get("/health/ready")
    assert response.status_code == 200
    assert response.json() == {"status": "ready", "checks": {"db": "ok"}}


def test_security_headers_are_present():
    previous_security_headers = bool(settings.SECURITY_HEADERS_ENABLED)
    try:
        settings.SECURITY_HEADERS_ENABLED = True
        client = TestClient(app)
        response = client.get("/health")
        assert response.status_code == 200
        assert response.headers.get("X-Content-Type-Options") == "nosniff"
        assert response.headers.get("X-Frame-Options") == "DENY"
        assert response.headers.get("Referrer-Policy") == "no-referrer"
    finally:
        settings.SECURITY_HEADERS_ENABLED = previous_security_headers


def test_request_id_is_echoed_or_generated():
    client = TestClient(app)

    echoed = client.get("/ping", headers={"X-Request-ID": "req-123"})
    assert echoed.json() == {"ok": True}
    assert echoed.headers.get("X-Request-ID") == "req-123"

    generated = client.get("/ping")
    assert generated.headers.get("X-Request-ID")


def test_overlap_constraint_names_are_recognised():
    professional = _FakeIntegrityError(
        'conflicting key value violates exclusion constraint "ex_appointments_professional_overlap"'
    )
    room = _FakeIntegrityError(
        'conflicting key value violates exclusion constraint "ex_appointments_room_overlap"'
    )

    assert is_overlap_violation(professional) == "ex_appointments_professional_overlap"
    assert is_overlap_violation(room) == "ex_appointments_room_overlap"
    assert is_overlap_violation(_FakeIntegrityError("NOT NULL constraint failed")) is None
