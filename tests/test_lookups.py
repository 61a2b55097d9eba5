from conftest import AGENT_HEADERS

DOCTORS = "/api/get-doctors"
DEPARTMENTS = "/api/get-departments"


def test_doctors_envelope(client, clinics):
    resp = client.get(DOCTORS, headers=AGENT_HEADERS)
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert [d["name"] for d in body["data"]] == ["Dr. Arjun Mehta", "Dr. Lena Fischer", "Dr. Maya Patel"]
    assert body["meta"] == {"total": 3, "count": 3, "limit": None, "offset": 0, "hasMore": False}
    assert body["filters"]["includeAvailability"] is False
    assert body["timestamp"].endswith("Z")

    doctor = body["data"][2]
    assert doctor["department"] == {"id": "dept1", "name": "General Medicine", "description": None}
    assert doctor["clinic"] == {"id": "c1", "name": "Sunrise Clinic"}
    assert "available_days" not in doctor


def test_doctors_filtered_by_clinic_and_department(client, clinics):
    by_clinic = client.get(DOCTORS, params={"clinicId": "c1"}, headers=AGENT_HEADERS).json()
    assert {d["id"] for d in by_clinic["data"]} == {"d1", "d2"}
    assert by_clinic["filters"]["clinicId"] == "c1"

    by_dept = client.get(DOCTORS, params={"departmentId": "dept2"}, headers=AGENT_HEADERS).json()
    assert [d["id"] for d in by_dept["data"]] == ["d2"]


def test_doctors_post_body_and_pagination(client, clinics):
    resp = client.post(DOCTORS, json={"clinicId": "c1", "limit": 1, "includeAvailability": True},
                       headers=AGENT_HEADERS)
    assert resp.status_code == 200
    body = resp.json()
    assert body["meta"]["total"] == 2
    assert body["meta"]["count"] == 1
    assert body["meta"]["hasMore"] is True
    assert body["data"][0]["available_days"] == ["monday", "thursday"]
    assert body["data"][0]["available_times"] == ["13:00", "14:00"]

    last = client.post(DOCTORS, json={"clinicId": "c1", "limit": 1, "offset": 1}, headers=AGENT_HEADERS).json()
    assert last["meta"]["count"] == 1
    assert last["meta"]["hasMore"] is False
    assert last["data"][0]["id"] == "d1"


def test_limit_is_capped(client, clinics):
    body = client.get(DOCTORS, params={"limit": 500}, headers=AGENT_HEADERS).json()
    assert body["meta"]["limit"] == 100


def test_offset_without_limit_pages_by_default(client, clinics, monkeypatch):
    from medizap import lookups

    monkeypatch.setattr(lookups, "DEFAULT_PAGE", 1)
    body = client.get(DOCTORS, params={"offset": 1}, headers=AGENT_HEADERS).json()
    assert [d["id"] for d in body["data"]] == ["d3"]
    assert body["meta"] == {"total": 3, "count": 1, "limit": 1, "offset": 1, "hasMore": True}
    assert body["filters"]["limit"] is None


def test_inactive_filter(client, clinics):
    from medizap.db import get_session
    from medizap.models import Doctor

    with get_session() as db:
        db.get(Doctor, "d2").is_active = False
    active = client.get(DOCTORS, params={"isActive": "true"}, headers=AGENT_HEADERS).json()
    assert {d["id"] for d in active["data"]} == {"d1", "d3"}
    inactive = client.get(DOCTORS, params={"isActive": "false"}, headers=AGENT_HEADERS).json()
    assert [d["id"] for d in inactive["data"]] == ["d2"]


def test_bad_filter_values(client, clinics):
    resp = client.get(DOCTORS, params={"isActive": "maybe"}, headers=AGENT_HEADERS)
    assert resp.status_code == 400
    assert resp.json()["success"] is False
    assert client.get(DOCTORS, params={"limit": "ten"}, headers=AGENT_HEADERS).status_code == 400


def test_post_with_invalid_json(client, clinics):
    resp = client.post(DOCTORS, content=b"{oops", headers={**AGENT_HEADERS, "Content-Type": "application/json"})
    assert resp.status_code == 400
    assert resp.json()["error"] == "Invalid JSON in request body"


def test_post_with_empty_body(client, clinics):
    resp = client.post(DEPARTMENTS, headers=AGENT_HEADERS)
    assert resp.status_code == 200
    assert resp.json()["meta"]["total"] == 3


def test_method_not_allowed_uses_envelope(client, clinics):
    resp = client.put(DOCTORS, headers=AGENT_HEADERS)
    assert resp.status_code == 405
    body = resp.json()
    assert body["success"] is False
    assert body["error"] == "Method Not Allowed"


def test_unknown_route_uses_envelope(client):
    resp = client.get("/api/nothing-here")
    assert resp.status_code == 404
    assert resp.json()["success"] is False


def test_lookups_require_credentials(client, clinics):
    assert client.get(DOCTORS).status_code == 401
    assert client.get(DEPARTMENTS, headers={"Authorization": "Bearer not-a-jwt"}).status_code == 401


def test_users_see_only_their_clinics(client, members):
    doctors = client.get(DOCTORS, headers=members["staff"]).json()
    assert {d["id"] for d in doctors["data"]} == {"d1", "d2"}
    departments = client.get(DEPARTMENTS, headers=members["staff"]).json()
    assert {d["id"] for d in departments["data"]} == {"dept1", "dept2"}

    # asking for another clinic returns nothing rather than its rows
    other = client.get(DOCTORS, params={"clinicId": "c2"}, headers=members["staff"]).json()
    assert other["data"] == []
    assert other["meta"]["total"] == 0

    assert client.get(DOCTORS, headers=members["outsider"]).json()["data"] == []


def test_departments_listing(client, clinics):
    body = client.get(DEPARTMENTS, params={"clinicId": "c1"}, headers=AGENT_HEADERS).json()
    assert [d["name"] for d in body["data"]] == ["Cardiology", "General Medicine"]
    assert body["data"][0]["clinic"] == {"id": "c1", "name": "Sunrise Clinic"}
    assert "departmentId" not in body["filters"]
    assert body["meta"]["total"] == 2


def test_timing_headers(client):
    resp = client.get("/health", headers={"X-Request-ID": "abc123"})
    assert resp.status_code == 200
    assert resp.headers["X-Request-ID"] == "abc123"
    assert "X-Total-Time-ms" in resp.headers
    assert "X-DB-Queries" in resp.headers


def test_sql_timing_counts_statements():
    import contextvars

    from sqlalchemy import create_engine, text

    from medizap.instrumentation import attach_sqlalchemy_instrumentation, current_stats, start_request

    eng = create_engine("sqlite://")
    with eng.connect():
        pass
    attach_sqlalchemy_instrumentation(eng, slow_ms=0.0001)
    # attaching twice must not double count
    attach_sqlalchemy_instrumentation(eng, slow_ms=0.0001)

    def handle():
        start_request("req-1")
        with eng.connect() as conn:
            conn.execute(text("SELECT 1"))
            conn.execute(text("SELECT 2"))
        return current_stats()

    stats = contextvars.copy_context().run(handle)
    assert stats.request_id == "req-1"
    assert stats.queries == 2
    assert stats.slow_queries == 2
    assert stats.headers(12.5)["X-Total-Time-ms"] == "12.5"
