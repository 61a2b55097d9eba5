from medizap.db import get_session
from medizap.models import WalkIn


def test_public_clinic_directory(client, clinics):
    resp = client.get("/api/public/clinics")
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert [c["slug"] for c in data] == ["harbor-clinic", "sunrise-clinic"]
    assert set(data[0]) == {"id", "name", "address", "phone", "slug"}

    one = client.get("/api/public/clinics/sunrise-clinic").json()["data"]
    assert one["name"] == "Sunrise Clinic"
    assert client.get("/api/public/clinics/nowhere").status_code == 404


def test_walkin_form(client, clinics):
    resp = client.post("/api/public/clinics/sunrise-clinic/walk-ins", json={
        "patientName": "Sam Lee", "dateOfBirth": "1990-04-02", "gender": "male",
        "contactNumber": "+15551234567", "reasonForVisit": "sore throat",
    })
    assert resp.status_code == 201
    body = resp.json()
    assert body["data"]["referenceNumber"] == "W0001"
    assert body["data"]["status"] == "waiting"
    assert body["data"]["dateOfBirth"] == "1990-04-02"
    assert "W0001" in body["message"]

    second = client.post("/api/public/clinics/sunrise-clinic/walk-ins", json={"patientName": "Ana"})
    assert second.json()["data"]["referenceNumber"] == "W0002"


def test_walkin_form_validation(client, clinics):
    missing = client.post("/api/public/clinics/sunrise-clinic/walk-ins", json={"reasonForVisit": "cough"})
    assert missing.status_code == 400
    assert missing.json()["message"] == "Missing fields: patientName"

    bad_dob = client.post("/api/public/clinics/sunrise-clinic/walk-ins",
                          json={"patientName": "Sam", "dateOfBirth": "yesterday"})
    assert bad_dob.status_code == 400

    unknown = client.post("/api/public/clinics/nowhere/walk-ins", json={"patientName": "Sam"})
    assert unknown.status_code == 404
    with get_session() as db:
        assert db.query(WalkIn).count() == 0


def test_inactive_clinic_hidden(client, clinics):
    from medizap.models import Clinic

    with get_session() as db:
        db.get(Clinic, "c2").is_active = False
    assert [c["slug"] for c in client.get("/api/public/clinics").json()["data"]] == ["sunrise-clinic"]
    assert client.post("/api/public/clinics/harbor-clinic/walk-ins", json={"patientName": "Sam"}).status_code == 404


def test_staff_queue(client, members):
    for name in ("Sam Lee", "Ana Ruiz"):
        client.post("/api/public/clinics/sunrise-clinic/walk-ins", json={"patientName": name})

    queue = client.get("/api/clinics/c1/walk-ins", headers=members["staff"]).json()["data"]
    assert [w["patientName"] for w in queue] == ["Sam Lee", "Ana Ruiz"]

    resp = client.patch(f"/api/walk-ins/{queue[0]['id']}/status", json={"status": "in-progress"},
                        headers=members["staff"])
    assert resp.status_code == 200
    assert resp.json()["data"]["status"] == "in-progress"

    waiting = client.get("/api/clinics/c1/walk-ins", params={"status": "waiting"}, headers=members["staff"])
    assert [w["patientName"] for w in waiting.json()["data"]] == ["Ana Ruiz"]

    bad = client.patch(f"/api/walk-ins/{queue[0]['id']}/status", json={"status": "gone"}, headers=members["staff"])
    assert bad.status_code == 400

    other = client.patch(f"/api/walk-ins/{queue[1]['id']}/status", json={"status": "cancelled"},
                         headers=members["outsider"])
    assert other.status_code == 403
    assert client.patch("/api/walk-ins/999/status", json={"status": "cancelled"},
                        headers=members["staff"]).status_code == 404
