# tests/test_api.py
from concurrent.futures import ThreadPoolExecutor

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from carequeue.models import UserRole
from carequeue.config import TestingConfig
from carequeue.main import create_app
from carequeue.storage import Entity, MemStorage

from conftest import PASSWORD

API = "/api/v1"

MEDICATIONS = [{"name": "Aspirin", "dosage": "75mg", "frequency": "once daily", "duration": "30 days"}]


def booking_payload(hospital, clock, **overrides):
    payload = {
        "patient_id": hospital.patient.id,
        "doctor_id": hospital.doctor.id,
        "department_id": hospital.cardiology.id,
        "appointment_date": clock().isoformat(),
    }
    payload.update(overrides)
    return payload


# --- auth ---

def test_login_returns_a_working_bearer_token(client, hospital):
    response = client.post(f"{API}/auth/token", data={"username": "dr.smith", "password": PASSWORD})
    assert response.status_code == 200
    body = response.json()
    assert body["token_type"] == "bearer"
    assert body["user"]["role"] == "doctor"
    assert "password_hash" not in body["user"]

    me = client.get(f"{API}/auth/users/me", headers={"Authorization": f"Bearer {body['access_token']}"})
    assert me.status_code == 200
    assert me.json()["username"] == "dr.smith"


def test_login_with_wrong_password(client, hospital):
    response = client.post(f"{API}/auth/token", data={"username": "dr.smith", "password": "wrong-password1"})
    assert response.status_code == 401


def test_register_creates_a_patient(client, hospital):
    response = client.post(f"{API}/auth/register", json={
        "username": "carol", "password": "Password1", "full_name": "Carol White",
    })
    assert response.status_code == 201
    user = response.json()
    assert user["role"] == "patient"
    assert hospital.storage.get_patient_by_user_id(user["id"]) is not None


def test_register_duplicate_username(client, hospital):
    response = client.post(f"{API}/auth/register", json={
        "username": "alice", "password": "Password1", "full_name": "Alice Again",
    })
    assert response.status_code == 400


def test_requests_without_a_session_are_unauthorized(client, hospital):
    assert client.get(f"{API}/tokens").status_code == 401
    assert client.get(f"{API}/tokens", headers={"Authorization": "Bearer not-a-jwt"}).status_code == 401


def test_admin_creates_staff_with_profile(client, hospital, auth_headers):
    response = client.post(f"{API}/users", headers=auth_headers(hospital.admin), json={
        "username": "dr.patel", "password": "Password1", "full_name": "Dr. Ravi Patel",
        "role": "doctor", "department_id": hospital.emergency.id,
        "specialization": "Trauma", "license_number": "DOC003",
    })
    assert response.status_code == 201
    doctor = hospital.storage.get_doctor_by_user_id(response.json()["id"])
    assert doctor.department_id == hospital.emergency.id

    missing_department = client.post(f"{API}/users", headers=auth_headers(hospital.admin), json={
        "username": "nurse.lee", "password": "Password1", "full_name": "Lee", "role": "nurse",
    })
    assert missing_department.status_code == 400


# --- booking and the queue over HTTP ---

def test_visit_flow_over_http(client, hospital, auth_headers, clock):
    booked = client.post(f"{API}/appointments", headers=auth_headers(hospital.patient_user),
                         json=booking_payload(hospital, clock, notes="follow-up"))
    assert booked.status_code == 201
    appointment = booked.json()
    assert appointment["status"] == "scheduled"
    assert appointment["token_number"].startswith("CAR-")

    queue = client.get(f"{API}/tokens/queue", params={"doctor_id": hospital.doctor.id},
                       headers=auth_headers(hospital.nurse_user)).json()
    assert len(queue) == 1 and queue[0]["position"] == 1
    token_id = queue[0]["token"]["id"]

    called = client.post(f"{API}/tokens/call-next", json={"doctor_id": hospital.doctor.id},
                         headers=auth_headers(hospital.nurse_user))
    assert called.status_code == 200
    assert called.json()["status"] == "called"
    assert called.json()["called_at"] is not None

    started = client.post(f"{API}/tokens/{token_id}/start", headers=auth_headers(hospital.doctor_user))
    assert started.status_code == 200
    assert started.json()["appointment"]["status"] == "in-progress"

    finished = client.patch(f"{API}/tokens/{token_id}", json={"status": "completed"},
                            headers=auth_headers(hospital.doctor_user))
    assert finished.status_code == 200
    assert finished.json()["completed_at"] is not None

    detail = client.get(f"{API}/appointments/{appointment['id']}", headers=auth_headers(hospital.patient_user))
    assert detail.json()["status"] == "completed"
    assert detail.json()["doctor"]["user"]["full_name"] == "Dr. John Smith"


def test_booking_with_missing_fields_is_a_bad_request(client, hospital, auth_headers):
    response = client.post(f"{API}/appointments", headers=auth_headers(hospital.admin),
                           json={"patient_id": hospital.patient.id})
    assert response.status_code == 400
    assert "doctor_id" in response.json()["detail"]


def test_booking_with_unknown_doctor_is_not_found(client, hospital, auth_headers, clock):
    response = client.post(f"{API}/appointments", headers=auth_headers(hospital.admin),
                           json=booking_payload(hospital, clock, doctor_id=404))
    assert response.status_code == 404


def test_wrong_step_is_rejected(client, hospital, auth_headers, book):
    _, token = book()
    response = client.patch(f"{API}/tokens/{token.id}", json={"status": "serving"},
                            headers=auth_headers(hospital.doctor_user))
    assert response.status_code == 400
    assert client.patch(f"{API}/tokens/999", json={"status": "called"},
                        headers=auth_headers(hospital.admin)).status_code == 404


def test_generic_appointment_patch_cannot_complete(client, hospital, auth_headers, book):
    appointment, _ = book()
    response = client.patch(f"{API}/appointments/{appointment.id}", json={"status": "completed"},
                            headers=auth_headers(hospital.admin))
    assert response.status_code == 400

    cancelled = client.post(f"{API}/appointments/{appointment.id}/cancel",
                            headers=auth_headers(hospital.patient_user))
    assert cancelled.status_code == 200
    assert cancelled.json()["status"] == "cancelled"


def test_patient_sees_only_own_appointments(client, hospital, auth_headers, book):
    mine, _ = book()
    book(patient=hospital.other_patient)

    response = client.get(f"{API}/appointments/me", headers=auth_headers(hospital.patient_user))
    assert response.status_code == 200
    assert [a["id"] for a in response.json()] == [mine.id]

    own = client.get(f"{API}/appointments/patient/{hospital.patient.id}", headers=auth_headers(hospital.patient_user))
    assert own.status_code == 200

    assert client.get(f"{API}/appointments", headers=auth_headers(hospital.patient_user)).status_code == 403
    other = client.get(f"{API}/appointments/patient/{hospital.other_patient.id}",
                       headers=auth_headers(hospital.patient_user))
    assert other.status_code == 403


def test_patient_listing_is_staff_only(client, hospital, auth_headers):
    assert client.get(f"{API}/patients", headers=auth_headers(hospital.nurse_user)).status_code == 200
    assert client.get(f"{API}/patients", headers=auth_headers(hospital.pharmacist_user)).status_code == 403
    me = client.get(f"{API}/patients/me", headers=auth_headers(hospital.patient_user))
    assert me.json()["blood_group"] == "O+"


# --- prescriptions ---

def test_nurse_cannot_prescribe(client, hospital, auth_headers, book):
    appointment, _ = book()
    response = client.post(f"{API}/prescriptions", headers=auth_headers(hospital.nurse_user),
                           json={"appointment_id": appointment.id, "medications": MEDICATIONS})
    assert response.status_code == 403
    assert hospital.storage.list(Entity.prescriptions) == []


def test_prescribe_and_dispense(client, hospital, auth_headers, book, clock):
    appointment, _ = book()
    created = client.post(f"{API}/prescriptions", headers=auth_headers(hospital.doctor_user),
                          json={"appointment_id": appointment.id, "medications": MEDICATIONS})
    assert created.status_code == 201
    prescription = created.json()
    assert prescription["status"] == "pending"
    assert prescription["patient_id"] == hospital.patient.id

    pending = client.get(f"{API}/prescriptions/pending", headers=auth_headers(hospital.pharmacist_user))
    assert [p["id"] for p in pending.json()] == [prescription["id"]]

    dispensed = client.post(f"{API}/prescriptions/{prescription['id']}/dispense",
                            headers=auth_headers(hospital.pharmacist_user))
    assert dispensed.status_code == 200
    assert dispensed.json()["status"] == "dispensed"
    assert dispensed.json()["dispensed_by"] == hospital.pharmacist.id

    again = client.post(f"{API}/prescriptions/{prescription['id']}/dispense",
                        headers=auth_headers(hospital.pharmacist_user))
    assert again.status_code == 400

    own = client.get(f"{API}/prescriptions", headers=auth_headers(hospital.patient_user))
    assert [p["id"] for p in own.json()] == [prescription["id"]]
    assert client.get(f"{API}/prescriptions", headers=auth_headers(hospital.other_patient_user)).json() == []


def test_concurrent_dispenses_succeed_once(client, hospital, auth_headers, book):
    appointment, _ = book()
    prescription = client.post(f"{API}/prescriptions", headers=auth_headers(hospital.doctor_user),
                               json={"appointment_id": appointment.id, "medications": MEDICATIONS}).json()
    headers = auth_headers(hospital.pharmacist_user)
    url = f"{API}/prescriptions/{prescription['id']}/dispense"

    with ThreadPoolExecutor(max_workers=2) as pool:
        codes = sorted(pool.map(lambda _: client.post(url, headers=headers).status_code, range(2)))

    assert codes == [200, 400]
    assert hospital.storage.get(Entity.prescriptions, prescription["id"]).status == "dispensed"


def test_prescription_needs_at_least_one_medication(client, hospital, auth_headers, book):
    appointment, _ = book()
    response = client.post(f"{API}/prescriptions", headers=auth_headers(hospital.doctor_user),
                           json={"appointment_id": appointment.id, "medications": []})
    assert response.status_code == 400


# --- inventory, alerts, health ---

def test_low_stock_and_negative_quantity(client, hospital, auth_headers):
    headers = auth_headers(hospital.pharmacist_user)
    drug = client.post(f"{API}/drugs", headers=headers,
                       json={"name": "Salbutamol", "quantity": 12, "min_stock_level": 10}).json()
    assert client.get(f"{API}/drugs/low-stock", headers=headers).json() == []

    client.patch(f"{API}/drugs/{drug['id']}", headers=headers, json={"quantity": 10})
    assert [d["id"] for d in client.get(f"{API}/drugs/low-stock", headers=headers).json()] == [drug["id"]]

    negative = client.patch(f"{API}/drugs/{drug['id']}", headers=headers, json={"quantity": -1})
    assert negative.status_code == 400
    assert client.post(f"{API}/drugs", headers=auth_headers(hospital.nurse_user),
                       json={"name": "X"}).status_code == 403


def test_alert_lifecycle(client, hospital, auth_headers):
    raised = client.post(f"{API}/emergency-alerts", headers=auth_headers(hospital.patient_user),
                         json={"type": "code-blue", "location": "Ward 3"})
    assert raised.status_code == 201
    alert_id = raised.json()["id"]

    active = client.get(f"{API}/emergency-alerts/active", headers=auth_headers(hospital.nurse_user)).json()
    assert [a["creator"]["username"] for a in active] == ["alice"]

    resolved = client.post(f"{API}/emergency-alerts/{alert_id}/resolve", headers=auth_headers(hospital.nurse_user))
    assert resolved.json()["is_active"] is False
    assert resolved.json()["resolved_at"] is not None
    assert client.post(f"{API}/emergency-alerts/{alert_id}/resolve",
                       headers=auth_headers(hospital.nurse_user)).status_code == 400


def test_unknown_alert_type_is_rejected(client, hospital, auth_headers):
    response = client.post(f"{API}/emergency-alerts", headers=auth_headers(hospital.admin),
                           json={"type": "code-purple", "location": "Lobby"})
    assert response.status_code == 400


def test_queue_consistency_endpoints(client, hospital, auth_headers, queue, book):
    appointment, token = book()
    queue.call_token(hospital.admin, token.id)
    queue.start_consultation(hospital.doctor_user, token.id)
    hospital.storage.update(Entity.appointments, appointment.id, {"status": "scheduled"})

    assert client.get(f"{API}/health/queue-consistency",
                      headers=auth_headers(hospital.nurse_user)).status_code == 403
    report = client.get(f"{API}/health/queue-consistency", headers=auth_headers(hospital.admin)).json()
    assert report["stale_appointments"][0]["effective_status"] == "in-progress"

    repaired = client.post(f"{API}/health/queue-repair", headers=auth_headers(hospital.admin)).json()
    assert len(repaired["repaired"]) == 1


def test_dashboard_stats(client, hospital, auth_headers, queue, book):
    _, first = book()
    book(patient=hospital.other_patient)
    queue.call_token(hospital.admin, first.id)
    hospital.storage.create(Entity.drugs, {"name": "Low", "quantity": 1, "min_stock_level": 5})

    stats = client.get(f"{API}/dashboard/stats", headers=auth_headers(hospital.pharmacist_user)).json()

    assert stats["waiting_tokens"] == 1
    assert stats["called_tokens"] == 1
    assert stats["appointments_today"] == 2
    assert stats["low_stock_drugs"] == 1
    assert stats["active_alerts"] == 0


def test_departments_are_public(client, hospital):
    response = client.get(f"{API}/departments")
    assert [d["name"] for d in response.json()] == ["Cardiology", "Emergency"]


# --- broadcast channel ---

def session_id(socket):
    """Read the greeting every session gets first and return the id it carries."""
    greeting = socket.receive_json()
    assert greeting["type"] == "connected"
    return greeting["data"]["connection_id"]


def test_prescription_event_reaches_other_sessions_only(client, hospital, access_token, book):
    appointment, _ = book()
    doctor_token = access_token(hospital.doctor_user)
    pharmacy_token = access_token(hospital.pharmacist_user)

    with client.websocket_connect(f"/ws?token={doctor_token}") as laptop, \
            client.websocket_connect(f"/ws?token={doctor_token}") as phone, \
            client.websocket_connect(f"/ws?token={pharmacy_token}") as pharmacy:
        laptop_id = session_id(laptop)
        session_id(phone)
        session_id(pharmacy)

        headers = {"Authorization": f"Bearer {doctor_token}", "X-Connection-Id": str(laptop_id)}
        response = client.post(f"{API}/prescriptions", headers=headers,
                               json={"appointment_id": appointment.id, "medications": MEDICATIONS})
        assert response.status_code == 201

        event = pharmacy.receive_json()
        assert event["type"] == "prescription_created"
        assert event["data"]["id"] == response.json()["id"]
        assert "timestamp" in event
        # same doctor, different session: still notified
        assert phone.receive_json()["type"] == "prescription_created"

        # the laptop's next message is the ping, so it never got the prescription event
        pharmacy.send_json({"type": "ping", "data": {"from": "pharmacy"}})
        assert laptop.receive_json() == {"type": "ping", "data": {"from": "pharmacy"}}


def test_someone_elses_connection_id_is_ignored(client, hospital, auth_headers, access_token):
    with client.websocket_connect(f"/ws?token={access_token(hospital.nurse_user)}") as nurse:
        nurse_id = session_id(nurse)

        headers = {**auth_headers(hospital.patient_user), "X-Connection-Id": str(nurse_id)}
        response = client.post(f"{API}/emergency-alerts", headers=headers,
                               json={"type": "code-blue", "location": "Ward 3"})
        assert response.status_code == 201
        assert nurse.receive_json()["data"]["id"] == response.json()["id"]


def test_client_messages_are_relayed_verbatim(client, hospital, access_token):
    with client.websocket_connect(f"/ws?token={access_token(hospital.nurse_user)}") as nurse, \
            client.websocket_connect(f"/ws?token={access_token(hospital.admin)}") as admin:
        session_id(nurse)
        session_id(admin)
        message = {"type": "emergency_alert", "data": {"type": "code-red", "location": "OT-1"}}
        nurse.send_json(message)
        assert admin.receive_json() == message


def test_websocket_rejects_bad_tokens(client, hospital):
    with pytest.raises(WebSocketDisconnect) as exc:
        with client.websocket_connect("/ws?token=garbage"):
            pass
    assert exc.value.code == 1008


def test_sample_data_seeding_is_idempotent(clock):
    storage = MemStorage(clock=clock)
    settings = TestingConfig(seed_sample_data=True)
    with TestClient(create_app(settings=settings, storage=storage)):
        pass
    with TestClient(create_app(settings=settings, storage=storage)):
        pass

    assert len(storage.list(Entity.departments)) == 4
    assert storage.get_user_by_username(settings.admin_username).role == UserRole.admin
    assert storage.get_doctor_by_user_id(storage.get_user_by_username("dr.smith").id) is not None
