# tests/conftest.py
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

from carequeue import schemas
from carequeue.config import TestingConfig
from carequeue.main import create_app
from carequeue.models import UserRole
from carequeue.security import create_access_token, get_password_hash
from carequeue.services.queue_service import QueueService
from carequeue.sql_storage import SqlStorage
from carequeue.storage import Entity, MemStorage

PASSWORD = "Secret123"
START = datetime(2026, 3, 2, 9, 0, 0, 123000, tzinfo=timezone.utc)


class FixedClock:
    """Clock that only moves when a test says so."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@lru_cache()
def password_hash() -> str:
    # argon2 is slow on purpose; hash once per run
    return get_password_hash(PASSWORD)


def add_account(storage, username, role, full_name=None, is_active=True):
    return storage.create(Entity.users, {
        "username": username,
        "password_hash": password_hash(),
        "role": role,
        "full_name": full_name or username.title(),
        "is_active": is_active,
    })


def snapshot(storage):
    """Every record in the store, for before/after comparisons."""
    return {entity: [record.model_dump() for record in storage.list(entity)] for entity in Entity}


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture(params=["memory", "sql"])
def storage(request, clock):
    if request.param == "sql":
        store = SqlStorage.from_url("sqlite://", clock=clock)
        yield store
        store.close()
    else:
        yield MemStorage(clock=clock)


@pytest.fixture
def hospital(storage):
    h = SimpleNamespace(storage=storage)
    h.cardiology = storage.create(Entity.departments, {"name": "Cardiology", "description": "Heart care"})
    h.emergency = storage.create(Entity.departments, {"name": "Emergency"})

    h.admin = add_account(storage, "admin", UserRole.admin, "Hospital Administrator")

    h.doctor_user = add_account(storage, "dr.smith", UserRole.doctor, "Dr. John Smith")
    h.doctor = storage.create(Entity.doctors, {
        "user_id": h.doctor_user.id, "department_id": h.cardiology.id,
        "specialization": "Cardiologist", "type": "specialist", "license_number": "DOC001",
    })
    h.other_doctor_user = add_account(storage, "dr.jones", UserRole.doctor, "Dr. Sarah Jones")
    h.other_doctor = storage.create(Entity.doctors, {
        "user_id": h.other_doctor_user.id, "department_id": h.emergency.id,
        "specialization": "Emergency Medicine", "type": "emergency", "license_number": "DOC002",
    })

    h.nurse_user = add_account(storage, "nurse.mary", UserRole.nurse, "Mary Johnson")
    h.nurse = storage.create(Entity.nurses, {"user_id": h.nurse_user.id, "department_id": h.cardiology.id,
                                             "shift": "day"})
    h.pharmacist_user = add_account(storage, "pharmacy.bob", UserRole.pharmacy, "Bob Wilson")
    h.pharmacist = storage.create(Entity.pharmacy_staff, {"user_id": h.pharmacist_user.id, "position": "pharmacist"})

    h.patient_user = add_account(storage, "alice", UserRole.patient, "Alice Brown")
    h.patient = storage.create(Entity.patients, {"user_id": h.patient_user.id, "blood_group": "O+"})
    h.other_patient_user = add_account(storage, "bob", UserRole.patient, "Bob Green")
    h.other_patient = storage.create(Entity.patients, {"user_id": h.other_patient_user.id})
    return h


@pytest.fixture
def queue(storage, clock):
    return QueueService(storage, clock=clock)


@pytest.fixture
def book(queue, hospital, clock):
    """Book an appointment (admin by default) and return it with its token."""
    def _book(patient=None, doctor=None, department=None, when=None, actor=None, **extra):
        doctor = doctor or hospital.doctor
        request = schemas.AppointmentCreate(
            patient_id=(patient or hospital.patient).id,
            doctor_id=doctor.id,
            department_id=(department or hospital.cardiology).id,
            appointment_date=when or clock(),
            **extra,
        )
        appointment = queue.book_appointment(actor or hospital.admin, request)
        return appointment, hospital.storage.get_token_by_appointment(appointment.id)
    return _book


@pytest.fixture
def app(storage, clock):
    return create_app(settings=TestingConfig(), storage=storage, clock=clock)


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def access_token(app):
    def _token(user):
        return create_access_token(
            {"sub": user.username, "user_id": user.id, "role": user.role.value},
            app.state.settings,
        )
    return _token


@pytest.fixture
def auth_headers(access_token):
    def _headers(user):
        return {"Authorization": f"Bearer {access_token(user)}"}
    return _headers
