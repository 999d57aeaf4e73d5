# carequeue/storage.py
# Keyed record store. `Storage` defines the primitives every backend must
# provide and builds the typed lookups and joined reads on top of them;
# `MemStorage` is the volatile in-process backend.
import abc
import copy
import enum
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional

import structlog
from pydantic import BaseModel, ValidationError

from . import schemas
from .exceptions import MissingRelation, NotFound, ValidationFailure
from .models import PrescriptionStatus
from .transitions import effective_appointment_status

logger = structlog.get_logger(__name__)


class Entity(str, enum.Enum):
    users = "users"
    departments = "departments"
    doctors = "doctors"
    nurses = "nurses"
    patients = "patients"
    pharmacy_staff = "pharmacy_staff"
    appointments = "appointments"
    tokens = "tokens"
    prescriptions = "prescriptions"
    drugs = "drugs"
    operation_theatres = "operation_theatres"
    surgeries = "surgeries"
    emergency_alerts = "emergency_alerts"


RECORD_SCHEMAS = {
    Entity.users: schemas.User,
    Entity.departments: schemas.Department,
    Entity.doctors: schemas.Doctor,
    Entity.nurses: schemas.Nurse,
    Entity.patients: schemas.Patient,
    Entity.pharmacy_staff: schemas.PharmacyStaff,
    Entity.appointments: schemas.Appointment,
    Entity.tokens: schemas.Token,
    Entity.prescriptions: schemas.Prescription,
    Entity.drugs: schemas.Drug,
    Entity.operation_theatres: schemas.OperationTheatre,
    Entity.surgeries: schemas.Surgery,
    Entity.emergency_alerts: schemas.EmergencyAlert,
}


ENTITY_LABELS = {
    Entity.users: "User",
    Entity.departments: "Department",
    Entity.doctors: "Doctor",
    Entity.nurses: "Nurse",
    Entity.patients: "Patient",
    Entity.pharmacy_staff: "Pharmacy staff",
    Entity.appointments: "Appointment",
    Entity.tokens: "Token",
    Entity.prescriptions: "Prescription",
    Entity.drugs: "Drug",
    Entity.operation_theatres: "Operation theatre",
    Entity.surgeries: "Surgery",
    Entity.emergency_alerts: "Emergency alert",
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Storage(abc.ABC):
    """Create/read/update per entity type plus joined read helpers."""

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self.clock = clock or utcnow

    # --- backend primitives ---

    @abc.abstractmethod
    def _insert(self, entity: Entity, values: Dict[str, Any]) -> BaseModel:
        """Persist a fully defaulted record (without id) and return it with its new id."""

    @abc.abstractmethod
    def _write(self, entity: Entity, record_id: int, fields: Dict[str, Any]) -> BaseModel:
        """Overwrite the given fields of an existing record and return it."""

    @abc.abstractmethod
    def get(self, entity: Entity, record_id: int) -> Optional[BaseModel]:
        ...

    @abc.abstractmethod
    def list(self, entity: Entity, **filters) -> List[BaseModel]:
        """All records of one type matching the equality filters, by ascending id."""

    @abc.abstractmethod
    def transaction(self) -> Iterator[None]:
        """Context manager: every write inside it lands, or none does."""

    # --- create / update ---

    def create(self, entity: Entity, data) -> BaseModel:
        schema = RECORD_SCHEMAS[entity]
        values = data.model_dump() if isinstance(data, BaseModel) else dict(data)
        if "created_at" in schema.model_fields:
            values.setdefault("created_at", self.clock())
        # Validate against the record schema so every backend applies the same defaults.
        record = schema.model_validate({**values, "id": 0})
        return self._insert(entity, record.model_dump(exclude={"id"}))

    def update(self, entity: Entity, record_id: int, fields) -> Optional[BaseModel]:
        """Shallow merge of the provided fields; returns None for an unknown id."""
        schema = RECORD_SCHEMAS[entity]
        if isinstance(fields, BaseModel):
            fields = fields.model_dump(exclude_unset=True)
        fields = {k: v for k, v in fields.items() if k in schema.model_fields and k != "id"}
        with self.transaction():
            current = self.get(entity, record_id)
            if current is None:
                return None
            if not fields:
                return current
            try:
                merged = schema.model_validate({**current.model_dump(), **fields})
            except ValidationError as e:
                raise ValidationFailure(f"Invalid {ENTITY_LABELS[entity].lower()} update: {e.errors()[0]['msg']}")
            return self._write(entity, record_id, merged.model_dump(include=set(fields)))

    def require(self, entity: Entity, record_id: int) -> BaseModel:
        record = self.get(entity, record_id)
        if record is None:
            raise NotFound(f"{ENTITY_LABELS[entity]} {record_id} not found")
        return record

    # --- typed lookups ---

    def _first(self, entity: Entity, **filters) -> Optional[BaseModel]:
        found = self.list(entity, **filters)
        return found[0] if found else None

    def get_user_by_username(self, username: str) -> Optional[schemas.User]:
        return self._first(Entity.users, username=username)

    def get_department_by_name(self, name: str) -> Optional[schemas.Department]:
        return self._first(Entity.departments, name=name)

    def get_doctor_by_user_id(self, user_id: int) -> Optional[schemas.Doctor]:
        return self._first(Entity.doctors, user_id=user_id)

    def get_nurse_by_user_id(self, user_id: int) -> Optional[schemas.Nurse]:
        return self._first(Entity.nurses, user_id=user_id)

    def get_patient_by_user_id(self, user_id: int) -> Optional[schemas.Patient]:
        return self._first(Entity.patients, user_id=user_id)

    def get_pharmacy_staff_by_user_id(self, user_id: int) -> Optional[schemas.PharmacyStaff]:
        return self._first(Entity.pharmacy_staff, user_id=user_id)

    def get_token_by_appointment(self, appointment_id: int) -> Optional[schemas.Token]:
        return self._first(Entity.tokens, appointment_id=appointment_id)

    # --- joins ---

    def _related(self, entity: Entity, record_id: Optional[int]) -> BaseModel:
        record = self.get(entity, record_id) if record_id is not None else None
        if record is None:
            raise MissingRelation(f"{entity.value} {record_id} is missing")
        return record

    def _user_view(self, user_id: int) -> schemas.UserResponse:
        return schemas.UserResponse(**self._related(Entity.users, user_id).model_dump())

    def _doctor_with_user(self, doctor: schemas.Doctor) -> schemas.DoctorWithUser:
        return schemas.DoctorWithUser(**doctor.model_dump(), user=self._user_view(doctor.user_id))

    def _patient_with_user(self, patient: schemas.Patient) -> schemas.PatientWithUser:
        return schemas.PatientWithUser(**patient.model_dump(), user=self._user_view(patient.user_id))

    def _appointment_detail(self, appointment: schemas.Appointment) -> schemas.AppointmentDetail:
        return schemas.AppointmentDetail(
            **appointment.model_dump(),
            patient=self._patient_with_user(self._related(Entity.patients, appointment.patient_id)),
            doctor=self._doctor_with_user(self._related(Entity.doctors, appointment.doctor_id)),
            department=self._related(Entity.departments, appointment.department_id),
        )

    def _token_detail(self, token: schemas.Token) -> schemas.TokenDetail:
        appointment = self._appointment_detail(self._related(Entity.appointments, token.appointment_id))
        return schemas.TokenDetail(
            **token.model_dump(),
            appointment=appointment,
            department=self._related(Entity.departments, token.department_id),
            effective_status=effective_appointment_status(appointment.status, token.status),
        )

    def _join_all(self, records: List[BaseModel], build: Callable) -> List[BaseModel]:
        """Apply a join builder to each record, omitting the ones with dangling references."""
        joined = []
        for record in records:
            try:
                joined.append(build(record))
            except MissingRelation as exc:
                logger.warning("joined_record_omitted", record_type=type(record).__name__,
                               record_id=record.id, reason=exc.message)
        return joined

    def _join_one(self, record: Optional[BaseModel], build: Callable, label: str, record_id: int):
        if record is None:
            raise NotFound(f"{label} {record_id} not found")
        try:
            return build(record)
        except MissingRelation as exc:
            raise NotFound(f"{label} {record_id} references missing data: {exc.message}")

    @staticmethod
    def _filters(**candidates) -> Dict[str, Any]:
        return {k: v for k, v in candidates.items() if v is not None}

    def get_doctors(self, department_id: Optional[int] = None) -> List[schemas.DoctorDetail]:
        def build(doctor):
            return schemas.DoctorDetail(
                **self._doctor_with_user(doctor).model_dump(),
                department=self._related(Entity.departments, doctor.department_id),
            )
        return self._join_all(self.list(Entity.doctors, **self._filters(department_id=department_id)), build)

    def get_nurses(self) -> List[schemas.NurseDetail]:
        def build(nurse):
            return schemas.NurseDetail(
                **nurse.model_dump(),
                user=self._user_view(nurse.user_id),
                department=self._related(Entity.departments, nurse.department_id),
            )
        return self._join_all(self.list(Entity.nurses), build)

    def get_patients(self) -> List[schemas.PatientWithUser]:
        return self._join_all(self.list(Entity.patients), self._patient_with_user)

    def get_patient_detail(self, patient_id: int) -> schemas.PatientWithUser:
        return self._join_one(self.get(Entity.patients, patient_id), self._patient_with_user, "Patient", patient_id)

    def get_pharmacy_staff(self) -> List[schemas.PharmacyStaffWithUser]:
        def build(staff):
            return schemas.PharmacyStaffWithUser(**staff.model_dump(), user=self._user_view(staff.user_id))
        return self._join_all(self.list(Entity.pharmacy_staff), build)

    def get_appointments(self, doctor_id: Optional[int] = None,
                         patient_id: Optional[int] = None) -> List[schemas.AppointmentDetail]:
        filters = self._filters(doctor_id=doctor_id, patient_id=patient_id)
        return self._join_all(self.list(Entity.appointments, **filters), self._appointment_detail)

    def get_appointment_detail(self, appointment_id: int) -> schemas.AppointmentDetail:
        return self._join_one(self.get(Entity.appointments, appointment_id), self._appointment_detail,
                              "Appointment", appointment_id)

    def get_tokens(self, department_id: Optional[int] = None) -> List[schemas.TokenDetail]:
        return self._join_all(self.list(Entity.tokens, **self._filters(department_id=department_id)),
                              self._token_detail)

    def get_token_detail(self, token_id: int) -> schemas.TokenDetail:
        return self._join_one(self.get(Entity.tokens, token_id), self._token_detail, "Token", token_id)

    def get_prescriptions(self, status: Optional[PrescriptionStatus] = None,
                          patient_id: Optional[int] = None) -> List[schemas.PrescriptionDetail]:
        def build(prescription):
            return schemas.PrescriptionDetail(
                **prescription.model_dump(),
                appointment=self._related(Entity.appointments, prescription.appointment_id),
                doctor=self._doctor_with_user(self._related(Entity.doctors, prescription.doctor_id)),
                patient=self._patient_with_user(self._related(Entity.patients, prescription.patient_id)),
            )
        filters = self._filters(status=status, patient_id=patient_id)
        return self._join_all(self.list(Entity.prescriptions, **filters), build)

    def get_surgeries(self, theatre_id: Optional[int] = None) -> List[schemas.SurgeryDetail]:
        def build(surgery):
            return schemas.SurgeryDetail(
                **surgery.model_dump(),
                patient=self._patient_with_user(self._related(Entity.patients, surgery.patient_id)),
                surgeon=self._doctor_with_user(self._related(Entity.doctors, surgery.surgeon_id)),
                theatre=self._related(Entity.operation_theatres, surgery.theatre_id),
            )
        return self._join_all(self.list(Entity.surgeries, **self._filters(theatre_id=theatre_id)), build)

    def get_emergency_alerts(self, active_only: bool = False) -> List[schemas.EmergencyAlertDetail]:
        def build(alert):
            return schemas.EmergencyAlertDetail(**alert.model_dump(), creator=self._user_view(alert.created_by))
        filters = {"is_active": True} if active_only else {}
        return self._join_all(self.list(Entity.emergency_alerts, **filters), build)


class MemStorage(Storage):
    """
    Volatile store: one dict per entity type and a per-type id counter.

    All access goes through one re-entrant lock, so there is a single writer
    at a time. Records handed out are copies; callers cannot mutate stored
    state in place.
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        super().__init__(clock)
        self._lock = threading.RLock()
        self._tables: Dict[Entity, Dict[int, BaseModel]] = {entity: {} for entity in Entity}
        self._next_ids: Dict[Entity, int] = {entity: 1 for entity in Entity}
        self._depth = 0

    def _insert(self, entity, values):
        with self._lock:
            record_id = self._next_ids[entity]
            self._next_ids[entity] += 1
            record = RECORD_SCHEMAS[entity](id=record_id, **values)
            self._tables[entity][record_id] = record
            return record.model_copy(deep=True)

    def _write(self, entity, record_id, fields):
        with self._lock:
            current = self._tables[entity][record_id]
            updated = RECORD_SCHEMAS[entity].model_validate({**current.model_dump(), **copy.deepcopy(fields)})
            self._tables[entity][record_id] = updated
            return updated.model_copy(deep=True)

    def get(self, entity, record_id):
        with self._lock:
            record = self._tables[entity].get(record_id)
            return record.model_copy(deep=True) if record is not None else None

    def list(self, entity, **filters):
        with self._lock:
            return [
                record.model_copy(deep=True)
                for _, record in sorted(self._tables[entity].items())
                if all(getattr(record, field) == value for field, value in filters.items())
            ]

    @contextmanager
    def transaction(self):
        with self._lock:
            outermost = self._depth == 0
            # Records are replaced, never mutated, so shallow copies of the maps suffice.
            snapshot = {entity: dict(table) for entity, table in self._tables.items()} if outermost else None
            self._depth += 1
            try:
                yield
            except BaseException:
                if outermost:
                    # Counters are left alone: ids are never reused.
                    self._tables = snapshot
                raise
            finally:
                self._depth -= 1
