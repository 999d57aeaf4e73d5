# carequeue/models.py
from sqlalchemy import (
    Column, Integer, String, DateTime, ForeignKey, Text,
    Enum as SQLAlchemyEnum, Boolean, JSON, Index,
)
from .database import Base
import enum


class UserRole(str, enum.Enum):
    admin = "admin"
    doctor = "doctor"
    nurse = "nurse"
    patient = "patient"
    pharmacy = "pharmacy"


class TokenStatus(str, enum.Enum):
    waiting = "waiting"
    called = "called"
    serving = "serving"
    completed = "completed"


class AppointmentStatus(str, enum.Enum):
    scheduled = "scheduled"
    in_progress = "in-progress"
    completed = "completed"
    cancelled = "cancelled"


class PrescriptionStatus(str, enum.Enum):
    pending = "pending"
    dispensed = "dispensed"


class SurgeryStatus(str, enum.Enum):
    scheduled = "scheduled"
    in_progress = "in-progress"
    completed = "completed"
    cancelled = "cancelled"


class AlertType(str, enum.Enum):
    code_red = "code-red"
    code_blue = "code-blue"
    code_yellow = "code-yellow"
    code_green = "code-green"


class EventType(str, enum.Enum):
    appointment_update = "appointment_update"
    token_update = "token_update"
    emergency_alert = "emergency_alert"
    prescription_created = "prescription_created"
    connected = "connected"


def _enum_column(enum_cls, name, **kwargs):
    # Persist the enum values ("in-progress"), not the member names.
    return Column(
        SQLAlchemyEnum(
            enum_cls,
            name=name,
            native_enum=False,
            values_callable=lambda members: [m.value for m in members],
        ),
        **kwargs,
    )


# Every table uses AUTOINCREMENT so SQLite never reuses the id of a committed row.
_TABLE_ARGS = {"sqlite_autoincrement": True}


class User(Base):
    __tablename__ = "users"
    __table_args__ = (
        Index("idx_users_role_active", "role", "is_active"),
        _TABLE_ARGS,
    )

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String(50), unique=True, index=True, nullable=False)
    password_hash = Column(String(255), nullable=False)
    role = _enum_column(UserRole, "user_role", nullable=False)
    full_name = Column(String(120), nullable=False)
    email = Column(String(255), nullable=True)
    phone = Column(String(20), nullable=True)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False)


class Department(Base):
    __tablename__ = "departments"
    __table_args__ = _TABLE_ARGS

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), unique=True, nullable=False)
    description = Column(Text, nullable=True)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False)


class Doctor(Base):
    __tablename__ = "doctors"
    __table_args__ = _TABLE_ARGS

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), unique=True, nullable=False)
    department_id = Column(Integer, ForeignKey("departments.id"), nullable=False)
    specialization = Column(String(100), nullable=False)
    type = Column(String(30), nullable=False)  # consultant, surgeon
    license_number = Column(String(50), nullable=False)
    is_available = Column(Boolean, default=True)


class Nurse(Base):
    __tablename__ = "nurses"
    __table_args__ = _TABLE_ARGS

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), unique=True, nullable=False)
    department_id = Column(Integer, ForeignKey("departments.id"), nullable=False)
    shift = Column(String(20), nullable=False)  # day, night
    is_on_duty = Column(Boolean, default=False)


class Patient(Base):
    __tablename__ = "patients"
    __table_args__ = _TABLE_ARGS

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), unique=True, nullable=False)
    date_of_birth = Column(DateTime(timezone=True), nullable=True)
    gender = Column(String(20), nullable=True)
    address = Column(Text, nullable=True)
    emergency_contact = Column(String(100), nullable=True)
    blood_group = Column(String(5), nullable=True)
    allergies = Column(Text, nullable=True)


class PharmacyStaff(Base):
    __tablename__ = "pharmacy_staff"
    __table_args__ = _TABLE_ARGS

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), unique=True, nullable=False)
    position = Column(String(30), nullable=False)  # pharmacist, technician
    is_on_duty = Column(Boolean, default=False)


class Appointment(Base):
    __tablename__ = "appointments"
    __table_args__ = (
        Index("idx_appointments_doctor_date", "doctor_id", "appointment_date"),
        Index("idx_appointments_patient", "patient_id"),
        _TABLE_ARGS,
    )

    id = Column(Integer, primary_key=True, index=True)
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=False)
    doctor_id = Column(Integer, ForeignKey("doctors.id"), nullable=False)
    department_id = Column(Integer, ForeignKey("departments.id"), nullable=False)
    appointment_date = Column(DateTime(timezone=True), nullable=False)
    token_number = Column(String(20), nullable=False)
    status = _enum_column(AppointmentStatus, "appointment_status", nullable=False)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)


class Token(Base):
    __tablename__ = "tokens"
    __table_args__ = (
        Index("idx_tokens_department_status", "department_id", "status"),
        _TABLE_ARGS,
    )

    id = Column(Integer, primary_key=True, index=True)
    appointment_id = Column(Integer, ForeignKey("appointments.id"), unique=True, nullable=False)
    department_id = Column(Integer, ForeignKey("departments.id"), nullable=False)
    token_number = Column(String(20), nullable=False)
    status = _enum_column(TokenStatus, "token_status", nullable=False)
    called_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)


class Prescription(Base):
    __tablename__ = "prescriptions"
    __table_args__ = (
        Index("idx_prescriptions_status", "status"),
        _TABLE_ARGS,
    )

    id = Column(Integer, primary_key=True, index=True)
    appointment_id = Column(Integer, ForeignKey("appointments.id"), nullable=False)
    doctor_id = Column(Integer, ForeignKey("doctors.id"), nullable=False)
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=False)
    medications = Column(JSON, nullable=False)  # ordered list of medication entries
    instructions = Column(Text, nullable=True)
    status = _enum_column(PrescriptionStatus, "prescription_status", nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)
    dispensed_at = Column(DateTime(timezone=True), nullable=True)
    dispensed_by = Column(Integer, ForeignKey("pharmacy_staff.id"), nullable=True)


class Drug(Base):
    __tablename__ = "drugs"
    __table_args__ = _TABLE_ARGS

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(120), nullable=False)
    generic_name = Column(String(120), nullable=True)
    manufacturer = Column(String(120), nullable=True)
    batch_number = Column(String(50), nullable=True)
    expiry_date = Column(DateTime(timezone=True), nullable=True)
    quantity = Column(Integer, default=0)
    unit_price = Column(Integer, nullable=True)  # in cents
    min_stock_level = Column(Integer, default=10)
    is_active = Column(Boolean, default=True)


class OperationTheatre(Base):
    __tablename__ = "operation_theatres"
    __table_args__ = _TABLE_ARGS

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    is_available = Column(Boolean, default=True)
    current_surgery = Column(Integer, nullable=True)
    next_available = Column(DateTime(timezone=True), nullable=True)


class Surgery(Base):
    __tablename__ = "surgeries"
    __table_args__ = _TABLE_ARGS

    id = Column(Integer, primary_key=True, index=True)
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=False)
    surgeon_id = Column(Integer, ForeignKey("doctors.id"), nullable=False)
    theatre_id = Column(Integer, ForeignKey("operation_theatres.id"), nullable=False)
    surgery_type = Column(String(120), nullable=False)
    scheduled_date = Column(DateTime(timezone=True), nullable=False)
    duration = Column(Integer, nullable=True)  # in minutes
    status = _enum_column(SurgeryStatus, "surgery_status", nullable=False)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)


class EmergencyAlert(Base):
    __tablename__ = "emergency_alerts"
    __table_args__ = (
        Index("idx_emergency_alerts_active", "is_active"),
        _TABLE_ARGS,
    )

    id = Column(Integer, primary_key=True, index=True)
    type = _enum_column(AlertType, "alert_type", nullable=False)
    location = Column(String(120), nullable=False)
    message = Column(Text, nullable=True)
    is_active = Column(Boolean, default=True)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)
    resolved_at = Column(DateTime(timezone=True), nullable=True)
