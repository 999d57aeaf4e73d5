# carequeue/schemas.py
from datetime import datetime, date, timezone
from typing import Annotated, List, Optional, Dict, Any
from pydantic import BaseModel, Field, EmailStr, AfterValidator, field_validator

from .models import (
    UserRole, TokenStatus, AppointmentStatus, PrescriptionStatus,
    SurgeryStatus, AlertType,
)


def _ensure_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything in the system is UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


UTCDateTime = Annotated[datetime, AfterValidator(_ensure_utc)]


# --- Base Schemas ---
class BaseSchema(BaseModel):
    class Config:
        from_attributes = True


# ==================== RECORDS ====================

class User(BaseSchema):
    id: int
    username: str
    password_hash: str
    role: UserRole
    full_name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    is_active: bool = True
    created_at: UTCDateTime


class UserResponse(BaseSchema):
    id: int
    username: str
    role: UserRole
    full_name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    is_active: bool = True
    created_at: UTCDateTime


class Department(BaseSchema):
    id: int
    name: str
    description: Optional[str] = None
    is_active: bool = True
    created_at: UTCDateTime


class Doctor(BaseSchema):
    id: int
    user_id: int
    department_id: int
    specialization: str
    type: str
    license_number: str
    is_available: bool = True


class Nurse(BaseSchema):
    id: int
    user_id: int
    department_id: int
    shift: str
    is_on_duty: bool = False


class Patient(BaseSchema):
    id: int
    user_id: int
    date_of_birth: Optional[UTCDateTime] = None
    gender: Optional[str] = None
    address: Optional[str] = None
    emergency_contact: Optional[str] = None
    blood_group: Optional[str] = None
    allergies: Optional[str] = None


class PharmacyStaff(BaseSchema):
    id: int
    user_id: int
    position: str
    is_on_duty: bool = False


class Appointment(BaseSchema):
    id: int
    patient_id: int
    doctor_id: int
    department_id: int
    appointment_date: UTCDateTime
    token_number: str
    status: AppointmentStatus = AppointmentStatus.scheduled
    notes: Optional[str] = None
    created_at: UTCDateTime


class Token(BaseSchema):
    id: int
    appointment_id: int
    department_id: int
    token_number: str
    status: TokenStatus = TokenStatus.waiting
    called_at: Optional[UTCDateTime] = None
    completed_at: Optional[UTCDateTime] = None
    created_at: UTCDateTime


class Medication(BaseSchema):
    name: str = Field(..., min_length=1)
    dosage: str = Field(..., min_length=1)
    frequency: str = Field(..., min_length=1)
    duration: str = Field(..., min_length=1)
    instructions: Optional[str] = None


class Prescription(BaseSchema):
    id: int
    appointment_id: int
    doctor_id: int
    patient_id: int
    medications: List[Medication]
    instructions: Optional[str] = None
    status: PrescriptionStatus = PrescriptionStatus.pending
    created_at: UTCDateTime
    dispensed_at: Optional[UTCDateTime] = None
    dispensed_by: Optional[int] = None


class Drug(BaseSchema):
    id: int
    name: str
    generic_name: Optional[str] = None
    manufacturer: Optional[str] = None
    batch_number: Optional[str] = None
    expiry_date: Optional[UTCDateTime] = None
    quantity: int = 0
    unit_price: Optional[int] = None
    min_stock_level: int = 10
    is_active: bool = True


class OperationTheatre(BaseSchema):
    id: int
    name: str
    is_available: bool = True
    current_surgery: Optional[int] = None
    next_available: Optional[UTCDateTime] = None


class Surgery(BaseSchema):
    id: int
    patient_id: int
    surgeon_id: int
    theatre_id: int
    surgery_type: str
    scheduled_date: UTCDateTime
    duration: Optional[int] = None
    status: SurgeryStatus = SurgeryStatus.scheduled
    notes: Optional[str] = None
    created_at: UTCDateTime


class EmergencyAlert(BaseSchema):
    id: int
    type: AlertType
    location: str
    message: Optional[str] = None
    is_active: bool = True
    created_by: int
    created_at: UTCDateTime
    resolved_at: Optional[UTCDateTime] = None


# ==================== INPUTS ====================

class UserCreate(BaseSchema):
    username: str = Field(..., min_length=3, max_length=50)
    password: str = Field(..., min_length=8)
    full_name: str = Field(..., min_length=1, max_length=120)
    email: Optional[EmailStr] = None
    phone: Optional[str] = Field(None, max_length=20)

    @field_validator("password")
    @classmethod
    def validate_password(cls, v):
        if not any(char.isdigit() for char in v):
            raise ValueError("Password must contain at least one digit")
        return v


class StaffUserCreate(UserCreate):
    """Admin-created account; the role decides which profile is created with it."""
    role: UserRole
    department_id: Optional[int] = None
    specialization: Optional[str] = None
    type: str = "consultant"
    license_number: Optional[str] = None
    shift: str = "day"
    position: str = "pharmacist"


class DepartmentCreate(BaseSchema):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None
    is_active: bool = True


class DepartmentUpdate(BaseSchema):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = None
    is_active: Optional[bool] = None


class DoctorCreate(BaseSchema):
    user_id: int
    department_id: int
    specialization: str = Field(..., min_length=1)
    type: str = "consultant"
    license_number: str = Field(..., min_length=1)
    is_available: bool = True


class NurseCreate(BaseSchema):
    user_id: int
    department_id: int
    shift: str = "day"
    is_on_duty: bool = False


class PatientCreate(BaseSchema):
    user_id: int
    date_of_birth: Optional[UTCDateTime] = None
    gender: Optional[str] = None
    address: Optional[str] = None
    emergency_contact: Optional[str] = None
    blood_group: Optional[str] = None
    allergies: Optional[str] = None


class PatientUpdate(BaseSchema):
    date_of_birth: Optional[UTCDateTime] = None
    gender: Optional[str] = None
    address: Optional[str] = None
    emergency_contact: Optional[str] = None
    blood_group: Optional[str] = None
    allergies: Optional[str] = None


class PharmacyStaffCreate(BaseSchema):
    user_id: int
    position: str = "pharmacist"
    is_on_duty: bool = False


class AvailabilityUpdate(BaseSchema):
    is_available: bool


class DutyUpdate(BaseSchema):
    is_on_duty: bool


class AppointmentCreate(BaseSchema):
    patient_id: int
    doctor_id: int
    department_id: int
    appointment_date: UTCDateTime
    token_number: Optional[str] = Field(None, max_length=20)
    notes: Optional[str] = None


class AppointmentUpdate(BaseSchema):
    appointment_date: Optional[UTCDateTime] = None
    notes: Optional[str] = None
    status: Optional[AppointmentStatus] = None


class TokenUpdate(BaseSchema):
    status: TokenStatus
    called_at: Optional[UTCDateTime] = None
    completed_at: Optional[UTCDateTime] = None


class CallNextRequest(BaseSchema):
    doctor_id: Optional[int] = None
    day: Optional[date] = None


class PrescriptionCreate(BaseSchema):
    appointment_id: int
    medications: List[Medication] = Field(..., min_length=1)
    instructions: Optional[str] = None


class DrugCreate(BaseSchema):
    name: str = Field(..., min_length=1)
    generic_name: Optional[str] = None
    manufacturer: Optional[str] = None
    batch_number: Optional[str] = None
    expiry_date: Optional[UTCDateTime] = None
    quantity: int = Field(0, ge=0)
    unit_price: Optional[int] = Field(None, ge=0)
    min_stock_level: int = Field(10, ge=0)
    is_active: bool = True


class DrugUpdate(BaseSchema):
    name: Optional[str] = Field(None, min_length=1)
    generic_name: Optional[str] = None
    manufacturer: Optional[str] = None
    batch_number: Optional[str] = None
    expiry_date: Optional[UTCDateTime] = None
    quantity: Optional[int] = Field(None, ge=0)
    unit_price: Optional[int] = Field(None, ge=0)
    min_stock_level: Optional[int] = Field(None, ge=0)
    is_active: Optional[bool] = None


class OperationTheatreCreate(BaseSchema):
    name: str = Field(..., min_length=1)
    is_available: bool = True
    current_surgery: Optional[int] = None
    next_available: Optional[UTCDateTime] = None


class OperationTheatreUpdate(BaseSchema):
    name: Optional[str] = Field(None, min_length=1)
    is_available: Optional[bool] = None
    current_surgery: Optional[int] = None
    next_available: Optional[UTCDateTime] = None


class SurgeryCreate(BaseSchema):
    patient_id: int
    surgeon_id: int
    theatre_id: int
    surgery_type: str = Field(..., min_length=1)
    scheduled_date: UTCDateTime
    duration: Optional[int] = Field(None, gt=0)
    notes: Optional[str] = None


class SurgeryUpdate(BaseSchema):
    theatre_id: Optional[int] = None
    scheduled_date: Optional[UTCDateTime] = None
    duration: Optional[int] = Field(None, gt=0)
    status: Optional[SurgeryStatus] = None
    notes: Optional[str] = None


class EmergencyAlertCreate(BaseSchema):
    type: AlertType
    location: str = Field(..., min_length=1)
    message: Optional[str] = None


# ==================== JOINED READS ====================

class DoctorWithUser(Doctor):
    user: UserResponse


class DoctorDetail(DoctorWithUser):
    department: Department


class NurseDetail(Nurse):
    user: UserResponse
    department: Department


class PatientWithUser(Patient):
    user: UserResponse


class PharmacyStaffWithUser(PharmacyStaff):
    user: UserResponse


class AppointmentDetail(Appointment):
    patient: PatientWithUser
    doctor: DoctorWithUser
    department: Department


class TokenDetail(Token):
    appointment: AppointmentDetail
    department: Department
    # Appointment status as the queue should display it (see effective_appointment_status)
    effective_status: AppointmentStatus


class PrescriptionDetail(Prescription):
    appointment: Appointment
    doctor: DoctorWithUser
    patient: PatientWithUser


class SurgeryDetail(Surgery):
    patient: PatientWithUser
    surgeon: DoctorWithUser
    theatre: OperationTheatre


class EmergencyAlertDetail(EmergencyAlert):
    creator: UserResponse


# ==================== QUEUE ====================

class QueueEntry(BaseSchema):
    position: int
    token: Token
    appointment: Appointment
    patient_name: str
    effective_status: AppointmentStatus


class QueueTransition(BaseSchema):
    token: Token
    appointment: Appointment


class StaleAppointment(BaseSchema):
    appointment_id: int
    token_id: int
    token_status: TokenStatus
    stored_status: AppointmentStatus
    effective_status: AppointmentStatus


class QueueConsistencyReport(BaseModel):
    checked_at: datetime
    stale_appointments: List[StaleAppointment] = []


class QueueRepairReport(BaseModel):
    checked_at: datetime
    repaired: List[StaleAppointment] = []
    errors: List[str] = []


# ==================== MISC ====================

class TokenResponse(BaseModel):
    access_token: str
    token_type: str
    expires_in: int
    user: UserResponse


class DashboardStatsResponse(BaseModel):
    waiting_tokens: int
    called_tokens: int
    serving_tokens: int
    appointments_today: int
    pending_prescriptions: int
    low_stock_drugs: int
    active_alerts: int


class BroadcastEvent(BaseModel):
    type: str
    data: Dict[str, Any]
    timestamp: str
