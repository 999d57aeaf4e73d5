# carequeue/routers/staff.py
# Doctor, nurse and pharmacy staff profiles.
import logging
from typing import List

from fastapi import APIRouter, Depends, status

from .. import schemas, security
from ..access import Operation, authorize
from ..dependencies import get_storage
from ..exceptions import ValidationFailure
from ..models import UserRole
from ..storage import Entity, Storage

logger = logging.getLogger(__name__)

router = APIRouter(
    tags=["Staff"],
    responses={404: {"description": "Not found"}},
)


def _profile_owner(storage: Storage, user_id: int, role: UserRole, existing) -> schemas.User:
    """The user a new profile is attached to: must exist, hold `role` and have no profile yet."""
    user = storage.require(Entity.users, user_id)
    if user.role != role:
        raise ValidationFailure(f"User {user_id} is a {user.role.value}, not a {role.value}")
    if existing(user_id):
        raise ValidationFailure(f"User {user_id} already has a {role.value} profile")
    return user


# --- Doctors ---

@router.get("/doctors", response_model=List[schemas.DoctorDetail])
def list_doctors(
    storage: Storage = Depends(get_storage),
    current_user: schemas.User = Depends(security.get_current_user),
):
    return storage.get_doctors()


@router.get("/doctors/department/{department_id}", response_model=List[schemas.DoctorDetail])
def list_department_doctors(
    department_id: int,
    storage: Storage = Depends(get_storage),
    current_user: schemas.User = Depends(security.get_current_user),
):
    storage.require(Entity.departments, department_id)
    return storage.get_doctors(department_id=department_id)


@router.post("/doctors", response_model=schemas.Doctor, status_code=status.HTTP_201_CREATED)
async def create_doctor(
    doctor: schemas.DoctorCreate,
    storage: Storage = Depends(get_storage),
    current_user: schemas.User = Depends(security.require_operation(Operation.MANAGE_STAFF)),
):
    with storage.transaction():
        _profile_owner(storage, doctor.user_id, UserRole.doctor, storage.get_doctor_by_user_id)
        storage.require(Entity.departments, doctor.department_id)
        return storage.create(Entity.doctors, doctor)


@router.patch("/doctors/{doctor_id}/availability", response_model=schemas.Doctor)
async def set_doctor_availability(
    doctor_id: int,
    availability: schemas.AvailabilityUpdate,
    storage: Storage = Depends(get_storage),
    current_user: schemas.User = Depends(security.get_current_user),
):
    doctor = storage.require(Entity.doctors, doctor_id)
    authorize(current_user, Operation.SET_DOCTOR_AVAILABILITY, owner_user_id=doctor.user_id)
    logger.info("Doctor %s availability set to %s by user %s", doctor_id, availability.is_available, current_user.id)
    return storage.update(Entity.doctors, doctor_id, availability)


# --- Nurses ---

@router.get("/nurses", response_model=List[schemas.NurseDetail])
def list_nurses(
    storage: Storage = Depends(get_storage),
    current_user: schemas.User = Depends(security.get_current_user),
):
    return storage.get_nurses()


@router.post("/nurses", response_model=schemas.Nurse, status_code=status.HTTP_201_CREATED)
async def create_nurse(
    nurse: schemas.NurseCreate,
    storage: Storage = Depends(get_storage),
    current_user: schemas.User = Depends(security.require_operation(Operation.MANAGE_STAFF)),
):
    with storage.transaction():
        _profile_owner(storage, nurse.user_id, UserRole.nurse, storage.get_nurse_by_user_id)
        storage.require(Entity.departments, nurse.department_id)
        return storage.create(Entity.nurses, nurse)


@router.patch("/nurses/{nurse_id}/duty", response_model=schemas.Nurse)
async def set_nurse_duty(
    nurse_id: int,
    duty: schemas.DutyUpdate,
    storage: Storage = Depends(get_storage),
    current_user: schemas.User = Depends(security.get_current_user),
):
    nurse = storage.require(Entity.nurses, nurse_id)
    authorize(current_user, Operation.SET_NURSE_DUTY, owner_user_id=nurse.user_id)
    return storage.update(Entity.nurses, nurse_id, duty)


# --- Pharmacy staff ---

@router.get("/pharmacy-staff", response_model=List[schemas.PharmacyStaffWithUser])
def list_pharmacy_staff(
    storage: Storage = Depends(get_storage),
    current_user: schemas.User = Depends(security.get_current_user),
):
    return storage.get_pharmacy_staff()


@router.post("/pharmacy-staff", response_model=schemas.PharmacyStaff, status_code=status.HTTP_201_CREATED)
async def create_pharmacy_staff(
    staff: schemas.PharmacyStaffCreate,
    storage: Storage = Depends(get_storage),
    current_user: schemas.User = Depends(security.require_operation(Operation.MANAGE_STAFF)),
):
    with storage.transaction():
        _profile_owner(storage, staff.user_id, UserRole.pharmacy, storage.get_pharmacy_staff_by_user_id)
        return storage.create(Entity.pharmacy_staff, staff)
