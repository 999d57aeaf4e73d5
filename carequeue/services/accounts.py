# carequeue/services/accounts.py
# Account creation: a user row plus the role profile that goes with it.
import structlog

from .. import schemas
from ..exceptions import ValidationFailure
from ..models import UserRole
from ..security import get_password_hash
from ..storage import Entity, Storage

logger = structlog.get_logger(__name__)


def _create_user(storage: Storage, data: schemas.UserCreate, role: UserRole, password_hash: str) -> schemas.User:
    if storage.get_user_by_username(data.username):
        raise ValidationFailure("Username already registered")
    return storage.create(Entity.users, {
        "username": data.username,
        "password_hash": password_hash,
        "role": role,
        "full_name": data.full_name,
        "email": data.email,
        "phone": data.phone,
    })


def register_patient(storage: Storage, data: schemas.UserCreate) -> schemas.User:
    """Self-registration: always a patient account with an empty patient profile."""
    # hash outside the transaction so the store lock is not held through argon2
    password_hash = get_password_hash(data.password)
    with storage.transaction():
        user = _create_user(storage, data, UserRole.patient, password_hash)
        storage.create(Entity.patients, {"user_id": user.id})
    logger.info("patient_registered", user_id=user.id, username=user.username)
    return user


def create_staff_account(storage: Storage, data: schemas.StaffUserCreate) -> schemas.User:
    """Admin-side account creation for any role, profile included."""
    if data.role in (UserRole.doctor, UserRole.nurse):
        if data.department_id is None:
            raise ValidationFailure(f"department_id is required for a {data.role.value}")
        storage.require(Entity.departments, data.department_id)
    if data.role == UserRole.doctor and not (data.specialization and data.license_number):
        raise ValidationFailure("specialization and license_number are required for a doctor")

    password_hash = get_password_hash(data.password)
    with storage.transaction():
        user = _create_user(storage, data, data.role, password_hash)
        if data.role == UserRole.doctor:
            storage.create(Entity.doctors, {
                "user_id": user.id,
                "department_id": data.department_id,
                "specialization": data.specialization,
                "type": data.type,
                "license_number": data.license_number,
            })
        elif data.role == UserRole.nurse:
            storage.create(Entity.nurses, {
                "user_id": user.id,
                "department_id": data.department_id,
                "shift": data.shift,
            })
        elif data.role == UserRole.pharmacy:
            storage.create(Entity.pharmacy_staff, {"user_id": user.id, "position": data.position})
        elif data.role == UserRole.patient:
            storage.create(Entity.patients, {"user_id": user.id})

    logger.info("account_created", user_id=user.id, username=user.username, role=user.role.value)
    return user
