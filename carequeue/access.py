# carequeue/access.py
# Access-Control Gate. Every operation declares which roles may run it
# unconditionally and which roles may run it only on resources they own.
# The gate is stateless: it looks at the caller's role and id and at the
# owning user id of the target resource, nothing else.
import enum
from dataclasses import dataclass, field
from typing import FrozenSet, Optional

import structlog

from .exceptions import AuthenticationRequired, AuthorizationDenied
from .models import UserRole
from . import schemas

audit_logger = structlog.get_logger("carequeue.audit")

ALL_ROLES = frozenset(UserRole)
STAFF = frozenset({UserRole.admin, UserRole.doctor, UserRole.nurse})


class Operation(str, enum.Enum):
    # queue
    BOOK_APPOINTMENT = "book_appointment"
    CALL_TOKEN = "call_token"
    START_CONSULTATION = "start_consultation"
    COMPLETE_CONSULTATION = "complete_consultation"
    CANCEL_APPOINTMENT = "cancel_appointment"
    UPDATE_APPOINTMENT = "update_appointment"
    REPAIR_QUEUE = "repair_queue"
    # reads
    READ_QUEUE = "read_queue"
    READ_APPOINTMENTS = "read_appointments"
    READ_PATIENT = "read_patient"
    LIST_PATIENTS = "list_patients"
    READ_PRESCRIPTIONS = "read_prescriptions"
    READ_PENDING_PRESCRIPTIONS = "read_pending_prescriptions"
    READ_DASHBOARD = "read_dashboard"
    # staff and clinical records
    MANAGE_DEPARTMENTS = "manage_departments"
    MANAGE_STAFF = "manage_staff"
    SET_DOCTOR_AVAILABILITY = "set_doctor_availability"
    SET_NURSE_DUTY = "set_nurse_duty"
    UPDATE_PATIENT = "update_patient"
    CREATE_PRESCRIPTION = "create_prescription"
    DISPENSE_PRESCRIPTION = "dispense_prescription"
    MANAGE_DRUGS = "manage_drugs"
    CREATE_THEATRE = "create_theatre"
    UPDATE_THEATRE = "update_theatre"
    MANAGE_SURGERIES = "manage_surgeries"
    RAISE_ALERT = "raise_alert"
    RESOLVE_ALERT = "resolve_alert"


@dataclass(frozen=True)
class Policy:
    roles: FrozenSet[UserRole]
    # Roles allowed only when the caller owns the target resource.
    owner_roles: FrozenSet[UserRole] = field(default_factory=frozenset)


POLICIES = {
    Operation.BOOK_APPOINTMENT: Policy(frozenset({UserRole.admin}), frozenset({UserRole.patient})),
    Operation.CALL_TOKEN: Policy(STAFF),
    Operation.START_CONSULTATION: Policy(frozenset(), frozenset({UserRole.doctor})),
    Operation.COMPLETE_CONSULTATION: Policy(frozenset(), frozenset({UserRole.doctor})),
    Operation.CANCEL_APPOINTMENT: Policy(frozenset({UserRole.admin}), frozenset({UserRole.patient})),
    Operation.UPDATE_APPOINTMENT: Policy(STAFF, frozenset({UserRole.patient})),
    Operation.REPAIR_QUEUE: Policy(frozenset({UserRole.admin})),

    Operation.READ_QUEUE: Policy(ALL_ROLES),
    Operation.READ_APPOINTMENTS: Policy(STAFF, ALL_ROLES),
    Operation.READ_PATIENT: Policy(STAFF, ALL_ROLES),
    Operation.LIST_PATIENTS: Policy(STAFF),
    Operation.READ_PRESCRIPTIONS: Policy(STAFF | {UserRole.pharmacy}, ALL_ROLES),
    Operation.READ_PENDING_PRESCRIPTIONS: Policy(frozenset({UserRole.admin, UserRole.pharmacy})),
    Operation.READ_DASHBOARD: Policy(ALL_ROLES),

    Operation.MANAGE_DEPARTMENTS: Policy(frozenset({UserRole.admin})),
    Operation.MANAGE_STAFF: Policy(frozenset({UserRole.admin})),
    Operation.SET_DOCTOR_AVAILABILITY: Policy(frozenset({UserRole.admin}), frozenset({UserRole.doctor})),
    Operation.SET_NURSE_DUTY: Policy(frozenset({UserRole.admin}), frozenset({UserRole.nurse})),
    Operation.UPDATE_PATIENT: Policy(STAFF, ALL_ROLES),
    Operation.CREATE_PRESCRIPTION: Policy(frozenset({UserRole.doctor})),
    Operation.DISPENSE_PRESCRIPTION: Policy(frozenset({UserRole.admin, UserRole.pharmacy})),
    Operation.MANAGE_DRUGS: Policy(frozenset({UserRole.admin, UserRole.pharmacy})),
    Operation.CREATE_THEATRE: Policy(frozenset({UserRole.admin})),
    Operation.UPDATE_THEATRE: Policy(frozenset({UserRole.admin, UserRole.doctor})),
    Operation.MANAGE_SURGERIES: Policy(frozenset({UserRole.doctor})),
    Operation.RAISE_ALERT: Policy(ALL_ROLES),
    Operation.RESOLVE_ALERT: Policy(ALL_ROLES),
}


def is_allowed(user: schemas.User, operation: Operation, owner_user_id: Optional[int] = None) -> bool:
    policy = POLICIES[operation]
    if user.role in policy.roles:
        return True
    return user.role in policy.owner_roles and owner_user_id is not None and owner_user_id == user.id


def _deny(user: schemas.User, operation: Operation, owner_user_id: Optional[int], reason: str):
    audit_logger.warning(
        "access_denied",
        user_id=user.id,
        role=user.role.value,
        operation=operation.value,
        owner_user_id=owner_user_id,
    )
    raise AuthorizationDenied(reason)


def _check_session(user: Optional[schemas.User]) -> schemas.User:
    if user is None:
        raise AuthenticationRequired()
    if not user.is_active:
        raise AuthorizationDenied("User account is inactive")
    return user


def authorize_role(user: Optional[schemas.User], operation: Operation) -> schemas.User:
    """First pass, before the target is loaded: the role must appear in the policy at all."""
    _check_session(user)
    policy = POLICIES[operation]
    if user.role not in policy.roles | policy.owner_roles:
        allowed = ", ".join(sorted(role.value for role in policy.roles | policy.owner_roles))
        _deny(user, operation, None, f"Access denied. Required roles: {allowed}")
    return user


def authorize(user: Optional[schemas.User], operation: Operation,
              owner_user_id: Optional[int] = None) -> schemas.User:
    """
    Raise unless `user` may perform `operation`.

    `owner_user_id` is the id of the user owning the target resource (the
    patient's account for an appointment, the assigned doctor's account for
    a consultation). Ownership only helps roles listed in the policy's
    owner_roles.
    """
    authorize_role(user, operation)
    if not is_allowed(user, operation, owner_user_id):
        _deny(user, operation, owner_user_id,
              f"Access denied. Only the owning {user.role.value} may {operation.value.replace('_', ' ')}")
    return user
