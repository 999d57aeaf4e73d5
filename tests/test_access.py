# tests/test_access.py
from datetime import datetime, timezone

import pytest
from structlog.testing import capture_logs

from carequeue import schemas
from carequeue.access import ALL_ROLES, POLICIES, Operation, authorize, authorize_role, is_allowed
from carequeue.exceptions import AuthenticationRequired, AuthorizationDenied
from carequeue.models import UserRole


def make_user(role, user_id=1, is_active=True):
    return schemas.User(
        id=user_id,
        username=f"{role.value}{user_id}",
        password_hash="x",
        role=role,
        full_name="Test User",
        is_active=is_active,
        created_at=datetime(2026, 3, 2, tzinfo=timezone.utc),
    )


def test_every_operation_has_a_policy():
    assert set(POLICIES) == set(Operation)


def test_no_session_is_authentication_required():
    with pytest.raises(AuthenticationRequired):
        authorize(None, Operation.READ_QUEUE)


def test_inactive_user_is_denied():
    with pytest.raises(AuthorizationDenied):
        authorize(make_user(UserRole.admin, is_active=False), Operation.READ_QUEUE)


@pytest.mark.parametrize("role", sorted(ALL_ROLES - {UserRole.doctor}))
def test_only_doctors_prescribe(role):
    with pytest.raises(AuthorizationDenied):
        authorize(make_user(role), Operation.CREATE_PRESCRIPTION)
    assert authorize(make_user(UserRole.doctor), Operation.CREATE_PRESCRIPTION).role == UserRole.doctor


def test_listing_patients_requires_clinical_staff():
    for role in (UserRole.admin, UserRole.doctor, UserRole.nurse):
        assert is_allowed(make_user(role), Operation.LIST_PATIENTS)
    for role in (UserRole.patient, UserRole.pharmacy):
        assert not is_allowed(make_user(role), Operation.LIST_PATIENTS)


def test_ownership_overrides_role_restriction():
    patient = make_user(UserRole.patient, user_id=7)

    assert not is_allowed(patient, Operation.READ_APPOINTMENTS)
    assert is_allowed(patient, Operation.READ_APPOINTMENTS, owner_user_id=7)
    assert not is_allowed(patient, Operation.READ_APPOINTMENTS, owner_user_id=8)


def test_ownership_only_helps_owner_roles():
    nurse = make_user(UserRole.nurse, user_id=3)
    with pytest.raises(AuthorizationDenied):
        authorize(nurse, Operation.CANCEL_APPOINTMENT, owner_user_id=3)


def test_role_precheck_ignores_ownership():
    doctor = make_user(UserRole.doctor)
    assert authorize_role(doctor, Operation.START_CONSULTATION) is doctor
    with pytest.raises(AuthorizationDenied):
        authorize(doctor, Operation.START_CONSULTATION, owner_user_id=99)
    with pytest.raises(AuthorizationDenied):
        authorize_role(make_user(UserRole.admin), Operation.START_CONSULTATION)


def test_denials_are_audited():
    with capture_logs() as logs:
        with pytest.raises(AuthorizationDenied):
            authorize(make_user(UserRole.nurse, user_id=5), Operation.CREATE_PRESCRIPTION)

    denial = [entry for entry in logs if entry["event"] == "access_denied"]
    assert denial and denial[0]["user_id"] == 5
    assert denial[0]["operation"] == "create_prescription"
    assert denial[0]["log_level"] == "warning"
