# carequeue/routers/patients.py
from typing import List

from fastapi import APIRouter, Depends

from .. import schemas, security
from ..access import Operation, authorize
from ..dependencies import get_storage
from ..exceptions import NotFound
from ..storage import Entity, Storage

router = APIRouter(
    prefix="/patients",
    tags=["Patients"],
    responses={404: {"description": "Not found"}},
)


def own_patient_profile(storage: Storage, user: schemas.User) -> schemas.Patient:
    patient = storage.get_patient_by_user_id(user.id)
    if patient is None:
        raise NotFound("No patient profile for the current user")
    return patient


@router.get("", response_model=List[schemas.PatientWithUser])
def list_patients(
    storage: Storage = Depends(get_storage),
    current_user: schemas.User = Depends(security.require_operation(Operation.LIST_PATIENTS)),
):
    return storage.get_patients()


@router.get("/me", response_model=schemas.PatientWithUser)
def read_my_patient_profile(
    storage: Storage = Depends(get_storage),
    current_user: schemas.User = Depends(security.get_current_user),
):
    return storage.get_patient_detail(own_patient_profile(storage, current_user).id)


@router.get("/{patient_id}", response_model=schemas.PatientWithUser)
def read_patient(
    patient_id: int,
    storage: Storage = Depends(get_storage),
    current_user: schemas.User = Depends(security.get_current_user),
):
    patient = storage.require(Entity.patients, patient_id)
    authorize(current_user, Operation.READ_PATIENT, owner_user_id=patient.user_id)
    return storage.get_patient_detail(patient_id)


@router.patch("/{patient_id}", response_model=schemas.Patient)
async def update_patient(
    patient_id: int,
    patient_in: schemas.PatientUpdate,
    storage: Storage = Depends(get_storage),
    current_user: schemas.User = Depends(security.get_current_user),
):
    with storage.transaction():
        patient = storage.require(Entity.patients, patient_id)
        authorize(current_user, Operation.UPDATE_PATIENT, owner_user_id=patient.user_id)
        return storage.update(Entity.patients, patient_id, patient_in)
