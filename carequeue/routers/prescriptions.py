# carequeue/routers/prescriptions.py
import logging
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, status

from .. import schemas, security
from ..access import Operation, authorize, is_allowed
from ..broadcast import BroadcastHub
from ..dependencies import get_connection_id, get_hub, get_storage
from ..exceptions import ValidationFailure
from ..models import EventType, PrescriptionStatus
from ..storage import Entity, Storage
from .patients import own_patient_profile

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/prescriptions",
    tags=["Prescriptions"],
    responses={404: {"description": "Not found"}},
)


@router.get("", response_model=List[schemas.PrescriptionDetail])
def list_prescriptions(
    storage: Storage = Depends(get_storage),
    current_user: schemas.User = Depends(security.get_current_user),
):
    """Everything for clinical and pharmacy staff; only their own for anyone else."""
    if is_allowed(current_user, Operation.READ_PRESCRIPTIONS):
        return storage.get_prescriptions()
    patient = own_patient_profile(storage, current_user)
    authorize(current_user, Operation.READ_PRESCRIPTIONS, owner_user_id=patient.user_id)
    return storage.get_prescriptions(patient_id=patient.id)


@router.get("/pending", response_model=List[schemas.PrescriptionDetail])
def list_pending_prescriptions(
    storage: Storage = Depends(get_storage),
    current_user: schemas.User = Depends(security.require_operation(Operation.READ_PENDING_PRESCRIPTIONS)),
):
    return storage.get_prescriptions(status=PrescriptionStatus.pending)


@router.get("/patient/{patient_id}", response_model=List[schemas.PrescriptionDetail])
def list_patient_prescriptions(
    patient_id: int,
    storage: Storage = Depends(get_storage),
    current_user: schemas.User = Depends(security.get_current_user),
):
    patient = storage.require(Entity.patients, patient_id)
    authorize(current_user, Operation.READ_PRESCRIPTIONS, owner_user_id=patient.user_id)
    return storage.get_prescriptions(patient_id=patient_id)


@router.post("", response_model=schemas.Prescription, status_code=status.HTTP_201_CREATED)
async def create_prescription(
    prescription: schemas.PrescriptionCreate,
    background_tasks: BackgroundTasks,
    storage: Storage = Depends(get_storage),
    hub: BroadcastHub = Depends(get_hub),
    connection_id: Optional[int] = Depends(get_connection_id),
    current_user: schemas.User = Depends(security.require_operation(Operation.CREATE_PRESCRIPTION)),
):
    doctor = storage.get_doctor_by_user_id(current_user.id)
    if doctor is None:
        raise ValidationFailure("No doctor profile for the current user")
    appointment = storage.require(Entity.appointments, prescription.appointment_id)

    created = storage.create(Entity.prescriptions, {
        "appointment_id": appointment.id,
        "doctor_id": doctor.id,
        "patient_id": appointment.patient_id,
        "medications": [m.model_dump() for m in prescription.medications],
        "instructions": prescription.instructions,
    })
    logger.info("Prescription %s created by doctor %s for appointment %s", created.id, doctor.id, appointment.id)
    origin = hub.origin(connection_id, current_user.id)
    background_tasks.add_task(hub.notify, EventType.prescription_created, created, origin=origin)
    return created


@router.post("/{prescription_id}/dispense", response_model=schemas.Prescription)
async def dispense_prescription(
    prescription_id: int,
    storage: Storage = Depends(get_storage),
    current_user: schemas.User = Depends(security.require_operation(Operation.DISPENSE_PRESCRIPTION)),
):
    # pending -> dispensed happens once; the status check and the write share a transaction
    with storage.transaction():
        prescription = storage.require(Entity.prescriptions, prescription_id)
        if prescription.status != PrescriptionStatus.pending:
            raise ValidationFailure(f"Prescription {prescription_id} is already {prescription.status.value}")

        pharmacist = storage.get_pharmacy_staff_by_user_id(current_user.id)
        dispensed = storage.update(Entity.prescriptions, prescription_id, {
            "status": PrescriptionStatus.dispensed,
            "dispensed_at": storage.clock(),
            "dispensed_by": pharmacist.id if pharmacist else None,
        })
    logger.info("Prescription %s dispensed by user %s", prescription_id, current_user.username)
    return dispensed
