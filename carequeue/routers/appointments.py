# carequeue/routers/appointments.py
import logging
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, status

from .. import schemas, security
from ..access import Operation, authorize
from ..broadcast import BroadcastHub
from ..dependencies import get_connection_id, get_hub, get_queue_service, get_storage
from ..models import EventType
from ..services.queue_service import QueueService
from ..storage import Entity, Storage
from .patients import own_patient_profile

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/appointments",
    tags=["Appointments"],
    responses={404: {"description": "Not found"}},
)


@router.post("", response_model=schemas.Appointment, status_code=status.HTTP_201_CREATED)
async def book_appointment(
    appointment: schemas.AppointmentCreate,
    background_tasks: BackgroundTasks,
    storage: Storage = Depends(get_storage),
    queue: QueueService = Depends(get_queue_service),
    hub: BroadcastHub = Depends(get_hub),
    connection_id: Optional[int] = Depends(get_connection_id),
    current_user: schemas.User = Depends(security.get_current_user),
):
    """Book an appointment. Its waiting token is created in the same step."""
    created = queue.book_appointment(current_user, appointment)
    token = storage.get_token_by_appointment(created.id)
    origin = hub.origin(connection_id, current_user.id)
    background_tasks.add_task(hub.notify, EventType.appointment_update, created, origin=origin)
    background_tasks.add_task(hub.notify, EventType.token_update, token, origin=origin)
    return created


@router.get("", response_model=List[schemas.AppointmentDetail])
def list_appointments(
    storage: Storage = Depends(get_storage),
    current_user: schemas.User = Depends(security.require_operation(Operation.READ_APPOINTMENTS)),
):
    return storage.get_appointments()


@router.get("/me", response_model=List[schemas.AppointmentDetail])
def list_my_appointments(
    storage: Storage = Depends(get_storage),
    current_user: schemas.User = Depends(security.get_current_user),
):
    """The caller's own appointments, whatever their role."""
    patient = own_patient_profile(storage, current_user)
    authorize(current_user, Operation.READ_APPOINTMENTS, owner_user_id=patient.user_id)
    return storage.get_appointments(patient_id=patient.id)


@router.get("/doctor/{doctor_id}", response_model=List[schemas.AppointmentDetail])
def list_doctor_appointments(
    doctor_id: int,
    storage: Storage = Depends(get_storage),
    current_user: schemas.User = Depends(security.require_operation(Operation.READ_APPOINTMENTS)),
):
    storage.require(Entity.doctors, doctor_id)
    return storage.get_appointments(doctor_id=doctor_id)


@router.get("/patient/{patient_id}", response_model=List[schemas.AppointmentDetail])
def list_patient_appointments(
    patient_id: int,
    storage: Storage = Depends(get_storage),
    current_user: schemas.User = Depends(security.get_current_user),
):
    patient = storage.require(Entity.patients, patient_id)
    authorize(current_user, Operation.READ_APPOINTMENTS, owner_user_id=patient.user_id)
    return storage.get_appointments(patient_id=patient_id)


@router.get("/{appointment_id}", response_model=schemas.AppointmentDetail)
def read_appointment(
    appointment_id: int,
    storage: Storage = Depends(get_storage),
    current_user: schemas.User = Depends(security.get_current_user),
):
    appointment = storage.require(Entity.appointments, appointment_id)
    patient = storage.get(Entity.patients, appointment.patient_id)
    authorize(current_user, Operation.READ_APPOINTMENTS, owner_user_id=patient.user_id if patient else None)
    return storage.get_appointment_detail(appointment_id)


@router.patch("/{appointment_id}", response_model=schemas.Appointment)
async def update_appointment(
    appointment_id: int,
    appointment: schemas.AppointmentUpdate,
    background_tasks: BackgroundTasks,
    queue: QueueService = Depends(get_queue_service),
    hub: BroadcastHub = Depends(get_hub),
    connection_id: Optional[int] = Depends(get_connection_id),
    current_user: schemas.User = Depends(security.get_current_user),
):
    updated = queue.update_appointment(current_user, appointment_id, appointment)
    origin = hub.origin(connection_id, current_user.id)
    background_tasks.add_task(hub.notify, EventType.appointment_update, updated, origin=origin)
    return updated


@router.post("/{appointment_id}/cancel", response_model=schemas.Appointment)
async def cancel_appointment(
    appointment_id: int,
    background_tasks: BackgroundTasks,
    queue: QueueService = Depends(get_queue_service),
    hub: BroadcastHub = Depends(get_hub),
    connection_id: Optional[int] = Depends(get_connection_id),
    current_user: schemas.User = Depends(security.get_current_user),
):
    cancelled = queue.cancel_appointment(current_user, appointment_id)
    logger.info("Appointment %s cancelled by user %s", appointment_id, current_user.username)
    origin = hub.origin(connection_id, current_user.id)
    background_tasks.add_task(hub.notify, EventType.appointment_update, cancelled, origin=origin)
    return cancelled
