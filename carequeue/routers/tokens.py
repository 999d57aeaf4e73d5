# carequeue/routers/tokens.py
# Live queue: token reads and the call / start / complete triggers.
from datetime import date
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends

from .. import schemas, security
from ..access import Operation
from ..broadcast import BroadcastHub, Connection
from ..dependencies import get_connection_id, get_hub, get_queue_service, get_storage
from ..models import EventType, TokenStatus
from ..services.queue_service import QueueService
from ..storage import Entity, Storage

router = APIRouter(
    prefix="/tokens",
    tags=["Queue"],
    responses={404: {"description": "Not found"}},
)


def _announce(background_tasks: BackgroundTasks, hub: BroadcastHub, origin: Optional[Connection],
              token: schemas.Token, appointment: Optional[schemas.Appointment] = None):
    background_tasks.add_task(hub.notify, EventType.token_update, token, origin=origin)
    if appointment is not None:
        background_tasks.add_task(hub.notify, EventType.appointment_update, appointment, origin=origin)


@router.get("", response_model=List[schemas.TokenDetail])
def list_tokens(
    storage: Storage = Depends(get_storage),
    current_user: schemas.User = Depends(security.require_operation(Operation.READ_QUEUE)),
):
    return storage.get_tokens()


@router.get("/department/{department_id}", response_model=List[schemas.TokenDetail])
def list_department_tokens(
    department_id: int,
    storage: Storage = Depends(get_storage),
    current_user: schemas.User = Depends(security.require_operation(Operation.READ_QUEUE)),
):
    storage.require(Entity.departments, department_id)
    return storage.get_tokens(department_id=department_id)


@router.get("/queue", response_model=List[schemas.QueueEntry])
def read_active_queue(
    doctor_id: Optional[int] = None,
    department_id: Optional[int] = None,
    day: Optional[date] = None,
    queue: QueueService = Depends(get_queue_service),
    current_user: schemas.User = Depends(security.require_operation(Operation.READ_QUEUE)),
):
    """Waiting, called and serving tokens for the day in arrival order."""
    return queue.active_queue(doctor_id=doctor_id, department_id=department_id, day=day)


@router.post("/call-next", response_model=schemas.Token)
async def call_next_patient(
    request: schemas.CallNextRequest,
    background_tasks: BackgroundTasks,
    queue: QueueService = Depends(get_queue_service),
    hub: BroadcastHub = Depends(get_hub),
    connection_id: Optional[int] = Depends(get_connection_id),
    current_user: schemas.User = Depends(security.get_current_user),
):
    token = queue.call_next_patient(current_user, doctor_id=request.doctor_id, day=request.day)
    origin = hub.origin(connection_id, current_user.id)
    _announce(background_tasks, hub, origin, token)
    return token


@router.post("/{token_id}/call", response_model=schemas.Token)
async def call_token(
    token_id: int,
    background_tasks: BackgroundTasks,
    queue: QueueService = Depends(get_queue_service),
    hub: BroadcastHub = Depends(get_hub),
    connection_id: Optional[int] = Depends(get_connection_id),
    current_user: schemas.User = Depends(security.get_current_user),
):
    token = queue.call_token(current_user, token_id)
    origin = hub.origin(connection_id, current_user.id)
    _announce(background_tasks, hub, origin, token)
    return token


@router.post("/{token_id}/start", response_model=schemas.QueueTransition)
async def start_consultation(
    token_id: int,
    background_tasks: BackgroundTasks,
    queue: QueueService = Depends(get_queue_service),
    hub: BroadcastHub = Depends(get_hub),
    connection_id: Optional[int] = Depends(get_connection_id),
    current_user: schemas.User = Depends(security.get_current_user),
):
    transition = queue.start_consultation(current_user, token_id)
    origin = hub.origin(connection_id, current_user.id)
    _announce(background_tasks, hub, origin, transition.token, transition.appointment)
    return transition


@router.post("/{token_id}/complete", response_model=schemas.QueueTransition)
async def complete_consultation(
    token_id: int,
    background_tasks: BackgroundTasks,
    queue: QueueService = Depends(get_queue_service),
    hub: BroadcastHub = Depends(get_hub),
    connection_id: Optional[int] = Depends(get_connection_id),
    current_user: schemas.User = Depends(security.get_current_user),
):
    transition = queue.complete_consultation(current_user, token_id)
    origin = hub.origin(connection_id, current_user.id)
    _announce(background_tasks, hub, origin, transition.token, transition.appointment)
    return transition


@router.patch("/{token_id}", response_model=schemas.Token)
async def update_token(
    token_id: int,
    update: schemas.TokenUpdate,
    background_tasks: BackgroundTasks,
    storage: Storage = Depends(get_storage),
    queue: QueueService = Depends(get_queue_service),
    hub: BroadcastHub = Depends(get_hub),
    connection_id: Optional[int] = Depends(get_connection_id),
    current_user: schemas.User = Depends(security.get_current_user),
):
    """Status update; only the next step of waiting -> called -> serving -> completed is accepted."""
    token = queue.update_token(current_user, token_id, update)
    appointment = None
    if update.status != TokenStatus.called:
        appointment = storage.get(Entity.appointments, token.appointment_id)
    origin = hub.origin(connection_id, current_user.id)
    _announce(background_tasks, hub, origin, token, appointment)
    return token
