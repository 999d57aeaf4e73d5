# carequeue/routers/alerts.py
import logging
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, status

from .. import schemas, security
from ..access import Operation
from ..broadcast import BroadcastHub
from ..dependencies import get_connection_id, get_hub, get_storage
from ..exceptions import ValidationFailure
from ..models import EventType
from ..storage import Entity, Storage

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/emergency-alerts",
    tags=["Emergency Alerts"],
    responses={404: {"description": "Not found"}},
)


@router.get("", response_model=List[schemas.EmergencyAlertDetail])
def list_alerts(
    storage: Storage = Depends(get_storage),
    current_user: schemas.User = Depends(security.get_current_user),
):
    return storage.get_emergency_alerts()


@router.get("/active", response_model=List[schemas.EmergencyAlertDetail])
def list_active_alerts(
    storage: Storage = Depends(get_storage),
    current_user: schemas.User = Depends(security.get_current_user),
):
    return storage.get_emergency_alerts(active_only=True)


@router.post("", response_model=schemas.EmergencyAlert, status_code=status.HTTP_201_CREATED)
async def raise_alert(
    alert: schemas.EmergencyAlertCreate,
    background_tasks: BackgroundTasks,
    storage: Storage = Depends(get_storage),
    hub: BroadcastHub = Depends(get_hub),
    connection_id: Optional[int] = Depends(get_connection_id),
    current_user: schemas.User = Depends(security.require_operation(Operation.RAISE_ALERT)),
):
    created = storage.create(Entity.emergency_alerts, {**alert.model_dump(), "created_by": current_user.id})
    logger.warning("Emergency alert %s (%s) raised at %s by %s",
                   created.id, created.type.value, created.location, current_user.username)
    origin = hub.origin(connection_id, current_user.id)
    background_tasks.add_task(hub.notify, EventType.emergency_alert, created, origin=origin)
    return created


@router.post("/{alert_id}/resolve", response_model=schemas.EmergencyAlert)
async def resolve_alert(
    alert_id: int,
    background_tasks: BackgroundTasks,
    storage: Storage = Depends(get_storage),
    hub: BroadcastHub = Depends(get_hub),
    connection_id: Optional[int] = Depends(get_connection_id),
    current_user: schemas.User = Depends(security.require_operation(Operation.RESOLVE_ALERT)),
):
    with storage.transaction():
        alert = storage.require(Entity.emergency_alerts, alert_id)
        if not alert.is_active:
            raise ValidationFailure(f"Emergency alert {alert_id} is already resolved")
        resolved = storage.update(Entity.emergency_alerts, alert_id, {
            "is_active": False,
            "resolved_at": storage.clock(),
        })
    logger.info("Emergency alert %s resolved by %s", alert_id, current_user.username)
    origin = hub.origin(connection_id, current_user.id)
    background_tasks.add_task(hub.notify, EventType.emergency_alert, resolved, origin=origin)
    return resolved
