# carequeue/routers/health.py
import logging

from fastapi import APIRouter, Depends

from .. import schemas, security
from ..access import Operation
from ..dependencies import get_queue_service
from ..services.queue_service import QueueService

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/health",
    tags=["Health Checks"],
    responses={404: {"description": "Not found"}},
)


@router.get("/queue-consistency", response_model=schemas.QueueConsistencyReport)
def check_queue_consistency(
    queue: QueueService = Depends(get_queue_service),
    current_user: schemas.User = Depends(security.require_operation(Operation.REPAIR_QUEUE)),
):
    """
    Lists appointments whose status lags behind their token.
    Accessible only by admin users.
    """
    report = queue.consistency_report()
    logger.info("Queue consistency check found %d stale appointments", len(report.stale_appointments))
    return report


@router.post("/queue-repair", response_model=schemas.QueueRepairReport)
async def repair_queue(
    queue: QueueService = Depends(get_queue_service),
    current_user: schemas.User = Depends(security.get_current_user),
):
    """
    Moves every stale appointment forward to the status its token implies.
    Returns a report of all actions taken.
    """
    report = queue.repair_stale_appointments(current_user)
    logger.info("Queue repair fixed %d appointments with %d errors", len(report.repaired), len(report.errors))
    return report
