# carequeue/routers/theatres.py
from typing import List

from fastapi import APIRouter, Depends, status

from .. import schemas, security
from ..access import Operation
from ..dependencies import get_storage
from ..exceptions import NotFound
from ..storage import Entity, Storage

router = APIRouter(
    tags=["Operation Theatres"],
    responses={404: {"description": "Not found"}},
)


@router.get("/operation-theatres", response_model=List[schemas.OperationTheatre])
def list_theatres(
    storage: Storage = Depends(get_storage),
    current_user: schemas.User = Depends(security.get_current_user),
):
    return storage.list(Entity.operation_theatres)


@router.post("/operation-theatres", response_model=schemas.OperationTheatre,
             status_code=status.HTTP_201_CREATED)
async def create_theatre(
    theatre: schemas.OperationTheatreCreate,
    storage: Storage = Depends(get_storage),
    current_user: schemas.User = Depends(security.require_operation(Operation.CREATE_THEATRE)),
):
    return storage.create(Entity.operation_theatres, theatre)


@router.patch("/operation-theatres/{theatre_id}", response_model=schemas.OperationTheatre)
async def update_theatre(
    theatre_id: int,
    theatre: schemas.OperationTheatreUpdate,
    storage: Storage = Depends(get_storage),
    current_user: schemas.User = Depends(security.require_operation(Operation.UPDATE_THEATRE)),
):
    with storage.transaction():
        if theatre.current_surgery is not None:
            storage.require(Entity.surgeries, theatre.current_surgery)
        updated = storage.update(Entity.operation_theatres, theatre_id, theatre)
    if updated is None:
        raise NotFound(f"Operation theatre {theatre_id} not found")
    return updated


@router.get("/surgeries", response_model=List[schemas.SurgeryDetail])
def list_surgeries(
    storage: Storage = Depends(get_storage),
    current_user: schemas.User = Depends(security.get_current_user),
):
    return storage.get_surgeries()


@router.post("/surgeries", response_model=schemas.Surgery, status_code=status.HTTP_201_CREATED)
async def create_surgery(
    surgery: schemas.SurgeryCreate,
    storage: Storage = Depends(get_storage),
    current_user: schemas.User = Depends(security.require_operation(Operation.MANAGE_SURGERIES)),
):
    with storage.transaction():
        storage.require(Entity.patients, surgery.patient_id)
        storage.require(Entity.doctors, surgery.surgeon_id)
        storage.require(Entity.operation_theatres, surgery.theatre_id)
        return storage.create(Entity.surgeries, surgery)


@router.patch("/surgeries/{surgery_id}", response_model=schemas.Surgery)
async def update_surgery(
    surgery_id: int,
    surgery: schemas.SurgeryUpdate,
    storage: Storage = Depends(get_storage),
    current_user: schemas.User = Depends(security.require_operation(Operation.MANAGE_SURGERIES)),
):
    with storage.transaction():
        if surgery.theatre_id is not None:
            storage.require(Entity.operation_theatres, surgery.theatre_id)
        updated = storage.update(Entity.surgeries, surgery_id, surgery)
    if updated is None:
        raise NotFound(f"Surgery {surgery_id} not found")
    return updated
