# carequeue/routers/drugs.py
from typing import List

from fastapi import APIRouter, Depends, status

from .. import schemas, security
from ..access import Operation
from ..dependencies import get_storage
from ..exceptions import NotFound
from ..storage import Entity, Storage

router = APIRouter(
    prefix="/drugs",
    tags=["Pharmacy Inventory"],
    responses={404: {"description": "Not found"}},
)


def is_low_stock(drug: schemas.Drug) -> bool:
    return drug.quantity <= drug.min_stock_level


@router.get("", response_model=List[schemas.Drug])
def list_drugs(
    storage: Storage = Depends(get_storage),
    current_user: schemas.User = Depends(security.get_current_user),
):
    return storage.list(Entity.drugs)


@router.get("/low-stock", response_model=List[schemas.Drug])
def list_low_stock_drugs(
    storage: Storage = Depends(get_storage),
    current_user: schemas.User = Depends(security.get_current_user),
):
    return [drug for drug in storage.list(Entity.drugs, is_active=True) if is_low_stock(drug)]


@router.post("", response_model=schemas.Drug, status_code=status.HTTP_201_CREATED)
async def create_drug(
    drug: schemas.DrugCreate,
    storage: Storage = Depends(get_storage),
    current_user: schemas.User = Depends(security.require_operation(Operation.MANAGE_DRUGS)),
):
    return storage.create(Entity.drugs, drug)


@router.patch("/{drug_id}", response_model=schemas.Drug)
async def update_drug(
    drug_id: int,
    drug: schemas.DrugUpdate,
    storage: Storage = Depends(get_storage),
    current_user: schemas.User = Depends(security.require_operation(Operation.MANAGE_DRUGS)),
):
    updated = storage.update(Entity.drugs, drug_id, drug)
    if updated is None:
        raise NotFound(f"Drug {drug_id} not found")
    return updated
