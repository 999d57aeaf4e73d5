# carequeue/routers/departments.py
from typing import List, Optional

from fastapi import APIRouter, Depends, status

from .. import schemas, security
from ..access import Operation
from ..dependencies import get_storage
from ..exceptions import NotFound, ValidationFailure
from ..storage import Entity, Storage

router = APIRouter(
    prefix="/departments",
    tags=["Departments"],
    responses={404: {"description": "Not found"}},
)


def _check_name_free(storage: Storage, name: str, department_id: Optional[int] = None):
    existing = storage.get_department_by_name(name)
    if existing and existing.id != department_id:
        raise ValidationFailure(f"Department '{name}' already exists")


@router.get("", response_model=List[schemas.Department])
def list_departments(storage: Storage = Depends(get_storage)):
    return storage.list(Entity.departments)


@router.post("", response_model=schemas.Department, status_code=status.HTTP_201_CREATED)
async def create_department(
    department: schemas.DepartmentCreate,
    storage: Storage = Depends(get_storage),
    current_user: schemas.User = Depends(security.require_operation(Operation.MANAGE_DEPARTMENTS)),
):
    with storage.transaction():
        _check_name_free(storage, department.name)
        return storage.create(Entity.departments, department)


@router.patch("/{department_id}", response_model=schemas.Department)
async def update_department(
    department_id: int,
    department: schemas.DepartmentUpdate,
    storage: Storage = Depends(get_storage),
    current_user: schemas.User = Depends(security.require_operation(Operation.MANAGE_DEPARTMENTS)),
):
    with storage.transaction():
        if department.name:
            _check_name_free(storage, department.name, department_id)
        updated = storage.update(Entity.departments, department_id, department)
    if updated is None:
        raise NotFound(f"Department {department_id} not found")
    return updated
