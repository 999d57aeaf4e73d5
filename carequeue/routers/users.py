# carequeue/routers/users.py
from typing import List

from fastapi import APIRouter, Depends, status

from .. import schemas, security
from ..access import Operation
from ..dependencies import get_storage
from ..services.accounts import create_staff_account
from ..storage import Entity, Storage

router = APIRouter(
    prefix="/users",
    tags=["Users"],
)


@router.get("", response_model=List[schemas.UserResponse])
def list_users(
    storage: Storage = Depends(get_storage),
    current_user: schemas.User = Depends(security.require_operation(Operation.MANAGE_STAFF)),
):
    return storage.list(Entity.users)


@router.post("", response_model=schemas.UserResponse, status_code=status.HTTP_201_CREATED)
def create_user(
    user_in: schemas.StaffUserCreate,
    storage: Storage = Depends(get_storage),
    current_user: schemas.User = Depends(security.require_operation(Operation.MANAGE_STAFF)),
):
    """Create an account of any role together with its role profile."""
    return create_staff_account(storage, user_in)
