# carequeue/routers/auth.py
import logging

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.security import OAuth2PasswordRequestForm

from .. import schemas, security
from ..config import Settings
from ..dependencies import get_settings_from_app, get_storage
from ..services.accounts import register_patient
from ..storage import Storage

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/auth",
    tags=["Authentication"]
)


@router.post("/token", response_model=schemas.TokenResponse)
def login_for_access_token(
    form_data: OAuth2PasswordRequestForm = Depends(),
    storage: Storage = Depends(get_storage),
    settings: Settings = Depends(get_settings_from_app),
):
    user = storage.get_user_by_username(form_data.username)
    if not user or not security.verify_password(form_data.password, user.password_hash):
        logger.warning("Failed login attempt for username: %s", form_data.username)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect username or password",
            headers={"WWW-Authenticate": "Bearer"},
        )
    if not user.is_active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="User account is inactive")

    logger.info("User '%s' successfully authenticated.", user.username)
    access_token = security.create_access_token(
        data={"sub": user.username, "user_id": user.id, "role": user.role.value},
        settings=settings,
    )
    return {
        "access_token": access_token,
        "token_type": "bearer",
        "expires_in": settings.access_token_expire_minutes * 60,
        "user": schemas.UserResponse(**user.model_dump()),
    }


@router.post("/register", response_model=schemas.UserResponse, status_code=status.HTTP_201_CREATED)
def register(user_in: schemas.UserCreate, storage: Storage = Depends(get_storage)):
    """Self-registration. Always creates a patient account."""
    return register_patient(storage, user_in)


@router.get("/users/me", response_model=schemas.UserResponse)
async def read_users_me(current_user: schemas.User = Depends(security.get_current_user)):
    """
    Get the current logged in user's details.
    """
    return current_user
