from __future__ import annotations

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from crm_backend.core.auth import ActorUser
from crm_backend.core.database import get_db
from crm_backend.crm.api import get_current_user
from crm_backend.identity.schemas import (
    LoginRequest,
    RegisterRequest,
    RegisterResponse,
    TokenResponse,
    UserCreate,
    UserRead,
)
from crm_backend.identity.service import IdentityService

auth_router = APIRouter(prefix="/api/auth", tags=["identity.auth"])
users_router = APIRouter(prefix="/api/users", tags=["identity.users"])


@auth_router.post("/register", response_model=RegisterResponse, status_code=status.HTTP_201_CREATED)
def register(dto: RegisterRequest, db: Session = Depends(get_db)) -> RegisterResponse:
    return IdentityService(db).register(dto)


@auth_router.post("/login", response_model=TokenResponse)
def login(dto: LoginRequest, db: Session = Depends(get_db)) -> TokenResponse:
    return IdentityService(db).login(dto)


@users_router.post("", response_model=UserRead, status_code=status.HTTP_201_CREATED)
def create_user(
    dto: UserCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> UserRead:
    return IdentityService(db).create_user(user, dto)


@users_router.get("", response_model=list[UserRead])
def list_users(
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[UserRead]:
    return IdentityService(db).list_users(user)
