from __future__ import annotations

import logging

import bcrypt
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from crm_backend import events
from crm_backend.core.auth import ActorUser, create_access_token
from crm_backend.core.errors import AuthenticationError, ConflictError, ValidationError
from crm_backend.core.rbac import require_admin
from crm_backend.identity.models import Organization, User
from crm_backend.identity.schemas import (
    LoginRequest,
    OrganizationRead,
    RegisterRequest,
    RegisterResponse,
    TokenResponse,
    UserCreate,
    UserRead,
)

logger = logging.getLogger("crm_backend.identity")


def hash_password(password: str) -> str:
    """Hash a password for storage using bcrypt."""
    try:
        return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(12)).decode("utf-8")
    except ValueError as exc:
        raise ValidationError(str(exc), details={"field": "password"}) from exc


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False


class IdentityService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def register(self, dto: RegisterRequest) -> RegisterResponse:
        email = dto.email.lower()
        self._ensure_email_free(email)

        organization = Organization(name=dto.organization_name.strip())
        self.session.add(organization)
        self.session.flush()

        user = User(
            first_name=dto.first_name.strip(),
            last_name=dto.last_name.strip(),
            email=email,
            password_hash=hash_password(dto.password),
            organization_id=organization.id,
            role="admin",
        )
        self.session.add(user)
        self.session.flush()
        organization.owner_id = user.id
        self.session.commit()

        logger.info("identity.organization.registered", extra={"organization_id": str(organization.id)})
        events.publish(
            events.build_envelope(
                "identity.organization.registered",
                organization_id=organization.id,
                actor_user_id=user.id,
                payload={"organization_id": str(organization.id), "user_id": str(user.id)},
            )
        )
        return RegisterResponse(
            access_token=create_access_token(user.id, organization.id, user.role),
            user=UserRead.model_validate(user),
            organization=OrganizationRead.model_validate(organization),
        )

    def login(self, dto: LoginRequest) -> TokenResponse:
        user = self.session.scalar(select(User).where(func.lower(User.email) == dto.email.lower()))
        if user is None or not user.is_active or not verify_password(dto.password, user.password_hash):
            raise AuthenticationError("Invalid credentials")

        return TokenResponse(
            access_token=create_access_token(user.id, user.organization_id, user.role),
            user=UserRead.model_validate(user),
        )

    def create_user(self, actor_user: ActorUser, dto: UserCreate) -> UserRead:
        require_admin(actor_user)
        email = dto.email.lower()
        self._ensure_email_free(email)

        user = User(
            first_name=dto.first_name.strip(),
            last_name=dto.last_name.strip(),
            email=email,
            password_hash=hash_password(dto.password),
            organization_id=actor_user.organization_id,
            role=dto.role,
        )
        self.session.add(user)
        self.session.commit()
        events.publish(
            events.build_envelope(
                "identity.user.created",
                organization_id=actor_user.organization_id,
                actor_user_id=actor_user.user_id,
                payload={"user_id": str(user.id), "role": user.role},
            )
        )
        return UserRead.model_validate(user)

    def list_users(self, actor_user: ActorUser) -> list[UserRead]:
        require_admin(actor_user)
        users = self.session.scalars(
            select(User)
            .where(User.organization_id == actor_user.organization_id)
            .order_by(User.created_at.asc())
        ).all()
        return [UserRead.model_validate(user) for user in users]

    def _ensure_email_free(self, email: str) -> None:
        existing = self.session.scalar(select(User.id).where(func.lower(User.email) == email))
        if existing is not None:
            raise ConflictError("User with this email already exists")

