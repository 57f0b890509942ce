import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt
from starlette.requests import Request

from crm_backend.core.config import get_settings
from crm_backend.core.context import bind_actor
from crm_backend.core.errors import AuthenticationError


@dataclass
class AuthUser:
    sub: str
    organization_id: str
    role: str


@dataclass
class ActorUser:
    user_id: uuid.UUID
    organization_id: uuid.UUID
    role: str = "user"
    correlation_id: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def create_access_token(user_id: uuid.UUID, organization_id: uuid.UUID, role: str) -> str:
    settings = get_settings()
    expires_at = datetime.now(timezone.utc) + timedelta(minutes=settings.jwt_expires_minutes)
    claims = {
        "sub": str(user_id),
        "org": str(organization_id),
        "role": role,
        "exp": expires_at,
    }
    return jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> AuthUser:
    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError as exc:
        raise AuthenticationError("token is not valid") from exc

    subject = payload.get("sub")
    organization_id = payload.get("org")
    if not subject or not organization_id:
        raise AuthenticationError("token is missing identity claims")
    role = payload.get("role", "user")
    if role not in {"admin", "user"}:
        role = "user"
    return AuthUser(sub=str(subject), organization_id=str(organization_id), role=str(role))


async def get_current_user(request: Request) -> AuthUser:
    auth_header = request.headers.get("authorization", "")
    token = auth_header.replace("Bearer ", "") if auth_header.startswith("Bearer ") else ""
    if not token:
        token = request.headers.get("x-auth-token", "")

    if not token:
        raise AuthenticationError("no token, authorization denied")

    auth_user = decode_access_token(token)
    bind_actor(
        request,
        user_id=auth_user.sub,
        organization_id=auth_user.organization_id,
        role=auth_user.role,
    )
    return auth_user
