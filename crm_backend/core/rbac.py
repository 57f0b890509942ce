from crm_backend.core.auth import ActorUser
from crm_backend.core.errors import ForbiddenError


def require_admin(user: ActorUser) -> None:
    if not user.is_admin:
        raise ForbiddenError("admin privileges required")
