from dataclasses import dataclass

from starlette.requests import Request


@dataclass
class RequestContext:
    correlation_id: str
    user_id: str | None = None
    organization_id: str | None = None
    role: str | None = None


def get_request_context(request: Request) -> RequestContext:
    context = getattr(request.state, "context", None)
    if context is None:
        context = RequestContext(correlation_id=getattr(request.state, "correlation_id", None) or "")
        request.state.context = context
    return context


def bind_actor(request: Request, *, user_id: str, organization_id: str, role: str) -> RequestContext:
    """Attach the authenticated actor to the request so access logs can carry the tenant."""
    context = get_request_context(request)
    context.user_id = user_id
    context.organization_id = organization_id
    context.role = role
    return context
