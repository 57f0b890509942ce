from __future__ import annotations

import re
import uuid
from contextvars import ContextVar, Token

_MAX_CORRELATION_ID_LENGTH = 128
_CORRELATION_ID_RE = re.compile(r"^[A-Za-z0-9._:\-]+$")

correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)


def resolve_correlation_id(raw: str | None) -> str:
    """Return the caller-supplied correlation id when it is usable, otherwise a new one."""
    if raw:
        candidate = raw.strip()
        if len(candidate) <= _MAX_CORRELATION_ID_LENGTH and _CORRELATION_ID_RE.match(candidate):
            return candidate
    return str(uuid.uuid4())


def set_correlation_id(value: str | None) -> Token[str | None]:
    return correlation_id_var.set(value)


def reset_correlation_id(token: Token[str | None]) -> None:
    correlation_id_var.reset(token)


def get_correlation_id() -> str | None:
    return correlation_id_var.get()
