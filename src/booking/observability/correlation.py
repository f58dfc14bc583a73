"""Request correlation IDs, propagated through a ContextVar."""

import uuid
from contextvars import ContextVar, Token

correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="")

CORRELATION_ID_HEADER = "X-Correlation-ID"

# Upper bound for client-supplied ids; longer values are replaced.
_MAX_INCOMING_LENGTH = 128


def generate_correlation_id() -> str:
    return uuid.uuid4().hex


def resolve_correlation_id(incoming: str | None) -> str:
    """Reuse a caller-supplied id when it is sane, otherwise mint one."""
    if incoming and len(incoming) <= _MAX_INCOMING_LENGTH and incoming.isprintable():
        return incoming
    return generate_correlation_id()


def get_correlation_id() -> str:
    return correlation_id_var.get()


def set_correlation_id(cid: str) -> Token[str]:
    return correlation_id_var.set(cid)


def reset_correlation_id(token: Token[str]) -> None:
    correlation_id_var.reset(token)

