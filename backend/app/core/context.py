"""Request attribution for audit history. This is not authentication."""
from __future__ import annotations

from dataclasses import dataclass

from fastapi import Header

from app.core.errors import ValidationError

SUPPORTED_ROLES = {"dispatcher", "driver", "planner", "admin"}


@dataclass
class RequestContext:
    actor: str
    role: str


def _normalize_role(value: str | None) -> str:
    role = (value or "").strip().lower()
    if not role:
        return "dispatcher"
    if role not in SUPPORTED_ROLES:
        raise ValidationError(f"Unsupported role '{value}'. Expected one of: {sorted(SUPPORTED_ROLES)}")
    return role


def get_request_context(
    x_actor: str | None = Header(default=None, alias="X-Actor"),
    x_actor_role: str | None = Header(default=None, alias="X-Actor-Role"),
) -> RequestContext:
    role = _normalize_role(x_actor_role)
    actor = (x_actor or "").strip() or role
    return RequestContext(actor=actor, role=role)
