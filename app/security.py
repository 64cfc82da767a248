"""Tenant resolution for invoice ownership.

Signed-in users arrive with ``X-User-Id`` set by the authenticating proxy.
Everyone else is a guest identified by an opaque session cookie, issued on
first contact.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass

from fastapi import Cookie, Header, Response

from app.config import ENV

GUEST_COOKIE_NAME = "riciti_guest_session"
GUEST_COOKIE_MAX_AGE = 60 * 60 * 24 * 30


@dataclass(frozen=True)
class Tenant:
    user_id: str | None = None
    guest_session_id: str | None = None

    @property
    def key(self) -> str:
        return f"user:{self.user_id}" if self.user_id else f"guest:{self.guest_session_id}"


def _valid_guest_id(value: str | None) -> str | None:
    if not value:
        return None
    try:
        return str(uuid.UUID(value))
    except ValueError:
        return None


def get_tenant(
    response: Response,
    x_user_id: str | None = Header(default=None, alias="X-User-Id"),
    guest_session: str | None = Cookie(default=None, alias=GUEST_COOKIE_NAME),
) -> Tenant:
    """Return the caller's tenant, issuing a guest cookie when none is present."""

    if x_user_id and x_user_id.strip():
        return Tenant(user_id=x_user_id.strip())

    guest_id = _valid_guest_id(guest_session)
    if guest_id is None:
        guest_id = str(uuid.uuid4())
        response.set_cookie(
            GUEST_COOKIE_NAME,
            guest_id,
            max_age=GUEST_COOKIE_MAX_AGE,
            httponly=True,
            samesite="lax",
            secure=ENV in {"prod", "production"},
        )
    return Tenant(guest_session_id=guest_id)


__all__ = ["GUEST_COOKIE_NAME", "Tenant", "get_tenant"]
