"""Caller identity for the API.

Authentication happens upstream: the edge gateway verifies the caller and
forwards the user id and role as ``X-User-Id`` and ``X-User-Role``. The
service trusts these headers as given, so the gateway must strip any
client-supplied ``X-User-Id`` and ``X-User-Role`` and set them itself on
every request. Exposing the service without such a gateway lets any client
claim the admin role.
"""

from dataclasses import dataclass

from fastapi import Depends, Header

from marketplace.errors import ForbiddenError, UnauthenticatedError

ADMIN_ROLE = "admin"


@dataclass(frozen=True)
class Identity:
    user_id: str
    role: str = "customer"

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE


def current_identity(
    x_user_id: str | None = Header(default=None),
    x_user_role: str | None = Header(default=None),
) -> Identity:
    if not x_user_id or not x_user_id.strip():
        raise UnauthenticatedError()
    return Identity(user_id=x_user_id.strip(), role=(x_user_role or "customer").strip().lower())


def require_admin(identity: Identity = Depends(current_identity)) -> Identity:
    if not identity.is_admin:
        raise ForbiddenError()
    return identity
