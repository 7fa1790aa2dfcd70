from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .errors import Unauthenticated, Unauthorized
from .models import ADMIN_ROLES, SYSTEM_ADMIN_ID, User, UserRole


@dataclass(frozen=True)
class Identity:
    """Who is calling. Every ledger operation takes one explicitly."""

    user_id: str
    role: UserRole
    name: str = ""

    @classmethod
    def of(cls, user: User) -> "Identity":
        return cls(user_id=user.id, role=user.role, name=user.name)

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES

    @property
    def is_super_admin(self) -> bool:
        return self.role == UserRole.ADMIN_SUPER

    @property
    def speaker_id(self) -> str:
        # admins talk to users as the shared support account
        return SYSTEM_ADMIN_ID if self.is_admin else self.user_id


def require(identity: Optional[Identity]) -> Identity:
    if identity is None:
        raise Unauthenticated("sign in first")
    return identity


def require_role(identity: Optional[Identity], *roles: UserRole) -> Identity:
    identity = require(identity)
    if identity.role not in roles:
        raise Unauthorized(f"role {identity.role.value} may not do this")
    return identity


def require_admin(identity: Optional[Identity]) -> Identity:
    return require_role(identity, *ADMIN_ROLES)
