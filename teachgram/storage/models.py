from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import FrozenSet, Optional, Set

MAX_FAILED_LOGIN_ATTEMPTS = 5

ROLE_USER = "ROLE_USER"
ROLE_ADMIN = "ROLE_ADMIN"
ROLE_MODERATOR = "ROLE_MODERATOR"
DEFAULT_ROLES = (ROLE_USER, ROLE_ADMIN, ROLE_MODERATOR)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Role:
    id: str
    name: str

    @classmethod
    def new(cls, name: str) -> "Role":
        return cls(id=str(uuid.uuid4()), name=name)


@dataclass
class Account:
    """A persisted user account and its login bookkeeping.

    ``failed_login_attempts`` never exceeds the lockout threshold: once the
    threshold is reached the account is locked and further failures are not
    counted until an explicit reset.
    """

    id: str
    username: str
    email: str
    name: str
    password_hash: str
    phone: Optional[str] = None
    profile_link: Optional[str] = None
    description: Optional[str] = None
    roles: Set[str] = field(default_factory=set)
    failed_login_attempts: int = 0
    locked: bool = False
    deleted: bool = False
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def new(
        cls,
        *,
        username: str,
        email: str,
        name: str,
        password_hash: str,
        phone: Optional[str] = None,
        profile_link: Optional[str] = None,
        description: Optional[str] = None,
        roles: Optional[Set[str]] = None,
    ) -> "Account":
        return cls(
            id=str(uuid.uuid4()),
            username=username,
            email=email,
            name=name,
            password_hash=password_hash,
            phone=phone,
            profile_link=profile_link,
            description=description,
            roles=set(roles or ()),
        )

    def register_failed_login(
        self, threshold: int = MAX_FAILED_LOGIN_ATTEMPTS
    ) -> bool:
        """Count one failed login. Returns True when this attempt locked the account."""
        if self.locked:
            return False
        self.failed_login_attempts += 1
        self.updated_at = _utcnow()
        if self.failed_login_attempts >= threshold:
            self.locked = True
            return True
        return False

    def reset_failed_logins(self) -> None:
        self.failed_login_attempts = 0
        self.locked = False
        self.updated_at = _utcnow()

    def has_role(self, role: str) -> bool:
        return role in self.roles


@dataclass(frozen=True)
class Principal:
    """Authenticated identity handed to token issuance and route handlers."""

    user_id: str
    username: str
    display_name: str
    email: str
    roles: FrozenSet[str] = frozenset()

    @classmethod
    def from_account(cls, account: Account) -> "Principal":
        return cls(
            user_id=account.id,
            username=account.username,
            display_name=account.name,
            email=account.email,
            roles=frozenset(account.roles),
        )

    def has_any_role(self, *roles: str) -> bool:
        return any(role in self.roles for role in roles)
