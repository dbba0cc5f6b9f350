from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol

from teachgram.logging import get_logger
from teachgram.service.errors import (
    AccountLocked,
    DuplicateField,
    InvalidCredentials,
    NotFoundError,
    RoleNotConfigured,
    TokenInvalid,
)
from teachgram.service.oauth import OAuthBridge
from teachgram.service.passwords import PasswordHasher
from teachgram.service.tokens import TokenService
from teachgram.storage.errors import ConstraintViolation
from teachgram.storage.models import (
    MAX_FAILED_LOGIN_ATTEMPTS,
    Account,
    Principal,
    Role,
)


class CredentialStore(Protocol):
    """Persistence contract for accounts and roles.

    Implemented by :class:`teachgram.storage.memory.MemoryStore` and
    :class:`teachgram.storage.postgres.PostgresStore`. Lookups never return
    soft-deleted accounts and ``save`` raises ``ConstraintViolation`` when a
    username, email or phone is already taken.
    """

    def find_by_id(self, account_id: str) -> Optional[Account]:
        ...

    def find_by_username(self, username: str) -> Optional[Account]:
        ...

    def find_by_email(self, email: str) -> Optional[Account]:
        ...

    def find_by_phone(self, phone: Optional[str]) -> Optional[Account]:
        ...

    def exists_by_username(self, username: str) -> bool:
        ...

    def exists_by_email(self, email: str) -> bool:
        ...

    def exists_by_phone(self, phone: Optional[str]) -> bool:
        ...

    def save(self, account: Account) -> Account:
        ...

    def delete(self, account_id: str) -> bool:
        ...

    def get_role(self, name: str) -> Optional[Role]:
        ...

    def create_role(self, name: str) -> Role:
        ...


@dataclass(frozen=True)
class SignupData:
    username: str
    email: str
    name: str
    password: str
    phone: Optional[str] = None
    profile_link: Optional[str] = None
    description: Optional[str] = None


@dataclass(frozen=True)
class SessionDescriptor:
    token: str
    user_id: str
    user_name: str
    expires_in_seconds: int

    def to_dict(self) -> dict:
        return {
            "token": self.token,
            "user_id": self.user_id,
            "user_name": self.user_name,
            "expires_in": self.expires_in_seconds,
        }


def resolve_identifier(store: CredentialStore, identifier: str) -> Optional[Account]:
    """Find the account a login identifier refers to: username, then email, then phone."""

    if not identifier:
        return None
    return (
        store.find_by_username(identifier)
        or store.find_by_email(identifier.lower())
        or store.find_by_phone(identifier)
    )


class Authenticator:
    """Verifies identifier/password pairs without touching account state."""

    def __init__(self, store: CredentialStore, hasher: PasswordHasher) -> None:
        self.store = store
        self.hasher = hasher
        self.logger = get_logger(__name__)

    def authenticate(self, identifier: str, password: str) -> Principal:
        account = resolve_identifier(self.store, identifier)
        if account is None:
            self.hasher.burn(password)
            raise InvalidCredentials()
        if account.locked:
            self.hasher.burn(password)
            raise AccountLocked()
        if not self.hasher.verify(account.password_hash, password):
            self.logger.warning("password_verification_failed", user_id=account.id)
            raise InvalidCredentials()
        return Principal.from_account(account)


class AuthService:
    """Entry point for signup, password login and provider login.

    Lockout bookkeeping happens here rather than in :class:`Authenticator`:
    a failed ``login`` counts against the account, a successful one resets it.
    """

    def __init__(
        self,
        store: CredentialStore,
        tokens: TokenService,
        oauth: OAuthBridge,
        *,
        hasher: PasswordHasher | None = None,
        default_role: str = "ROLE_USER",
        lockout_threshold: int = MAX_FAILED_LOGIN_ATTEMPTS,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.oauth = oauth
        self.hasher = hasher or oauth.hasher
        self.authenticator = Authenticator(store, self.hasher)
        self.default_role = default_role
        self.lockout_threshold = lockout_threshold
        self.logger = get_logger(__name__)

    def _session_for(self, principal: Principal, user_name: str) -> SessionDescriptor:
        return SessionDescriptor(
            token=self.tokens.issue(principal),
            user_id=principal.user_id,
            user_name=user_name,
            expires_in_seconds=self.tokens.expires_in_seconds,
        )

    async def signup(self, data: SignupData) -> SessionDescriptor:
        email = data.email.strip().lower()
        if self.store.exists_by_username(data.username):
            raise DuplicateField("username")
        if self.store.exists_by_email(email):
            raise DuplicateField("email")
        if data.phone is not None and self.store.exists_by_phone(data.phone):
            raise DuplicateField("phone")

        if self.store.get_role(self.default_role) is None:
            self.logger.error("default_role_missing", role=self.default_role)
            raise RoleNotConfigured(self.default_role)

        account = Account.new(
            username=data.username,
            email=email,
            name=data.name,
            password_hash=self.hasher.hash(data.password),
            phone=data.phone,
            profile_link=data.profile_link,
            description=data.description,
            roles={self.default_role},
        )
        try:
            saved = self.store.save(account)
        except ConstraintViolation as exc:
            if exc.field not in {"username", "email", "phone"}:
                raise
            raise DuplicateField(exc.field) from exc
        self.logger.info("signup_completed", user_id=saved.id)
        return await self.login(data.username, data.password)

    async def login(self, identifier: str, password: str) -> SessionDescriptor:
        try:
            principal = self.authenticator.authenticate(identifier, password)
        except AccountLocked:
            self.logger.warning("login_refused_locked", identifier=identifier)
            raise
        except InvalidCredentials:
            self.record_failed_login(identifier)
            raise
        self.process_successful_login(principal.username)
        self.logger.info("login_succeeded", user_id=principal.user_id)
        return self._session_for(principal, principal.display_name)

    async def login_with_provider(
        self, provider_name: str, provider_token: str
    ) -> SessionDescriptor:
        account, principal = await self.oauth.login_with_provider(
            provider_name, provider_token
        )
        self.logger.info(
            "provider_login_succeeded", provider=provider_name.lower(), user_id=account.id
        )
        return self._session_for(principal, account.username)

    def record_failed_login(self, identifier: str) -> None:
        account = resolve_identifier(self.store, identifier)
        if account is None:
            return
        locked_now = account.register_failed_login(self.lockout_threshold)
        self.store.save(account)
        if locked_now:
            self.logger.warning(
                "account_locked",
                user_id=account.id,
                failed_login_attempts=account.failed_login_attempts,
            )
        else:
            self.logger.info(
                "login_failed",
                user_id=account.id,
                failed_login_attempts=account.failed_login_attempts,
            )

    def process_successful_login(self, username: str) -> None:
        account = self.store.find_by_username(username)
        if account is None:
            return
        if account.failed_login_attempts == 0 and not account.locked:
            return
        account.reset_failed_logins()
        self.store.save(account)

    def unlock_account(self, username: str) -> Account:
        account = self.store.find_by_username(username)
        if account is None:
            raise NotFoundError("account not found", detail={"username": username})
        account.reset_failed_logins()
        saved = self.store.save(account)
        self.logger.info("account_unlocked", user_id=saved.id)
        return saved

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        lower = header.lower()
        if not lower.startswith("bearer "):
            return None
        return header.split(" ", 1)[1].strip()

    def authenticate_bearer(self, authorization: Optional[str]) -> Principal:
        token = self._extract_bearer(authorization)
        if not token:
            raise TokenInvalid("missing bearer token")
        username = self.tokens.extract_subject(token)
        account = self.store.find_by_username(username)
        if account is None or not self.tokens.validate(token, account.username):
            raise TokenInvalid()
        return Principal.from_account(account)
