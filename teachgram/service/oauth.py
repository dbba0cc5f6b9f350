from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, Optional, Protocol, Tuple

import httpx

from teachgram.config import GOOGLE_TOKENINFO_URL, Settings
from teachgram.logging import get_logger
from teachgram.service.errors import (
    InvalidProviderToken,
    RoleNotConfigured,
    UnsupportedProvider,
)
from teachgram.service.passwords import PasswordHasher
from teachgram.storage.errors import ConstraintViolation
from teachgram.storage.models import Account, Principal

if TYPE_CHECKING:
    from teachgram.service.auth import CredentialStore

logger = get_logger(__name__)

# attempts at provisioning before a racing insert is reported upstream
_PROVISION_ATTEMPTS = 3


@dataclass(frozen=True)
class OAuthIdentity:
    provider: str
    email: str
    name: Optional[str] = None
    picture: Optional[str] = None
    subject: Optional[str] = None


class IdentityVerifier(Protocol):
    name: str

    async def verify(self, token: str) -> OAuthIdentity:
        ...


class GoogleIdTokenVerifier:
    """Checks a Google ID token against the tokeninfo endpoint.

    The endpoint's answer is trusted as-is; no local signature verification
    of the ID token is attempted.
    """

    name = "google"

    def __init__(
        self,
        *,
        tokeninfo_url: str = GOOGLE_TOKENINFO_URL,
        client_id: str | None = None,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.tokeninfo_url = tokeninfo_url
        self.client_id = client_id
        self.timeout = timeout
        self._transport = transport

    async def verify(self, token: str) -> OAuthIdentity:
        if not token:
            raise InvalidProviderToken()
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, follow_redirects=False, transport=self._transport
            ) as client:
                response = await client.get(self.tokeninfo_url, params={"id_token": token})
        except httpx.HTTPError as exc:
            logger.warning("oauth_tokeninfo_unreachable", provider=self.name, error=str(exc))
            raise InvalidProviderToken() from exc

        if response.status_code != 200:
            logger.info(
                "oauth_token_rejected", provider=self.name, status_code=response.status_code
            )
            raise InvalidProviderToken()
        try:
            claims = response.json()
        except ValueError as exc:
            raise InvalidProviderToken() from exc
        if not isinstance(claims, dict):
            raise InvalidProviderToken()

        if self.client_id and claims.get("aud") != self.client_id:
            logger.warning("oauth_audience_mismatch", provider=self.name)
            raise InvalidProviderToken("provider token issued for another client")
        return self.parse_identity(claims)

    def parse_identity(self, claims: dict) -> OAuthIdentity:
        email = claims.get("email")
        if not isinstance(email, str) or not email.strip():
            logger.warning("oauth_identity_missing_email", provider=self.name)
            raise InvalidProviderToken("provider token carries no email")
        return OAuthIdentity(
            provider=self.name,
            email=email.strip().lower(),
            name=claims.get("name"),
            picture=claims.get("picture"),
            subject=claims.get("sub"),
        )


class OAuthBridge:
    """Turns a third-party identity token into a local account."""

    def __init__(
        self,
        store: "CredentialStore",
        hasher: PasswordHasher,
        *,
        default_role: str = "ROLE_USER",
        verifiers: Dict[str, IdentityVerifier] | None = None,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.default_role = default_role
        self.verifiers: Dict[str, IdentityVerifier] = {}
        for verifier in (verifiers or {}).values():
            self.register(verifier)

    @classmethod
    def from_settings(
        cls,
        store: "CredentialStore",
        hasher: PasswordHasher,
        settings: Settings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> "OAuthBridge":
        google = GoogleIdTokenVerifier(
            tokeninfo_url=settings.oauth_google_tokeninfo_url,
            client_id=settings.oauth_google_client_id,
            timeout=settings.oauth_http_timeout,
            transport=transport,
        )
        return cls(
            store,
            hasher,
            default_role=settings.default_role,
            verifiers={google.name: google},
        )

    def register(self, verifier: IdentityVerifier) -> None:
        self.verifiers[verifier.name.lower()] = verifier

    def get_provider(self, provider_name: str) -> IdentityVerifier:
        verifier = self.verifiers.get((provider_name or "").strip().lower())
        if verifier is None:
            raise UnsupportedProvider(provider_name)
        return verifier

    def _free_username(self, base: str) -> str:
        candidate = base
        suffix = 0
        while self.store.exists_by_username(candidate):
            suffix += 1
            candidate = f"{base}{suffix}"
        return candidate

    def resolve_account(self, identity: OAuthIdentity) -> Account:
        existing = self.store.find_by_email(identity.email)
        if existing is not None:
            return existing

        if self.store.get_role(self.default_role) is None:
            logger.error("default_role_missing", role=self.default_role)
            raise RoleNotConfigured(self.default_role)

        base = identity.email.split("@", 1)[0] or identity.email
        attempts = 0
        while True:
            attempts += 1
            username = self._free_username(base)
            account = Account.new(
                username=username,
                email=identity.email,
                name=identity.name or username,
                password_hash=self.hasher.unusable(),
                profile_link=identity.picture,
                roles={self.default_role},
            )
            try:
                saved = self.store.save(account)
            except ConstraintViolation as exc:
                # a concurrent login may have provisioned the same email first
                existing = self.store.find_by_email(identity.email)
                if existing is not None:
                    return existing
                if exc.field != "username" or attempts >= _PROVISION_ATTEMPTS:
                    raise
                continue
            logger.info(
                "oauth_account_provisioned",
                provider=identity.provider,
                user_id=saved.id,
                username=saved.username,
            )
            return saved

    async def login_with_provider(
        self, provider_name: str, provider_token: str
    ) -> Tuple[Account, Principal]:
        verifier = self.get_provider(provider_name)
        identity = await verifier.verify(provider_token)
        account = self.resolve_account(identity)
        return account, Principal.from_account(account)
