from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import jwt
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt import InvalidTokenError

from teachgram.config import Settings
from teachgram.logging import get_logger
from teachgram.service.errors import TokenInvalid
from teachgram.storage.models import Principal

logger = get_logger(__name__)

ALGORITHM = "RS256"
_PRIVATE_KEY_FILE = "jwt_private.pem"
_PUBLIC_KEY_FILE = "jwt_public.pem"


@dataclass(frozen=True)
class SigningKeys:
    private_key: rsa.RSAPrivateKey
    public_key: rsa.RSAPublicKey

    @classmethod
    def generate(cls, key_size: int = 2048) -> "SigningKeys":
        private_key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
        return cls(private_key=private_key, public_key=private_key.public_key())

    def private_pem(self) -> bytes:
        return self.private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )

    def public_pem(self) -> bytes:
        return self.public_key.public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )


def _load_private(pem: bytes) -> rsa.RSAPrivateKey:
    key = serialization.load_pem_private_key(pem, password=None)
    if not isinstance(key, rsa.RSAPrivateKey):
        raise RuntimeError("JWT private key must be an RSA key")
    return key


def _load_public(pem: bytes) -> rsa.RSAPublicKey:
    key = serialization.load_pem_public_key(pem)
    if not isinstance(key, rsa.RSAPublicKey):
        raise RuntimeError("JWT public key must be an RSA key")
    return key


def _read_configured(text: Optional[str], path: Optional[str]) -> Optional[bytes]:
    if text:
        return text.encode()
    if path:
        return Path(path).read_bytes()
    return None


def _write_atomic(target: Path, payload: bytes) -> None:
    fd, tmp_path = tempfile.mkstemp(dir=str(target.parent), prefix=f".{target.name}_", suffix=".tmp")
    try:
        try:
            os.write(fd, payload)
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.replace(tmp_path, str(target))
    except OSError:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


def _persisted_keys(fs_root: Path) -> SigningKeys:
    """Load the key pair kept under ``fs_root/keys``, generating it on first use."""

    key_dir = fs_root / "keys"
    private_path = key_dir / _PRIVATE_KEY_FILE
    public_path = key_dir / _PUBLIC_KEY_FILE
    if private_path.exists() and not private_path.is_symlink():
        private_key = _load_private(private_path.read_bytes())
        return SigningKeys(private_key=private_key, public_key=private_key.public_key())

    keys = SigningKeys.generate()
    try:
        key_dir.mkdir(parents=True, exist_ok=True)
        os.chmod(key_dir, 0o700)
        _write_atomic(private_path, keys.private_pem())
        _write_atomic(public_path, keys.public_pem())
    except OSError as exc:
        logger.error("jwt_key_persist_failed", error=str(exc), path=str(key_dir))
        raise RuntimeError(
            "Unable to persist JWT signing keys; set JWT_PRIVATE_KEY or make SHARED_FS_ROOT writable"
        ) from exc
    logger.info("jwt_keys_generated", path=str(key_dir))
    return keys


def load_signing_keys(settings: Settings) -> SigningKeys:
    """Resolve the RSA key pair from configuration or the shared filesystem."""

    private_pem = _read_configured(settings.jwt_private_key, settings.jwt_private_key_path)
    if private_pem is None:
        return _persisted_keys(Path(settings.shared_fs_root))

    private_key = _load_private(private_pem)
    public_pem = _read_configured(settings.jwt_public_key, settings.jwt_public_key_path)
    if public_pem is None:
        return SigningKeys(private_key=private_key, public_key=private_key.public_key())

    public_key = _load_public(public_pem)
    if public_key.public_numbers() != private_key.public_key().public_numbers():
        raise RuntimeError("JWT public key does not match the configured private key")
    return SigningKeys(private_key=private_key, public_key=public_key)


class TokenService:
    """Issues and verifies RS256 session tokens.

    Tokens carry the username as ``sub`` and the account email as a claim.
    Nothing is stored server side; validity is recomputed from the signature
    and expiry on every request.
    """

    def __init__(
        self,
        keys: SigningKeys,
        *,
        issuer: str = "teachgram-api",
        expiration_minutes: int = 60,
        leeway_seconds: int = 30,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.keys = keys
        self.issuer = issuer
        self.expiration_minutes = expiration_minutes
        self.leeway = timedelta(seconds=leeway_seconds)
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenService":
        return cls(
            load_signing_keys(settings),
            issuer=settings.jwt_issuer,
            expiration_minutes=settings.jwt_expiration_minutes,
            leeway_seconds=settings.jwt_leeway_seconds,
        )

    def _now(self) -> datetime:
        if self._clock is not None:
            return self._clock()
        return datetime.now(timezone.utc)

    @property
    def expires_in_seconds(self) -> int:
        return self.expiration_minutes * 60

    def issue(self, principal: Principal) -> str:
        issued_at = self._now()
        payload: Dict[str, Any] = {
            "sub": principal.username,
            "iss": self.issuer,
            "iat": issued_at,
            "exp": issued_at + timedelta(minutes=self.expiration_minutes),
            "email": principal.email,
            "uid": principal.user_id,
            "roles": sorted(principal.roles),
        }
        return jwt.encode(payload, self.keys.private_key, algorithm=ALGORITHM)

    def decode(self, token: str) -> Dict[str, Any]:
        if not token:
            raise TokenInvalid()
        try:
            return jwt.decode(
                token,
                self.keys.public_key,
                algorithms=[ALGORITHM],
                issuer=self.issuer,
                leeway=self.leeway,
                options={"require": ["sub", "iss", "iat", "exp"]},
            )
        except InvalidTokenError as exc:
            logger.info("token_rejected", reason=type(exc).__name__)
            raise TokenInvalid() from exc

    def extract_subject(self, token: str) -> str:
        claims = self.decode(token)
        subject = claims.get("sub")
        if not isinstance(subject, str) or not subject:
            raise TokenInvalid()
        return subject

    def validate(self, token: str, expected_username: str) -> bool:
        try:
            return self.extract_subject(token) == expected_username
        except TokenInvalid:
            return False
