from __future__ import annotations

import copy
import json
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from teachgram.logging import get_logger
from teachgram.storage.errors import ConstraintViolation
from teachgram.storage.models import DEFAULT_ROLES, Account, Role


class MemoryStore:
    """In-memory credential store used for tests and local development.

    Reads hand out copies, so a caller's changes only become visible once the
    account is passed back to :meth:`save`.
    """

    def __init__(
        self,
        fs_root: str | None = None,
        *,
        roles: Iterable[str] | None = DEFAULT_ROLES,
    ) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.roles: Dict[str, Role] = {}
        # RLock so helpers can be called while a public method holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)

        if not self._load_state():
            for name in roles or ():
                self.roles[name] = Role.new(name)
            self._persist_state()

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: datetime) -> str:
        return dt.isoformat()

    @staticmethod
    def _deserialize_datetime(raw: str) -> datetime:
        return datetime.fromisoformat(raw)

    def _active(self) -> List[Account]:
        return [a for a in self.accounts.values() if not a.deleted]

    def _find(self, attr: str, value: Optional[str]) -> Optional[Account]:
        if value is None:
            return None
        with self._data_lock:
            for account in self._active():
                if getattr(account, attr) == value:
                    return copy.deepcopy(account)
        return None

    # accounts -----------------------------------------------------------

    def find_by_id(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if account is None or account.deleted:
                return None
            return copy.deepcopy(account)

    def find_by_username(self, username: str) -> Optional[Account]:
        return self._find("username", username)

    def find_by_email(self, email: str) -> Optional[Account]:
        return self._find("email", email)

    def find_by_phone(self, phone: Optional[str]) -> Optional[Account]:
        return self._find("phone", phone)

    def exists_by_username(self, username: str) -> bool:
        return self.find_by_username(username) is not None

    def exists_by_email(self, email: str) -> bool:
        return self.find_by_email(email) is not None

    def exists_by_phone(self, phone: Optional[str]) -> bool:
        return self.find_by_phone(phone) is not None

    def save(self, account: Account) -> Account:
        with self._data_lock:
            if not account.deleted:
                for other in self._active():
                    if other.id == account.id:
                        continue
                    for field_name in ("username", "email", "phone"):
                        value = getattr(account, field_name)
                        if value is not None and getattr(other, field_name) == value:
                            raise ConstraintViolation(
                                f"{field_name} already exists", {"field": field_name}
                            )
            unknown = set(account.roles) - set(self.roles)
            if unknown:
                raise ConstraintViolation(
                    "unknown role", {"field": "roles", "roles": sorted(unknown)}
                )
            stored = copy.deepcopy(account)
            self.accounts[stored.id] = stored
            self._persist_state()
            return copy.deepcopy(stored)

    def delete(self, account_id: str) -> bool:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if account is None or account.deleted:
                return False
            account.deleted = True
            self._persist_state()
            return True

    def list_accounts(self) -> List[Account]:
        with self._data_lock:
            return [copy.deepcopy(a) for a in self._active()]

    # roles --------------------------------------------------------------

    def get_role(self, name: str) -> Optional[Role]:
        with self._data_lock:
            role = self.roles.get(name)
            return copy.copy(role) if role else None

    def create_role(self, name: str) -> Role:
        with self._data_lock:
            existing = self.roles.get(name)
            if existing is not None:
                return copy.copy(existing)
            role = Role.new(name)
            self.roles[name] = role
            self._persist_state()
            return copy.copy(role)

    def ping(self) -> bool:
        return True

    # persistence --------------------------------------------------------

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "roles": [{"id": r.id, "name": r.name} for r in self.roles.values()],
            "accounts": [self._serialize_account(a) for a in self.accounts.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except Exception as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        if self.fs_root is None:
            return False
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.roles = {r["name"]: Role(id=r["id"], name=r["name"]) for r in data.get("roles", [])}
        self.accounts = {
            a["id"]: self._deserialize_account(a) for a in data.get("accounts", [])
        }
        self.logger.info(
            "memory_store_loaded", accounts=len(self.accounts), path=str(path)
        )
        return True

    def _serialize_account(self, account: Account) -> dict:
        return {
            "id": account.id,
            "username": account.username,
            "email": account.email,
            "name": account.name,
            "password_hash": account.password_hash,
            "phone": account.phone,
            "profile_link": account.profile_link,
            "description": account.description,
            "roles": sorted(account.roles),
            "failed_login_attempts": account.failed_login_attempts,
            "locked": account.locked,
            "deleted": account.deleted,
            "created_at": self._serialize_datetime(account.created_at),
            "updated_at": self._serialize_datetime(account.updated_at),
        }

    def _deserialize_account(self, data: dict) -> Account:
        return Account(
            id=str(data["id"]),
            username=data["username"],
            email=data["email"],
            name=data.get("name") or data["username"],
            password_hash=data["password_hash"],
            phone=data.get("phone"),
            profile_link=data.get("profile_link"),
            description=data.get("description"),
            roles=set(data.get("roles", [])),
            failed_login_attempts=int(data.get("failed_login_attempts", 0)),
            locked=bool(data.get("locked", False)),
            deleted=bool(data.get("deleted", False)),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(
                data.get("updated_at", data["created_at"])
            ),
        )
