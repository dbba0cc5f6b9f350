from __future__ import annotations

import uuid
from typing import Any, Dict, Iterable, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from teachgram.logging import get_logger
from teachgram.storage.errors import ConstraintViolation
from teachgram.storage.models import DEFAULT_ROLES, Account, Role

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS roles (
        id UUID PRIMARY KEY,
        name TEXT NOT NULL UNIQUE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS users (
        id UUID PRIMARY KEY,
        username TEXT NOT NULL,
        email TEXT NOT NULL,
        phone TEXT,
        name TEXT NOT NULL,
        password_hash TEXT NOT NULL,
        profile_link TEXT,
        description TEXT,
        failed_login_attempts INTEGER NOT NULL DEFAULT 0,
        account_locked BOOLEAN NOT NULL DEFAULT FALSE,
        deleted BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_roles (
        user_id UUID NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        role_id UUID NOT NULL REFERENCES roles(id),
        PRIMARY KEY (user_id, role_id)
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS users_username_key ON users (username) WHERE NOT deleted",
    "CREATE UNIQUE INDEX IF NOT EXISTS users_email_key ON users (email) WHERE NOT deleted",
    "CREATE UNIQUE INDEX IF NOT EXISTS users_phone_key ON users (phone) WHERE NOT deleted AND phone IS NOT NULL",
)

# unique index name -> offending account field
_CONSTRAINT_FIELDS = {
    "users_username_key": "username",
    "users_email_key": "email",
    "users_phone_key": "phone",
}


def _violated_field(exc: Exception) -> str:
    diag = getattr(exc, "diag", None)
    constraint = getattr(diag, "constraint_name", None)
    return _CONSTRAINT_FIELDS.get(constraint or "", "account")


_SELECT_ACCOUNT = """
    SELECT u.*,
           COALESCE(
               array_agg(r.name) FILTER (WHERE r.name IS NOT NULL), '{}'
           ) AS role_names
    FROM users u
    LEFT JOIN user_roles ur ON ur.user_id = u.id
    LEFT JOIN roles r ON r.id = ur.role_id
"""


class PostgresStore:
    """Postgres-backed credential store."""

    def __init__(
        self,
        dsn: str,
        *,
        min_size: int = 1,
        max_size: int = 10,
        ensure_schema: bool = True,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        if ensure_schema:
            self.ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def close(self) -> None:
        self.pool.close()

    def ensure_schema(self, roles: Iterable[str] = DEFAULT_ROLES) -> None:
        """Create the account tables if missing and seed the role catalogue."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)
            for name in roles:
                conn.execute(
                    "INSERT INTO roles (id, name) VALUES (%s, %s) ON CONFLICT (name) DO NOTHING",
                    (str(uuid.uuid4()), name),
                )

    @staticmethod
    def _account_from_row(row: Dict[str, Any]) -> Account:
        return Account(
            id=str(row["id"]),
            username=row["username"],
            email=row["email"],
            name=row["name"],
            password_hash=row["password_hash"],
            phone=row.get("phone"),
            profile_link=row.get("profile_link"),
            description=row.get("description"),
            roles=set(row.get("role_names") or ()),
            failed_login_attempts=row.get("failed_login_attempts", 0),
            locked=row.get("account_locked", False),
            deleted=row.get("deleted", False),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _fetch_one(self, where: str, value: Any) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                f"{_SELECT_ACCOUNT} WHERE {where} AND NOT u.deleted GROUP BY u.id",
                (value,),
            ).fetchone()
        if not row:
            return None
        return self._account_from_row(row)

    # accounts
    def find_by_id(self, account_id: str) -> Optional[Account]:
        try:
            uuid.UUID(str(account_id))
        except ValueError:
            return None
        return self._fetch_one("u.id = %s", account_id)

    def find_by_username(self, username: str) -> Optional[Account]:
        return self._fetch_one("u.username = %s", username)

    def find_by_email(self, email: str) -> Optional[Account]:
        return self._fetch_one("u.email = %s", email)

    def find_by_phone(self, phone: Optional[str]) -> Optional[Account]:
        if phone is None:
            return None
        return self._fetch_one("u.phone = %s", phone)

    def _exists(self, column: str, value: Any) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT 1 AS present FROM users WHERE {column} = %s AND NOT deleted LIMIT 1",
                (value,),
            ).fetchone()
        return row is not None

    def exists_by_username(self, username: str) -> bool:
        return self._exists("username", username)

    def exists_by_email(self, email: str) -> bool:
        return self._exists("email", email)

    def exists_by_phone(self, phone: Optional[str]) -> bool:
        if phone is None:
            return False
        return self._exists("phone", phone)

    def save(self, account: Account) -> Account:
        """Insert or update ``account`` and its role links in one transaction."""

        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO users (
                        id, username, email, phone, name, password_hash, profile_link,
                        description, failed_login_attempts, account_locked, deleted,
                        created_at, updated_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (id) DO UPDATE SET
                        username = EXCLUDED.username,
                        email = EXCLUDED.email,
                        phone = EXCLUDED.phone,
                        name = EXCLUDED.name,
                        password_hash = EXCLUDED.password_hash,
                        profile_link = EXCLUDED.profile_link,
                        description = EXCLUDED.description,
                        failed_login_attempts = EXCLUDED.failed_login_attempts,
                        account_locked = EXCLUDED.account_locked,
                        deleted = EXCLUDED.deleted,
                        updated_at = EXCLUDED.updated_at
                    """,
                    (
                        account.id,
                        account.username,
                        account.email,
                        account.phone,
                        account.name,
                        account.password_hash,
                        account.profile_link,
                        account.description,
                        account.failed_login_attempts,
                        account.locked,
                        account.deleted,
                        account.created_at,
                        account.updated_at,
                    ),
                )
                conn.execute("DELETE FROM user_roles WHERE user_id = %s", (account.id,))
                for role_name in sorted(account.roles):
                    inserted = conn.execute(
                        """
                        INSERT INTO user_roles (user_id, role_id)
                        SELECT %s, id FROM roles WHERE name = %s
                        """,
                        (account.id, role_name),
                    )
                    if inserted.rowcount == 0:
                        raise ConstraintViolation(
                            "unknown role", {"field": "roles", "roles": [role_name]}
                        )
        except errors.UniqueViolation as exc:
            field = _violated_field(exc)
            raise ConstraintViolation(f"{field} already exists", {"field": field}) from exc
        return account

    def delete(self, account_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE users SET deleted = TRUE, updated_at = now() WHERE id = %s AND NOT deleted",
                (account_id,),
            )
            return cur.rowcount > 0

    def list_accounts(self) -> List[Account]:
        with self._connect() as conn:
            rows = conn.execute(
                f"{_SELECT_ACCOUNT} WHERE NOT u.deleted GROUP BY u.id ORDER BY u.created_at"
            ).fetchall()
        return [self._account_from_row(row) for row in rows]

    # roles
    def get_role(self, name: str) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, name FROM roles WHERE name = %s", (name,)
            ).fetchone()
        if not row:
            return None
        return Role(id=str(row["id"]), name=row["name"])

    def create_role(self, name: str) -> Role:
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO roles (id, name) VALUES (%s, %s) ON CONFLICT (name) DO NOTHING",
                (str(uuid.uuid4()), name),
            )
            row = conn.execute(
                "SELECT id, name FROM roles WHERE name = %s", (name,)
            ).fetchone()
        return Role(id=str(row["id"]), name=row["name"])

    def ping(self) -> bool:
        try:
            with self._connect() as conn:
                conn.execute("SELECT 1")
        except Exception as exc:
            self.logger.warning("postgres_ping_failed", error=str(exc))
            return False
        return True
