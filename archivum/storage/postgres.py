from __future__ import annotations

import hmac
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from archivum.logging import get_logger
from archivum.storage.common import SecretCipher, normalize_email
from archivum.storage.errors import ConstraintViolation, StoreUnavailableError
from archivum.storage.models import RefreshToken, Role, User, utcnow


_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        email VARCHAR(50) NOT NULL UNIQUE,
        name VARCHAR(20) NOT NULL,
        role SMALLINT NOT NULL DEFAULT 4,
        password_hash TEXT NOT NULL,
        biography TEXT,
        two_factor_secret TEXT,
        two_factor_enabled BOOLEAN NOT NULL DEFAULT FALSE,
        password_reset_token TEXT,
        password_reset_expires TIMESTAMPTZ,
        last_login TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        token TEXT PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_token_user_idx ON refresh_token (user_id)",
    "CREATE INDEX IF NOT EXISTS app_user_reset_token_idx ON app_user (password_reset_token)",
)


def _as_uuid(user_id: str) -> Optional[str]:
    """Canonical UUID text, or None for ids the UUID column cannot hold."""
    try:
        return str(uuid.UUID(str(user_id)))
    except ValueError:
        return None


class PostgresStore:
    """Postgres-backed credential store and refresh-token ledger."""

    def __init__(
        self, dsn: str, fs_root: str, *, mfa_encryption_key: str | None = None
    ) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self._cipher = SecretCipher(mfa_encryption_key, fs_root=self.fs_root)
        try:
            self.pool = ConnectionPool(
                self.dsn,
                min_size=2,
                max_size=10,
                kwargs={"row_factory": dict_row, "autocommit": False},
            )
            self._ensure_schema()
        except errors.OperationalError as exc:
            raise StoreUnavailableError(f"postgres unavailable: {exc}") from exc

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the ``app_user`` and ``refresh_token`` tables if missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def _user_from_row(self, row: Optional[dict[str, Any]]) -> Optional[User]:
        if not row:
            return None
        return User(
            id=str(row["id"]),
            email=row["email"],
            name=row.get("name", ""),
            role=Role.parse(row.get("role", Role.VISITOR)),
            password_hash=row.get("password_hash", ""),
            biography=row.get("biography"),
            two_factor_secret=self._cipher.decrypt(row.get("two_factor_secret")),
            two_factor_enabled=bool(row.get("two_factor_enabled", False)),
            password_reset_token=row.get("password_reset_token"),
            password_reset_expires=row.get("password_reset_expires"),
            last_login=row.get("last_login"),
            created_at=row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _token_from_row(row: Optional[dict[str, Any]]) -> Optional[RefreshToken]:
        if not row:
            return None
        return RefreshToken(
            token=row["token"],
            user_id=str(row["user_id"]),
            expires_at=row["expires_at"],
            created_at=row.get("created_at") or utcnow(),
        )

    # users
    def create_user(
        self,
        email: str,
        name: str,
        password_hash: str,
        *,
        role: Role = Role.VISITOR,
        biography: Optional[str] = None,
    ) -> User:
        user_id = str(uuid.uuid4())
        normalized = normalize_email(email)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, name, role, password_hash, biography)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, normalized, name, int(Role.parse(role)), password_hash, biography),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        user_id = _as_uuid(user_id)
        if user_id is None:
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._user_from_row(row)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (normalize_email(email),)
            ).fetchone()
        return self._user_from_row(row)

    def list_users(self, limit: int = 100) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM app_user ORDER BY created_at LIMIT %s", (limit,)
            ).fetchall()
        return [self._user_from_row(row) for row in rows]

    def update_user_profile(
        self,
        user_id: str,
        *,
        name: Optional[str] = None,
        biography: Optional[str] = None,
    ) -> Optional[User]:
        user_id = _as_uuid(user_id)
        if user_id is None:
            return None
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET name = COALESCE(%s, name), biography = COALESCE(%s, biography)
                WHERE id = %s
                RETURNING *
                """,
                (name, biography, user_id),
            ).fetchone()
        return self._user_from_row(row)

    def update_user(
        self,
        user_id: str,
        *,
        email: Optional[str] = None,
        name: Optional[str] = None,
        biography: Optional[str] = None,
        role: Optional[Role] = None,
    ) -> Optional[User]:
        user_id = _as_uuid(user_id)
        if user_id is None:
            return None
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    UPDATE app_user
                    SET email = COALESCE(%s, email),
                        name = COALESCE(%s, name),
                        biography = COALESCE(%s, biography),
                        role = COALESCE(%s, role)
                    WHERE id = %s
                    RETURNING *
                    """,
                    (
                        normalize_email(email) if email is not None else None,
                        name,
                        biography,
                        int(Role.parse(role)) if role is not None else None,
                        user_id,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._user_from_row(row)

    def update_user_role(self, user_id: str, role: Role) -> Optional[User]:
        user_id = _as_uuid(user_id)
        if user_id is None:
            return None
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET role = %s WHERE id = %s RETURNING *",
                (int(Role.parse(role)), user_id),
            ).fetchone()
        return self._user_from_row(row)

    def delete_user(self, user_id: str) -> bool:
        user_id = _as_uuid(user_id)
        if user_id is None:
            return False
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))
            return cur.rowcount > 0

    def update_last_login(self, user_id: str, at: Optional[datetime] = None) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE app_user SET last_login = %s WHERE id = %s",
                (at or utcnow(), user_id),
            )

    # two-factor
    def set_two_factor_secret(
        self, user_id: str, secret: str, *, enabled: bool = False
    ) -> User:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user SET two_factor_secret = %s, two_factor_enabled = %s
                WHERE id = %s
                RETURNING *
                """,
                (self._cipher.encrypt(secret), enabled, user_id),
            ).fetchone()
        if not row:
            raise ConstraintViolation("user not found for 2fa", {"user_id": user_id})
        return self._user_from_row(row)

    def enable_two_factor(self, user_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE app_user SET two_factor_enabled = TRUE
                WHERE id = %s AND two_factor_secret IS NOT NULL
                """,
                (user_id,),
            )
            return cur.rowcount > 0

    # password reset
    def set_password_reset_token(
        self, user_id: str, token: str, expires_at: datetime
    ) -> None:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE app_user SET password_reset_token = %s, password_reset_expires = %s
                WHERE id = %s
                """,
                (token, expires_at, user_id),
            )
            if cur.rowcount == 0:
                raise ConstraintViolation("user not found for reset", {"user_id": user_id})

    def find_user_by_reset_token(
        self, token: str, now: Optional[datetime] = None
    ) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM app_user
                WHERE password_reset_token = %s AND password_reset_expires > %s
                """,
                (token, now or utcnow()),
            ).fetchone()
        if row and not hmac.compare_digest(row["password_reset_token"], token):
            return None
        return self._user_from_row(row)

    def complete_password_reset(
        self, user_id: str, token: str, password_hash: str
    ) -> bool:
        """Swap the password hash, clear the reset token and revoke refresh tokens.

        Runs in a single transaction; a failure on any statement rolls back all
        three effects.
        """
        with self._connect() as conn:
            with conn.transaction():
                row = conn.execute(
                    """
                    SELECT password_reset_token FROM app_user
                    WHERE id = %s AND password_reset_expires > now()
                    FOR UPDATE
                    """,
                    (user_id,),
                ).fetchone()
                stored = row.get("password_reset_token") if row else None
                if not stored or not hmac.compare_digest(stored, token):
                    return False
                conn.execute(
                    """
                    UPDATE app_user
                    SET password_hash = %s, password_reset_token = NULL, password_reset_expires = NULL
                    WHERE id = %s
                    """,
                    (password_hash, user_id),
                )
                cur = conn.execute(
                    "DELETE FROM refresh_token WHERE user_id = %s", (user_id,)
                )
                revoked = cur.rowcount
        self.logger.info("password_reset_tokens_revoked", user_id=user_id, revoked=revoked)
        return True

    # refresh token ledger
    def create_refresh_token(self, user_id: str, ttl_days: int = 30) -> RefreshToken:
        record = RefreshToken.new(user_id, ttl_days=ttl_days)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO refresh_token (token, user_id, expires_at, created_at)
                    VALUES (%s, %s, %s, %s)
                    """,
                    (record.token, user_id, record.expires_at, record.created_at),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        return record

    def find_valid_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token = %s AND expires_at > now()",
                (token,),
            ).fetchone()
        return self._token_from_row(row)

    def consume_refresh_token(self, token: str) -> Optional[RefreshToken]:
        """Atomically delete and return a ledger entry.

        ``DELETE ... RETURNING`` lets exactly one of several concurrent callers
        observe the row.
        """
        with self._connect() as conn:
            row = conn.execute(
                """
                DELETE FROM refresh_token
                WHERE token = %s AND expires_at > now()
                RETURNING *
                """,
                (token,),
            ).fetchone()
        return self._token_from_row(row)

    def delete_refresh_token(self, token: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM refresh_token WHERE token = %s", (token,))
            return cur.rowcount > 0

    def delete_user_refresh_tokens(self, user_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM refresh_token WHERE user_id = %s", (user_id,))
            return cur.rowcount

    def purge_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM refresh_token WHERE expires_at <= %s", (now or utcnow(),)
            )
            return cur.rowcount

    def count_refresh_tokens(self, user_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT count(*) AS n FROM refresh_token WHERE user_id = %s AND expires_at > now()",
                (user_id,),
            ).fetchone()
        return int(row["n"]) if row else 0
