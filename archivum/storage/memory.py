from __future__ import annotations

import hmac
import json
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from archivum.logging import get_logger
from archivum.storage.common import SecretCipher, normalize_email
from archivum.storage.errors import ConstraintViolation
from archivum.storage.models import RefreshToken, Role, User, utcnow


class MemoryStore:
    """In-process credential store and refresh-token ledger.

    Every read and write happens under a single ``RLock`` so that compound
    operations (consume-and-delete of a refresh token, password reset plus
    token revocation) are atomic with respect to concurrent requests. State is
    mirrored to a JSON file under ``fs_root/state`` so a restart keeps users.
    """

    def __init__(
        self, fs_root: str = "/tmp/archivum", *, mfa_encryption_key: str | None = None
    ) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._cipher = SecretCipher(mfa_encryption_key, fs_root=self.fs_root)
        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def _public(self, user: Optional[User]) -> Optional[User]:
        """Return a detached copy with the 2FA secret decrypted."""
        if user is None:
            return None
        return replace(user, two_factor_secret=self._cipher.decrypt(user.two_factor_secret))

    # -- users -----------------------------------------------------------

    def create_user(
        self,
        email: str,
        name: str,
        password_hash: str,
        *,
        role: Role = Role.VISITOR,
        biography: Optional[str] = None,
    ) -> User:
        normalized = normalize_email(email)
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=normalized,
                name=name,
                role=Role.parse(role),
                password_hash=password_hash,
                biography=biography,
            )
            self.users[user.id] = user
            self._persist_state()
            return self._public(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self._public(self.users.get(user_id))

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = normalize_email(email)
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == normalized), None)
            return self._public(user)

    def list_users(self, limit: int = 100) -> List[User]:
        with self._data_lock:
            ordered = sorted(self.users.values(), key=lambda u: u.created_at)
            return [self._public(u) for u in ordered[:limit]]

    def update_user_profile(
        self,
        user_id: str,
        *,
        name: Optional[str] = None,
        biography: Optional[str] = None,
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if name is not None:
                user.name = name
            if biography is not None:
                user.biography = biography
            self._persist_state()
            return self._public(user)

    def update_user(
        self,
        user_id: str,
        *,
        email: Optional[str] = None,
        name: Optional[str] = None,
        biography: Optional[str] = None,
        role: Optional[Role] = None,
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if email is not None:
                normalized = normalize_email(email)
                if any(
                    other.email == normalized and other.id != user_id
                    for other in self.users.values()
                ):
                    raise ConstraintViolation("email already exists", {"field": "email"})
                user.email = normalized
            if name is not None:
                user.name = name
            if biography is not None:
                user.biography = biography
            if role is not None:
                user.role = Role.parse(role)
            self._persist_state()
            return self._public(user)

    def update_user_role(self, user_id: str, role: Role) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = Role.parse(role)
            self._persist_state()
            return self._public(user)

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if self.users.pop(user_id, None) is None:
                return False
            self._delete_user_tokens_locked(user_id)
            self._persist_state()
            return True

    def update_last_login(self, user_id: str, at: Optional[datetime] = None) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return
            user.last_login = at or utcnow()
            self._persist_state()

    # -- two-factor ------------------------------------------------------

    def set_two_factor_secret(
        self, user_id: str, secret: str, *, enabled: bool = False
    ) -> User:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise ConstraintViolation("user not found for 2fa", {"user_id": user_id})
            user.two_factor_secret = self._cipher.encrypt(secret)
            user.two_factor_enabled = enabled
            self._persist_state()
            return self._public(user)

    def enable_two_factor(self, user_id: str) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or not user.two_factor_secret:
                return False
            user.two_factor_enabled = True
            self._persist_state()
            return True

    # -- password reset --------------------------------------------------

    def set_password_reset_token(
        self, user_id: str, token: str, expires_at: datetime
    ) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise ConstraintViolation("user not found for reset", {"user_id": user_id})
            user.password_reset_token = token
            user.password_reset_expires = expires_at
            self._persist_state()

    def find_user_by_reset_token(
        self, token: str, now: Optional[datetime] = None
    ) -> Optional[User]:
        current = now or utcnow()
        with self._data_lock:
            for user in self.users.values():
                stored = user.password_reset_token
                if not stored or not hmac.compare_digest(stored, token):
                    continue
                if user.password_reset_expires is None or user.password_reset_expires <= current:
                    return None
                return self._public(user)
            return None

    def complete_password_reset(
        self, user_id: str, token: str, password_hash: str
    ) -> bool:
        """Swap the password hash, clear the reset token and revoke refresh tokens.

        All three effects happen under one lock acquisition; no reader can
        observe the new hash alongside a surviving refresh token.
        """
        now = utcnow()
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or not user.password_reset_token:
                return False
            if not hmac.compare_digest(user.password_reset_token, token):
                return False
            if user.password_reset_expires is None or user.password_reset_expires <= now:
                return False
            user.password_hash = password_hash
            user.password_reset_token = None
            user.password_reset_expires = None
            revoked = self._delete_user_tokens_locked(user_id)
            self._persist_state()
        self.logger.info("password_reset_tokens_revoked", user_id=user_id, revoked=revoked)
        return True

    # -- refresh token ledger --------------------------------------------

    def create_refresh_token(self, user_id: str, ttl_days: int = 30) -> RefreshToken:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            record = RefreshToken.new(user_id, ttl_days=ttl_days)
            self.refresh_tokens[record.token] = record
            self._persist_state()
            return replace(record)

    def find_valid_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._data_lock:
            record = self.refresh_tokens.get(token)
            if not record or record.is_expired():
                return None
            return replace(record)

    def consume_refresh_token(self, token: str) -> Optional[RefreshToken]:
        """Atomically delete and return a live ledger entry.

        Of two concurrent callers presenting the same token exactly one gets
        the record; the other gets ``None``.
        """
        with self._data_lock:
            record = self.refresh_tokens.get(token)
            if not record:
                return None
            if record.is_expired():
                self.refresh_tokens.pop(token, None)
                self._persist_state()
                return None
            self.refresh_tokens.pop(token)
            self._persist_state()
            return record

    def delete_refresh_token(self, token: str) -> bool:
        with self._data_lock:
            removed = self.refresh_tokens.pop(token, None) is not None
            if removed:
                self._persist_state()
            return removed

    def _delete_user_tokens_locked(self, user_id: str) -> int:
        stale = [t for t, rec in self.refresh_tokens.items() if rec.user_id == user_id]
        for token in stale:
            self.refresh_tokens.pop(token, None)
        return len(stale)

    def delete_user_refresh_tokens(self, user_id: str) -> int:
        with self._data_lock:
            removed = self._delete_user_tokens_locked(user_id)
            if removed:
                self._persist_state()
            return removed

    def purge_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int:
        current = now or utcnow()
        with self._data_lock:
            expired = [t for t, rec in self.refresh_tokens.items() if rec.is_expired(current)]
            for token in expired:
                self.refresh_tokens.pop(token, None)
            if expired:
                self._persist_state()
            return len(expired)

    def count_refresh_tokens(self, user_id: str) -> int:
        with self._data_lock:
            return sum(
                1
                for rec in self.refresh_tokens.values()
                if rec.user_id == user_id and not rec.is_expired()
            )

    def verify_connection(self) -> None:
        """Memory store is always reachable; probe the state directory."""
        self._state_path()

    # -- persistence -----------------------------------------------------

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "refresh_tokens": [
                self._serialize_refresh_token(r) for r in self.refresh_tokens.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.refresh_tokens = {
            r["token"]: self._deserialize_refresh_token(r)
            for r in data.get("refresh_tokens", [])
        }
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "name": user.name,
            "role": int(user.role),
            "password_hash": user.password_hash,
            "biography": user.biography,
            # already encrypted at rest
            "two_factor_secret": user.two_factor_secret,
            "two_factor_enabled": user.two_factor_enabled,
            "password_reset_token": user.password_reset_token,
            "password_reset_expires": self._serialize_datetime(user.password_reset_expires),
            "last_login": self._serialize_datetime(user.last_login),
            "created_at": self._serialize_datetime(user.created_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            name=data.get("name", ""),
            role=Role.parse(data.get("role", Role.VISITOR)),
            password_hash=data.get("password_hash", ""),
            biography=data.get("biography"),
            two_factor_secret=data.get("two_factor_secret"),
            two_factor_enabled=bool(data.get("two_factor_enabled", False)),
            password_reset_token=data.get("password_reset_token"),
            password_reset_expires=self._deserialize_datetime(data.get("password_reset_expires")),
            last_login=self._deserialize_datetime(data.get("last_login")),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
        )

    def _serialize_refresh_token(self, record: RefreshToken) -> dict:
        return {
            "token": record.token,
            "user_id": record.user_id,
            "expires_at": self._serialize_datetime(record.expires_at),
            "created_at": self._serialize_datetime(record.created_at),
        }

    def _deserialize_refresh_token(self, data: dict) -> RefreshToken:
        return RefreshToken(
            token=data["token"],
            user_id=str(data["user_id"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
        )
