from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Optional, Tuple

from archivum.storage.models import Role


class RoleCache:
    """Per-user role lookups with a fixed time-to-live.

    The runtime owns a single instance and hands it to ``AuthService``; tests
    build their own with a fake clock. Entries are evicted lazily on read and
    in bulk by :meth:`sweep`.
    """

    def __init__(self, ttl_seconds: int = 300, *, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, Tuple[Role, float]] = {}
        self._lock = threading.Lock()

    def get(self, user_id: str) -> Optional[Role]:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(user_id)
            if entry is None:
                return None
            role, expires_at = entry
            if expires_at <= now:
                self._entries.pop(user_id, None)
                return None
            return role

    def set(self, user_id: str, role: Role) -> None:
        with self._lock:
            self._entries[user_id] = (Role.parse(role), self._clock() + self.ttl_seconds)

    def invalidate(self, user_id: str) -> None:
        with self._lock:
            self._entries.pop(user_id, None)

    def sweep(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [uid for uid, (_, exp) in self._entries.items() if exp <= now]
            for uid in expired:
                del self._entries[uid]
            return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
