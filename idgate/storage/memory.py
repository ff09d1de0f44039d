from __future__ import annotations

import copy
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from idgate.storage.common import check_lookup_field, check_update_fields
from idgate.storage.errors import ConstraintViolation

_UNIQUE_FIELDS = ("email", "username")


class MemoryStore:
    """In-memory user document store for tests and local development."""

    def __init__(self) -> None:
        self.users: Dict[str, Dict[str, Any]] = {}
        self._data_lock = threading.RLock()

    def find_one(self, field: str, value: str) -> Optional[Dict[str, Any]]:
        check_lookup_field(field)
        with self._data_lock:
            if field == "id":
                doc = self.users.get(value)
            else:
                doc = next((d for d in self.users.values() if d.get(field) == value), None)
            return copy.deepcopy(doc) if doc else None

    def insert_one(self, doc: Dict[str, Any]) -> None:
        with self._data_lock:
            if doc["id"] in self.users:
                raise ConstraintViolation("user already exists", {"field": "id"})
            for field in _UNIQUE_FIELDS:
                if any(existing.get(field) == doc.get(field) for existing in self.users.values()):
                    raise ConstraintViolation(f"{field} already exists", {"field": field})
            self.users[doc["id"]] = copy.deepcopy(doc)

    def update_one(self, user_id: str, fields: Dict[str, Any]) -> bool:
        check_update_fields(fields)
        with self._data_lock:
            doc = self.users.get(user_id)
            if doc is None:
                return False
            doc.update(copy.deepcopy(fields))
            return True

    def delete_one(self, user_id: str) -> bool:
        with self._data_lock:
            return self.users.pop(user_id, None) is not None

    def count_documents(self) -> int:
        with self._data_lock:
            return len(self.users)

    def find_many(self, offset: int, limit: int) -> List[Dict[str, Any]]:
        with self._data_lock:
            ordered = sorted(
                self.users.values(), key=lambda d: d["created_at"], reverse=True
            )
            return [copy.deepcopy(d) for d in ordered[offset : offset + limit]]

    def verify_connection(self) -> None:
        return None

    def close(self) -> None:
        return None


class MemoryCache:
    """In-process stand-in for ``RedisCache`` with millisecond TTLs.

    ``clock`` returns seconds; tests inject a fake to move time forward.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._values: Dict[str, Tuple[str, float]] = {}
        self._sets: Dict[str, Tuple[Set[str], Optional[float]]] = {}
        self._lock = threading.Lock()

    def _now_ms(self) -> float:
        return self._clock() * 1000.0

    def _live_value(self, key: str) -> Optional[str]:
        entry = self._values.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= self._now_ms():
            self._values.pop(key, None)
            return None
        return value

    def _live_set(self, key: str) -> Optional[Set[str]]:
        entry = self._sets.get(key)
        if entry is None:
            return None
        members, expires_at = entry
        if expires_at is not None and expires_at <= self._now_ms():
            self._sets.pop(key, None)
            return None
        return members

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._live_value(key)

    async def set(self, key: str, value: str, ttl_ms: int) -> None:
        if ttl_ms <= 0:
            raise ValueError("ttl_ms must be positive")
        with self._lock:
            self._values[key] = (value, self._now_ms() + ttl_ms)

    async def delete(self, key: str) -> int:
        with self._lock:
            existed = self._live_value(key) is not None or self._live_set(key) is not None
            self._values.pop(key, None)
            self._sets.pop(key, None)
            return int(existed)

    async def add_to_index(self, index_key: str, member: str, ttl_ms: int) -> None:
        with self._lock:
            members = self._live_set(index_key)
            expires_at = self._now_ms() + ttl_ms
            if members is None:
                self._sets[index_key] = ({member}, expires_at)
                return
            members.add(member)
            current_expiry = self._sets[index_key][1]
            if current_expiry is not None and current_expiry < expires_at:
                self._sets[index_key] = (members, expires_at)

    async def remove_from_index(self, index_key: str, member: str) -> None:
        with self._lock:
            members = self._live_set(index_key)
            if members is None:
                return
            members.discard(member)
            if not members:
                self._sets.pop(index_key, None)

    async def index_members(self, index_key: str) -> Set[str]:
        with self._lock:
            return set(self._live_set(index_key) or ())

    async def delete_indexed(self, key: str, index_key: str, member: str) -> int:
        with self._lock:
            existed = self._live_value(key) is not None
            self._values.pop(key, None)
            members = self._live_set(index_key)
            if members is not None:
                members.discard(member)
                if not members:
                    self._sets.pop(index_key, None)
            return int(existed)

    def verify_connection(self) -> None:
        return None

    def ttl_ms(self, key: str) -> Optional[float]:
        """Remaining TTL for a value key, or None when absent."""
        with self._lock:
            if self._live_value(key) is None:
                return None
            return self._values[key][1] - self._now_ms()

    async def close(self) -> None:
        with self._lock:
            self._values.clear()
            self._sets.clear()
