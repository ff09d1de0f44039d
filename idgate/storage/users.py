from __future__ import annotations

import json
from typing import Any, Dict, List, Optional, Tuple

from idgate.logging import get_logger
from idgate.storage.common import DocumentStore, page_offset
from idgate.storage.errors import StorageError
from idgate.storage.models import User, UserStatus, utcnow
from idgate.storage.redis_cache import KeyValueCache


def user_cache_key(user_id: str) -> str:
    return f"user:{user_id}"


class UserRepository:
    """Cache-aside access to user records.

    The store is authoritative. ``get_by_id`` fills the cache from store reads
    only, and every mutation evicts the entry after the store write succeeds.
    Cached entries never carry the password hash; callers that need it read
    with ``use_cache=False``.
    """

    def __init__(
        self,
        store: DocumentStore,
        cache: KeyValueCache,
        *,
        ttl_seconds: int = 30 * 60,
        logger: Any = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.ttl_ms = int(ttl_seconds * 1000)
        self.logger = logger or get_logger(__name__)

    async def _read_cached(self, user_id: str) -> Optional[User]:
        try:
            raw = await self.cache.get(user_cache_key(user_id))
        except StorageError as exc:
            self.logger.warning("user_cache_read_failed", user_id=user_id, error=str(exc))
            return None
        if raw is None:
            return None
        try:
            return User.from_document(json.loads(raw))
        except (ValueError, KeyError, TypeError):
            self.logger.warning("user_cache_entry_corrupt", user_id=user_id)
            return None

    async def _populate(self, user: User) -> None:
        try:
            await self.cache.set(
                user_cache_key(user.id), json.dumps(user.to_public()), self.ttl_ms
            )
        except StorageError as exc:
            self.logger.warning(
                "user_cache_populate_failed", user_id=user.id, error=str(exc)
            )

    async def _invalidate(self, user_id: str) -> None:
        try:
            await self.cache.delete(user_cache_key(user_id))
        except StorageError as exc:
            self.logger.warning(
                "user_cache_invalidate_failed", user_id=user_id, error=str(exc)
            )

    async def create(self, user: User) -> User:
        self.store.insert_one(user.to_document())
        return user

    async def get_by_id(self, user_id: str, *, use_cache: bool = True) -> Optional[User]:
        if use_cache:
            cached = await self._read_cached(user_id)
            if cached is not None:
                return cached
        doc = self.store.find_one("id", user_id)
        if doc is None:
            return None
        user = User.from_document(doc)
        await self._populate(user)
        return user

    async def get_by_email(self, email: str) -> Optional[User]:
        doc = self.store.find_one("email", email)
        return User.from_document(doc) if doc else None

    async def get_by_username(self, username: str) -> Optional[User]:
        doc = self.store.find_one("username", username)
        return User.from_document(doc) if doc else None

    async def _write(self, user_id: str, fields: Dict[str, Any]) -> bool:
        fields = {**fields, "updated_at": utcnow()}
        updated = self.store.update_one(user_id, fields)
        if updated:
            await self._invalidate(user_id)
        return updated

    async def update(
        self,
        user_id: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> bool:
        """Write only the given profile fields; False if the user no longer exists."""
        fields: Dict[str, Any] = {}
        if first_name is not None:
            fields["first_name"] = first_name
        if last_name is not None:
            fields["last_name"] = last_name
        return await self._write(user_id, fields)

    async def change_password(self, user_id: str, password_hash: str) -> bool:
        return await self._write(user_id, {"password_hash": password_hash})

    async def update_status(self, user_id: str, status: UserStatus | str) -> bool:
        value = UserStatus(status).value
        return await self._write(user_id, {"status": value})

    async def delete(self, user_id: str) -> bool:
        deleted = self.store.delete_one(user_id)
        if deleted:
            await self._invalidate(user_id)
        return deleted

    async def list(self, page: int, limit: int) -> Tuple[List[User], int]:
        total = self.store.count_documents()
        docs = self.store.find_many(page_offset(page, limit), limit)
        return [User.from_document(doc) for doc in docs], total
