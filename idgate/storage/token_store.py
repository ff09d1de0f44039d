from __future__ import annotations

import asyncio
import json
from datetime import datetime
from typing import Any, Callable, Optional, Tuple

from idgate.logging import get_logger
from idgate.storage.errors import ExpiredRecordError, StorageError
from idgate.storage.models import TokenDetails, TokenKind, token_key, utcnow
from idgate.storage.redis_cache import KeyValueCache


def user_index_key(user_id: str) -> str:
    return f"user_tokens:{user_id}"


class TokenStore:
    """Token liveness records plus a per-user index for bulk revocation.

    A token is live exactly while its ``{kind}:{token_id}`` entry exists. The
    entry's TTL matches the token's expiration so stale records age out on
    their own. ``user_tokens:{user_id}`` lists every entry a user owns.
    """

    def __init__(
        self,
        cache: KeyValueCache,
        *,
        logger: Any = None,
        clock: Callable[[], datetime] = utcnow,
        max_attempts: int = 3,
        retry_delay: float = 0.05,
    ) -> None:
        self.cache = cache
        self.logger = logger or get_logger(__name__)
        self._clock = clock
        self.max_attempts = max(1, max_attempts)
        self.retry_delay = retry_delay

    def _ttl_ms(self, expiration: datetime) -> int:
        return int((expiration - self._clock()).total_seconds() * 1000)

    async def put(self, details: TokenDetails) -> bool:
        """Persist a token record; returns False if only the index write failed."""
        ttl_ms = self._ttl_ms(details.expiration)
        if ttl_ms <= 0:
            raise ExpiredRecordError(details.key)
        await self.cache.set(details.key, json.dumps(details.to_dict()), ttl_ms)
        try:
            await self.cache.add_to_index(
                user_index_key(details.user_id), details.key, ttl_ms
            )
        except StorageError as exc:
            self.logger.warning(
                "token_index_write_failed",
                user_id=details.user_id,
                token_type=details.kind.value,
                error=str(exc),
            )
            return False
        return True

    def _decode(self, raw: str) -> TokenDetails:
        try:
            return TokenDetails.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as exc:
            raise StorageError(
                "corrupt token record", operation="token_decode", backend="token_store"
            ) from exc

    async def get(self, token_id: str, kind: TokenKind) -> Optional[TokenDetails]:
        raw = await self.cache.get(token_key(kind, token_id))
        if raw is None:
            return None
        details = self._decode(raw)
        if details.expiration <= self._clock():
            return None
        return details

    async def _delete(self, token_id: str, kind: TokenKind) -> Tuple[bool, bool]:
        """Returns (this call deleted the record, index cleaned up)."""
        key = token_key(kind, token_id)
        raw = await self.cache.get(key)
        deleted = await self.cache.delete(key) > 0
        if raw is None:
            return deleted, True
        try:
            owner = self._decode(raw).user_id
        except StorageError:
            self.logger.warning("token_record_corrupt", token_type=kind.value)
            return deleted, False
        try:
            await self.cache.remove_from_index(user_index_key(owner), key)
        except StorageError as exc:
            self.logger.warning(
                "token_index_cleanup_failed",
                user_id=owner,
                token_type=kind.value,
                error=str(exc),
            )
            return deleted, False
        return deleted, True

    async def revoke(self, token_id: str, kind: TokenKind) -> bool:
        """Delete one token record. Idempotent.

        Returns whether the owner's index was cleaned up as well; an index
        failure is logged and left for ``revoke_all`` to sweep.
        """
        _, index_ok = await self._delete(token_id, kind)
        return index_ok

    async def consume(self, token_id: str, kind: TokenKind) -> bool:
        """Delete one token record; True only for the caller that removed it.

        Concurrent callers racing on the same record see exactly one True.
        """
        deleted, _ = await self._delete(token_id, kind)
        return deleted

    async def revoke_all(self, user_id: str) -> int:
        """Revoke every token in the user's index; returns entries removed.

        The index is re-read until empty so tokens issued mid-sweep are caught.
        Failures are retried with exponential backoff, then raised.
        """
        index_key = user_index_key(user_id)
        removed = 0
        failures = 0
        while True:
            try:
                members = await self.cache.index_members(index_key)
                if not members:
                    break
                for member in sorted(members):
                    await self.cache.delete_indexed(member, index_key, member)
                    removed += 1
            except StorageError as exc:
                failures += 1
                if failures >= self.max_attempts:
                    self.logger.error(
                        "token_revoke_all_failed",
                        user_id=user_id,
                        attempts=failures,
                        removed=removed,
                    )
                    raise StorageError(
                        "revoke_all did not complete",
                        operation="revoke_all",
                        backend="token_store",
                    ) from exc
                self.logger.warning(
                    "token_revoke_all_retry",
                    user_id=user_id,
                    attempt=failures,
                    error=str(exc),
                )
                await asyncio.sleep(self.retry_delay * (2 ** (failures - 1)))
        self.logger.info("tokens_revoked", user_id=user_id, count=removed)
        return removed
