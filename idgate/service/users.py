from __future__ import annotations

from typing import Any, List, Optional, Tuple

from idgate.logging import get_logger
from idgate.service.errors import (
    EmailExistsError,
    InvalidCredentialsError,
    UserNotFoundError,
    UsernameExistsError,
    ValidationError,
)
from idgate.service.hashing import CredentialHasher
from idgate.storage.errors import ConstraintViolation, StorageError
from idgate.storage.models import User, UserStatus
from idgate.storage.token_store import TokenStore
from idgate.storage.users import UserRepository


class UserService:
    """Account lifecycle on top of the user repository.

    Anything that should end a user's sessions (delete, password change,
    deactivation) also revokes all of their tokens.
    """

    def __init__(
        self,
        users: UserRepository,
        tokens: TokenStore,
        hasher: CredentialHasher,
        *,
        logger: Any = None,
    ) -> None:
        self.users = users
        self.tokens = tokens
        self.hasher = hasher
        self.logger = logger or get_logger(__name__)

    async def register(
        self,
        email: str,
        username: str,
        password: str,
        first_name: str = "",
        last_name: str = "",
    ) -> User:
        if await self.users.get_by_email(email) is not None:
            raise EmailExistsError()
        if await self.users.get_by_username(username) is not None:
            raise UsernameExistsError()

        user = User.new(
            email=email,
            username=username,
            password_hash=self.hasher.hash(password),
            first_name=first_name,
            last_name=last_name,
        )
        try:
            await self.users.create(user)
        except ConstraintViolation as exc:
            # lost a race with a concurrent registration
            if exc.detail.get("field") == "username":
                raise UsernameExistsError() from exc
            raise EmailExistsError() from exc
        self.logger.info("user_registered", user_id=user.id)
        return user

    async def get(self, user_id: str) -> User:
        user = await self.users.get_by_id(user_id)
        if user is None:
            raise UserNotFoundError()
        return user

    async def update(
        self,
        user_id: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> User:
        if not await self.users.update(
            user_id, first_name=first_name, last_name=last_name
        ):
            raise UserNotFoundError()
        return await self.get(user_id)

    async def delete(self, user_id: str) -> None:
        if not await self.users.delete(user_id):
            raise UserNotFoundError()
        await self._revoke_sessions(user_id, reason="deleted")
        self.logger.info("user_deleted", user_id=user_id)

    async def list(self, page: int, limit: int) -> Tuple[List[User], int]:
        if page < 1 or limit < 1:
            raise ValidationError("page and limit must be positive")
        return await self.users.list(page, limit)

    async def change_password(
        self, user_id: str, old_password: str, new_password: str
    ) -> None:
        user = await self.users.get_by_id(user_id, use_cache=False)
        if user is None:
            raise UserNotFoundError()
        if not self.hasher.verify(old_password, user.password_hash):
            raise InvalidCredentialsError()
        if not await self.users.change_password(user_id, self.hasher.hash(new_password)):
            raise UserNotFoundError()
        await self._revoke_sessions(user_id, reason="password_changed", strict=True)
        self.logger.info("user_password_changed", user_id=user_id)

    async def update_status(self, user_id: str, status: str) -> User:
        try:
            new_status = UserStatus(status)
        except ValueError as exc:
            raise ValidationError(
                f"invalid status: {status}",
                detail={"allowed": [s.value for s in UserStatus]},
            ) from exc
        if not await self.users.update_status(user_id, new_status):
            raise UserNotFoundError()
        if new_status is not UserStatus.ACTIVE:
            await self._revoke_sessions(
                user_id, reason=f"status_{new_status.value}", strict=True
            )
        self.logger.info("user_status_changed", user_id=user_id, status=new_status.value)
        return await self.get(user_id)

    async def _revoke_sessions(
        self, user_id: str, *, reason: str, strict: bool = False
    ) -> None:
        """Revoke every token of the user; ``strict`` re-raises storage failures."""
        try:
            count = await self.tokens.revoke_all(user_id)
        except StorageError as exc:
            self.logger.error(
                "user_token_revocation_failed",
                user_id=user_id,
                reason=reason,
                error=str(exc),
            )
            if strict:
                raise
            return
        self.logger.info("user_tokens_revoked", user_id=user_id, reason=reason, count=count)
