from __future__ import annotations

from typing import Any

from idgate.logging import get_logger
from idgate.service.errors import (
    ExpiredTokenError,
    InvalidCredentialsError,
    InvalidRefreshTokenError,
    InvalidTokenError,
)
from idgate.service.hashing import CredentialHasher
from idgate.service.tokens import TokenSigner
from idgate.storage.errors import ExpiredRecordError, StorageError
from idgate.storage.models import (
    AuthTokenPair,
    LoginResult,
    TokenClaims,
    TokenDetails,
    TokenKind,
)
from idgate.storage.token_store import TokenStore
from idgate.storage.users import UserRepository


class AuthService:
    """Login, token rotation, logout and access-token validation."""

    def __init__(
        self,
        users: UserRepository,
        tokens: TokenStore,
        signer: TokenSigner,
        hasher: CredentialHasher,
        *,
        logger: Any = None,
    ) -> None:
        self.users = users
        self.tokens = tokens
        self.signer = signer
        self.hasher = hasher
        self.logger = logger or get_logger(__name__)

    async def _persist_pair(
        self, access: TokenDetails, refresh: TokenDetails
    ) -> None:
        # access first, then refresh; a failure between the two is not rolled back
        for details in (access, refresh):
            try:
                indexed = await self.tokens.put(details)
            except ExpiredRecordError as exc:
                raise ExpiredTokenError() from exc
            if not indexed:
                self.logger.warning(
                    "token_index_degraded",
                    user_id=details.user_id,
                    token_type=details.kind.value,
                )

    async def _issue(self, user_id: str) -> AuthTokenPair:
        pair, access, refresh = self.signer.issue(user_id)
        await self._persist_pair(access, refresh)
        return pair

    async def login(self, email: str, password: str) -> LoginResult:
        user = await self.users.get_by_email(email)
        if user is None:
            self.logger.info("login_failed", reason="unknown_user")
            raise InvalidCredentialsError()
        if not user.is_active:
            self.logger.info("login_failed", reason="inactive", user_id=user.id)
            raise InvalidCredentialsError()
        if not self.hasher.verify(password, user.password_hash):
            self.logger.info("login_failed", reason="bad_password", user_id=user.id)
            raise InvalidCredentialsError()

        tokens = await self._issue(user.id)
        self.logger.info("login_succeeded", user_id=user.id)
        return LoginResult(user=user, tokens=tokens)

    async def refresh(self, refresh_token: str) -> AuthTokenPair:
        """Rotate a refresh token. Each refresh token is accepted exactly once."""
        try:
            claims = self.signer.verify(refresh_token)
        except InvalidTokenError as exc:
            raise InvalidRefreshTokenError() from exc
        if claims.kind is not TokenKind.REFRESH:
            raise InvalidRefreshTokenError()

        stored = await self.tokens.get(claims.token_id, TokenKind.REFRESH)
        if stored is None or stored.user_id != claims.user_id:
            self.logger.info("refresh_rejected", reason="not_live", user_id=claims.user_id)
            raise InvalidRefreshTokenError()

        user = await self.users.get_by_id(claims.user_id, use_cache=False)
        if user is None or not user.is_active:
            await self._revoke_quietly(claims.token_id, TokenKind.REFRESH)
            self.logger.info("refresh_rejected", reason="inactive", user_id=claims.user_id)
            raise InvalidRefreshTokenError()

        pair, access, refresh = self.signer.issue(claims.user_id)
        await self._persist_pair(access, refresh)
        try:
            consumed = await self.tokens.consume(claims.token_id, TokenKind.REFRESH)
        except StorageError as exc:
            self.logger.warning(
                "token_revoke_failed", token_type=TokenKind.REFRESH.value, error=str(exc)
            )
            consumed = True
        if not consumed:
            # a concurrent refresh already spent this token
            await self._revoke_quietly(access.token_id, TokenKind.ACCESS)
            await self._revoke_quietly(refresh.token_id, TokenKind.REFRESH)
            self.logger.info("refresh_rejected", reason="already_used", user_id=claims.user_id)
            raise InvalidRefreshTokenError()
        self.logger.info("tokens_refreshed", user_id=claims.user_id)
        return pair

    async def _revoke_quietly(self, token_id: str, kind: TokenKind) -> None:
        try:
            await self.tokens.revoke(token_id, kind)
        except StorageError as exc:
            self.logger.warning(
                "token_revoke_failed", token_type=kind.value, error=str(exc)
            )

    async def logout(self, token_id: str) -> None:
        """Revoke one access token. The paired refresh token stays live."""
        await self.tokens.revoke(token_id, TokenKind.ACCESS)

    async def logout_all(self, user_id: str) -> int:
        return await self.tokens.revoke_all(user_id)

    async def resolve_access(self, token: str) -> TokenClaims:
        claims = self.signer.verify(token)
        if claims.kind is not TokenKind.ACCESS:
            raise InvalidTokenError()
        stored = await self.tokens.get(claims.token_id, TokenKind.ACCESS)
        if stored is None or stored.user_id != claims.user_id:
            raise InvalidTokenError()
        return claims

    async def validate_access(self, token: str) -> str:
        """Return the user id of a live access token."""
        return (await self.resolve_access(token)).user_id
