"""Ed25519-signed session tokens.

Tokens are compact JWS strings (``alg=EdDSA``) whose payload carries
``jti``, ``sub``, ``type``, ``iat`` and ``exp``. ``exp`` is informational for
clients only; liveness is decided by the token store, so ``verify`` checks
signature and claim shape but not wall-clock expiry.
"""

from __future__ import annotations

import base64
import binascii
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Tuple

import jwt
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from idgate.config import Settings
from idgate.logging import get_logger
from idgate.service.errors import InvalidTokenError
from idgate.storage.models import (
    AuthTokenPair,
    TokenClaims,
    TokenDetails,
    TokenKind,
    utcnow,
)

ALGORITHM = "EdDSA"
_REQUIRED_CLAIMS = ["jti", "sub", "type"]

logger = get_logger(__name__)


def load_private_key(key_hex: str) -> Ed25519PrivateKey:
    """Load a hex Ed25519 key given as a 32-byte seed or 64-byte seed+public."""
    raw = bytes.fromhex(key_hex.strip())
    if len(raw) == 32:
        return Ed25519PrivateKey.from_private_bytes(raw)
    if len(raw) == 64:
        key = Ed25519PrivateKey.from_private_bytes(raw[:32])
        derived = key.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)
        if derived != raw[32:]:
            raise ValueError("public half of signing key does not match its seed")
        return key
    raise ValueError("signing key must be 32 or 64 bytes")


def _b64url_decode(segment: str) -> bytes:
    return base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4))


def _is_canonical_segment(segment: str) -> bool:
    # Trailing bits of the last base64 character are ignored by decoders, so
    # two spellings can carry the same signature bytes. Only the one we would
    # have produced is accepted.
    try:
        raw = _b64url_decode(segment)
    except (binascii.Error, ValueError):
        return False
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii") == segment


class TokenSigner:
    """Issues and verifies access/refresh tokens with one process-lifetime key."""

    def __init__(
        self,
        private_key: Ed25519PrivateKey,
        access_ttl: timedelta,
        refresh_ttl: timedelta,
        *,
        key_id: str = "key-1",
    ) -> None:
        self._private_key = private_key
        self._public_key = private_key.public_key()
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.key_id = key_id

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenSigner":
        return cls(
            load_private_key(settings.resolve_signing_key()),
            timedelta(minutes=settings.access_token_ttl_minutes),
            timedelta(days=settings.refresh_token_ttl_days),
            key_id=settings.signing_key_id,
        )

    @property
    def public_key(self) -> Ed25519PublicKey:
        return self._public_key

    def public_key_bytes(self) -> bytes:
        return self._public_key.public_bytes(Encoding.Raw, PublicFormat.Raw)

    def public_key_pem(self) -> str:
        return self._public_key.public_bytes(
            Encoding.PEM, PublicFormat.SubjectPublicKeyInfo
        ).decode("ascii")

    def issue(self, user_id: str) -> Tuple[AuthTokenPair, TokenDetails, TokenDetails]:
        """Mint an access/refresh pair with independent identifiers."""
        now = utcnow()
        access = TokenDetails(
            token_id=str(uuid.uuid4()),
            user_id=user_id,
            kind=TokenKind.ACCESS,
            expiration=now + self.access_ttl,
        )
        refresh = TokenDetails(
            token_id=str(uuid.uuid4()),
            user_id=user_id,
            kind=TokenKind.REFRESH,
            expiration=now + self.refresh_ttl,
        )
        pair = AuthTokenPair(
            access_token=self.sign(
                TokenClaims(access.token_id, user_id, access.kind),
                access.expiration,
                issued_at=now,
            ),
            refresh_token=self.sign(
                TokenClaims(refresh.token_id, user_id, refresh.kind),
                refresh.expiration,
                issued_at=now,
            ),
            expires_at=access.expiration,
        )
        return pair, access, refresh

    def sign(
        self,
        claims: TokenClaims,
        expiration: datetime,
        *,
        issued_at: Optional[datetime] = None,
    ) -> str:
        issued_at = issued_at or utcnow()
        payload: Dict[str, Any] = {
            "jti": claims.token_id,
            "sub": claims.user_id,
            "type": claims.kind.value,
            "iat": int(issued_at.timestamp()),
            "exp": int(expiration.timestamp()),
        }
        return jwt.encode(
            payload,
            self._private_key,
            algorithm=ALGORITHM,
            headers={"kid": self.key_id},
        )

    def verify(self, token: str) -> TokenClaims:
        """Check signature and claim shape; raises ``InvalidTokenError``."""
        if not isinstance(token, str) or token.count(".") != 2:
            raise InvalidTokenError()
        if not _is_canonical_segment(token.rsplit(".", 1)[1]):
            logger.debug("token_signature_not_canonical")
            raise InvalidTokenError()
        try:
            payload = jwt.decode(
                token,
                self._public_key,
                algorithms=[ALGORITHM],
                options={
                    "verify_exp": False,
                    "verify_iat": False,
                    "verify_nbf": False,
                    "require": _REQUIRED_CLAIMS,
                },
            )
        except jwt.PyJWTError as exc:
            logger.debug("token_verify_failed", error_type=type(exc).__name__)
            raise InvalidTokenError() from exc

        token_id = payload.get("jti")
        user_id = payload.get("sub")
        if not isinstance(token_id, str) or not token_id:
            raise InvalidTokenError()
        if not isinstance(user_id, str) or not user_id:
            raise InvalidTokenError()
        try:
            kind = TokenKind(payload.get("type"))
        except ValueError as exc:
            raise InvalidTokenError() from exc
        return TokenClaims(token_id=token_id, user_id=user_id, kind=kind)
