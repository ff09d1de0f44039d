from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    BLOCKED = "blocked"


class UserRole(str, Enum):
    ADMIN = "admin"
    USER = "user"
    MEMBER = "member"


class TokenKind(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


@dataclass
class User:
    id: str
    email: str
    username: str
    password_hash: str = field(default="", repr=False)
    first_name: str = ""
    last_name: str = ""
    role: str = UserRole.USER.value
    status: str = UserStatus.ACTIVE.value
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        email: str,
        username: str,
        password_hash: str,
        first_name: str = "",
        last_name: str = "",
    ) -> "User":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            username=username,
            password_hash=password_hash,
            first_name=first_name,
            last_name=last_name,
            created_at=now,
            updated_at=now,
        )

    @property
    def is_active(self) -> bool:
        return self.status == UserStatus.ACTIVE.value

    def to_document(self) -> Dict[str, Any]:
        """Full record for the document store, including the password hash."""
        return {
            "id": self.id,
            "email": self.email,
            "username": self.username,
            "password_hash": self.password_hash,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "role": self.role,
            "status": self.status,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    def to_public(self) -> Dict[str, Any]:
        """JSON-safe view without the password hash (cache entries, API output)."""
        return {
            "id": self.id,
            "email": self.email,
            "username": self.username,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "role": self.role,
            "status": self.status,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "User":
        created_at = doc.get("created_at") or utcnow()
        updated_at = doc.get("updated_at") or created_at
        if isinstance(created_at, str):
            created_at = datetime.fromisoformat(created_at)
        if isinstance(updated_at, str):
            updated_at = datetime.fromisoformat(updated_at)
        return cls(
            id=str(doc["id"]),
            email=doc["email"],
            username=doc["username"],
            password_hash=doc.get("password_hash") or "",
            first_name=doc.get("first_name") or "",
            last_name=doc.get("last_name") or "",
            role=doc.get("role") or UserRole.USER.value,
            status=doc.get("status") or UserStatus.ACTIVE.value,
            created_at=created_at,
            updated_at=updated_at,
        )


@dataclass(frozen=True)
class TokenDetails:
    token_id: str
    user_id: str
    kind: TokenKind
    expiration: datetime

    @property
    def key(self) -> str:
        return token_key(self.kind, self.token_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "token_id": self.token_id,
            "user_id": self.user_id,
            "token_type": self.kind.value,
            "expiration": self.expiration.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TokenDetails":
        expiration = datetime.fromisoformat(data["expiration"])
        if expiration.tzinfo is None:
            expiration = expiration.replace(tzinfo=timezone.utc)
        return cls(
            token_id=str(data["token_id"]),
            user_id=str(data["user_id"]),
            kind=TokenKind(data["token_type"]),
            expiration=expiration,
        )


def token_key(kind: TokenKind | str, token_id: str) -> str:
    kind_value = kind.value if isinstance(kind, TokenKind) else TokenKind(kind).value
    return f"{kind_value}:{token_id}"


@dataclass(frozen=True)
class TokenClaims:
    token_id: str
    user_id: str
    kind: TokenKind


@dataclass(frozen=True)
class AuthTokenPair:
    access_token: str
    refresh_token: str
    expires_at: datetime
    token_type: str = "bearer"


@dataclass
class LoginResult:
    user: User
    tokens: AuthTokenPair
