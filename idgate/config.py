from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import Any

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    NoEncryption,
    PrivateFormat,
)
from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from idgate.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the identity service."""

    app_name: str = env_field("idgate", "APP_NAME")
    environment: str = env_field("development", "APP_ENV")
    database_url: str = env_field(
        "postgresql://localhost:5432/idgate", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    use_memory_cache: bool = env_field(False, "USE_MEMORY_CACHE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Use in-memory backends and an ephemeral signing key",
    )
    key_dir: str = env_field("/srv/idgate", "KEY_DIR")
    signing_private_key: str | None = env_field(
        None,
        "SIGNING_PRIVATE_KEY",
        description="Hex Ed25519 private key (32-byte seed or 64-byte seed+public)",
    )
    signing_key_id: str = env_field("key-1", "SIGNING_KEY_ID")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES", gt=0)
    refresh_token_ttl_days: int = env_field(7, "REFRESH_TOKEN_TTL_DAYS", gt=0)
    user_cache_ttl_seconds: int = env_field(30 * 60, "USER_CACHE_TTL_SECONDS", gt=0)
    kv_operation_timeout_seconds: float = env_field(
        5.0, "KV_OPERATION_TIMEOUT_SECONDS", gt=0
    )
    token_revoke_max_attempts: int = env_field(3, "TOKEN_REVOKE_MAX_ATTEMPTS", ge=1)
    default_page_size: int = env_field(10, "DEFAULT_PAGE_SIZE", gt=0)
    max_page_size: int = env_field(100, "MAX_PAGE_SIZE", gt=0)
    log_level: str = env_field("INFO", "LOG_LEVEL")
    log_json: bool = env_field(True, "LOG_JSON")
    log_dev_mode: bool = env_field(False, "LOG_DEV_MODE")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("signing_private_key")
    @classmethod
    def _validate_signing_key(cls, value: str | None) -> str | None:
        if not value:
            return None
        value = value.strip()
        try:
            raw = bytes.fromhex(value)
        except ValueError as exc:
            raise ValueError("SIGNING_PRIVATE_KEY must be hex encoded") from exc
        if len(raw) not in (32, 64):
            raise ValueError("SIGNING_PRIVATE_KEY must be 32 or 64 bytes")
        return value

    def resolve_signing_key(self) -> str:
        """Return the hex signing key, generating and persisting one if unset.

        In test mode an ephemeral key is returned and nothing touches disk.
        """
        if self.signing_private_key:
            return self.signing_private_key
        if self.test_mode:
            return _generate_key_hex()

        key_root = Path(self.key_dir)
        key_path = key_root / "signing_key"
        try:
            key_root.mkdir(parents=True, exist_ok=True)
            os.chmod(key_root, 0o700)
        except PermissionError:
            # Directory may already exist with different permissions (e.g., in container)
            pass

        if key_path.exists() and not key_path.is_symlink():
            persisted = key_path.read_text().strip()
            if persisted:
                self.signing_private_key = self._validate_signing_key(persisted)
                return persisted

        generated = _generate_key_hex()
        fd, tmp_path = tempfile.mkstemp(dir=str(key_root), prefix=".signing_key_", suffix=".tmp")
        try:
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(key_path))
        except OSError as exc:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error("signing_key_persist_failed", error=str(exc), path=str(key_path))
            raise RuntimeError(
                "Unable to persist signing key; set SIGNING_PRIVATE_KEY or make KEY_DIR writable"
            ) from exc
        logger.warning("signing_key_generated", path=str(key_path))
        self.signing_private_key = generated
        return generated


def _generate_key_hex() -> str:
    key = Ed25519PrivateKey.generate()
    return key.private_bytes(
        encoding=Encoding.Raw,
        format=PrivateFormat.Raw,
        encryption_algorithm=NoEncryption(),
    ).hex()


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
