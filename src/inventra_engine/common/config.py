"""Inventra-Engine configuration via pydantic-settings."""

import json
import warnings
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict

_INSECURE_DEFAULTS = {
    "secret_key": "insecure-dev-key-change-me",
    "hmac_key": "insecure-hmac-key-change-me",
    "api_key": "insecure-admin-key-change-me",
}


class InventraSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="INVENTRA_")

    environment: str = "development"
    secret_key: str = "insecure-dev-key-change-me"
    hmac_key: str = "insecure-hmac-key-change-me"

    # HMAC keyring for the raw-statement audit chain: JSON dict mapping
    # version (int) to key string, e.g. '{"0": "old-key", "1": "new-key"}'.
    # When empty, hmac_key is used as version 0.
    hmac_keys: str = ""

    # Control database (audit chain only; tenant data never lives here)
    db_url: str = "sqlite+aiosqlite:///./data/inventra.db"

    # API
    api_title: str = "Inventra-Engine"
    api_version: str = "0.1.0"
    api_key: str = "insecure-admin-key-change-me"
    host: str = "0.0.0.0"
    port: int = 8080
    api_prefix: str = ""
    cors_origins: list[str] = ["http://localhost:3000"]

    # Tenant backends
    pool_timeout: float = 10.0  # seconds to wait for a pool slot
    max_pools: int = 64
    mongo_timeout_ms: int = 5000

    # Managed MongoDB cluster (server-side credentials)
    managed_mongo_username: str = ""
    managed_mongo_password: str = ""
    managed_mongo_host: str = ""
    managed_mongo_database: str = ""

    # External collaborators
    extraction_url: str = "http://localhost:7860"
    structuring_url: str = "http://localhost:3000/api"
    collaborator_timeout: float = 30.0

    log_level: str = "INFO"

    @property
    def hmac_keyring(self) -> dict[int, str]:
        """Return HMAC keyring as {version_int: key_str}."""
        if self.hmac_keys:
            try:
                raw = json.loads(self.hmac_keys)
            except (json.JSONDecodeError, TypeError) as exc:
                raise ValueError(
                    f"INVENTRA_HMAC_KEYS must be valid JSON (e.g. '{{\"0\": \"key\"}}'), got: {self.hmac_keys!r}"
                ) from exc
            return {int(k): v for k, v in raw.items()}
        return {0: self.hmac_key}

    @property
    def current_hmac_key(self) -> str:
        ring = self.hmac_keyring
        return ring[max(ring.keys())]

    @property
    def has_managed_mongo_credentials(self) -> bool:
        return bool(self.managed_mongo_username and self.managed_mongo_password)

    def validate_for_production(self) -> None:
        """Raise if insecure defaults are used in non-development environments."""
        insecure_fields = [
            field
            for field, default in _INSECURE_DEFAULTS.items()
            if getattr(self, field) == default
        ]

        if self.environment != "development" and insecure_fields:
            env_vars = ", ".join(f"INVENTRA_{f.upper()}" for f in insecure_fields)
            raise RuntimeError(
                f"Insecure default values detected in '{self.environment}' environment. "
                f"Set these environment variables to secure values: {env_vars}."
            )

        if insecure_fields:
            warnings.warn(
                "Using insecure default keys; set INVENTRA_SECRET_KEY, INVENTRA_HMAC_KEY "
                "and INVENTRA_API_KEY for production",
                UserWarning,
                stacklevel=2,
            )


@lru_cache
def get_settings() -> InventraSettings:
    settings = InventraSettings()
    settings.validate_for_production()
    return settings
