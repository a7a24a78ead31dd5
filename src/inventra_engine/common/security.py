"""Request-scoped dependencies: admin key, tenant identity, connection descriptor."""

import hmac
import json
from collections.abc import Mapping
from typing import Any, Optional

from fastapi import Header, HTTPException

from inventra_engine.common.exceptions import ConfigurationError, IsolationViolation

TENANT_HEADER = "X-User-Id"
DESCRIPTOR_HEADER = "X-User-Db-Config"
MAX_TENANT_ID_LENGTH = 255


async def require_api_key(
    x_inventra_api_key: str = Header(..., alias="X-Inventra-Api-Key"),
) -> str:
    """FastAPI dependency that validates the admin API key from header."""
    from inventra_engine.common.config import get_settings

    settings = get_settings()
    if not hmac.compare_digest(x_inventra_api_key, settings.api_key):
        raise HTTPException(status_code=403, detail="Invalid API key")
    return x_inventra_api_key


def normalize_tenant_id(tenant_id: Optional[str]) -> str:
    """Return a usable tenant id or raise ``IsolationViolation``."""
    if tenant_id is None or not isinstance(tenant_id, str):
        raise IsolationViolation("No tenant id resolved for this operation")
    tenant_id = tenant_id.strip()
    if not tenant_id:
        raise IsolationViolation("No tenant id resolved for this operation")
    if len(tenant_id) > MAX_TENANT_ID_LENGTH:
        raise IsolationViolation("Tenant id is too long")
    return tenant_id


async def tenant_header(
    x_user_id: Optional[str] = Header(None, alias=TENANT_HEADER),
) -> Optional[str]:
    """Raw tenant header; resolution happens where the descriptor is known."""
    return x_user_id


async def descriptor_header(
    x_user_db_config: Optional[str] = Header(None, alias=DESCRIPTOR_HEADER),
) -> Optional[str]:
    return x_user_db_config


def descriptor_source(header_value: Optional[str], body_value: Any = None) -> Any:
    """The raw descriptor for a request: the header wins over the body."""
    if header_value:
        return header_value
    if body_value:
        return body_value
    raise ConfigurationError("No database configuration provided")


def resolve_tenant(header_value: Optional[str], raw_descriptor: Any = None) -> str:
    """Tenant from ``X-User-Id``, else from a ``userId`` carried in the descriptor."""
    if header_value:
        return normalize_tenant_id(header_value)
    config = raw_descriptor
    if isinstance(config, str):
        try:
            config = json.loads(config)
        except ValueError:
            config = None
    if isinstance(config, Mapping):
        return normalize_tenant_id(config.get("userId"))
    return normalize_tenant_id(None)
