"""Read-only access to a tenant's key/value settings."""

from typing import Any, Optional


async def read_setting(executor, descriptor: Any, tenant_id: Optional[str], key: str, default: Any = None) -> Any:
    """Value of ``key`` in the tenant's settings, or ``default`` when absent."""
    result = await executor.execute(
        descriptor,
        tenant_id,
        {"action": "find", "entity": "settings", "filter": {"setting_key": key}, "limit": 1},
    )
    if not result.rows:
        return default
    return result.rows[0].get("value", default)
