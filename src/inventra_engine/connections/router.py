"""Connection test router."""

from typing import Any

from fastapi import APIRouter, Body
from pydantic import BaseModel

from inventra_engine.descriptors.validator import validate_descriptor

router = APIRouter(prefix="/db")


class ConnectionTestResponse(BaseModel):
    success: bool = True
    message: str
    database: dict[str, Any]


def _get_manager():
    from inventra_engine.deps import get_connection_manager
    return get_connection_manager()


@router.post("/test-connection", response_model=ConnectionTestResponse)
async def test_connection(config: dict[str, Any] = Body(...)):
    descriptor = validate_descriptor(config)
    await _get_manager().test_connection(descriptor)
    return ConnectionTestResponse(
        message=f"Successfully connected to {descriptor.engine.upper()} database",
        database=descriptor.public_fields(),
    )
