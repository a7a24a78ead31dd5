"""Shared Pydantic schemas for Inventra-Engine."""

from typing import Optional

from pydantic import BaseModel


class HealthResponse(BaseModel):
    status: str = "ok"
    version: str = "0.1.0"
    service: str = "inventra-engine"


class ErrorResponse(BaseModel):
    """Normalized failure envelope returned for every InventraError."""

    success: bool = False
    error: str
    code: str
    engine: Optional[str] = None
