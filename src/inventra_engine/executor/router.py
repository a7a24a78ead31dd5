"""Structured and raw execution router."""

from typing import Optional

from fastapi import APIRouter, Depends

from inventra_engine.common.security import (
    descriptor_header,
    descriptor_source,
    require_api_key,
    resolve_tenant,
    tenant_header,
)
from inventra_engine.executor.schemas import ExecuteRequest, ExecutionResult, RawRequest

router = APIRouter(prefix="/db")


def _get_executor():
    from inventra_engine.deps import get_executor
    return get_executor()


@router.post("/execute", response_model=ExecutionResult)
async def execute(
    body: ExecuteRequest,
    x_user_id: Optional[str] = Depends(tenant_header),
    x_user_db_config: Optional[str] = Depends(descriptor_header),
):
    raw = descriptor_source(x_user_db_config, body.config)
    tenant_id = resolve_tenant(x_user_id, raw)
    return await _get_executor().execute(raw, tenant_id, body.operation)


@router.post("/raw", response_model=ExecutionResult)
async def execute_raw(
    body: RawRequest,
    x_user_id: Optional[str] = Depends(tenant_header),
    x_user_db_config: Optional[str] = Depends(descriptor_header),
    _=Depends(require_api_key),
):
    raw = descriptor_source(x_user_db_config, body.config)
    tenant_id = resolve_tenant(x_user_id, raw)
    return await _get_executor().execute_raw(
        raw, tenant_id, body.statement, params=body.params, actor=body.actor,
    )
