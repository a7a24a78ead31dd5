"""Index reconciliation router (admin)."""

from typing import Optional

from fastapi import APIRouter, Depends

from inventra_engine.common.security import descriptor_header, descriptor_source, require_api_key
from inventra_engine.isolation.schemas import ReconcileReport, ReconcileRequest

router = APIRouter(prefix="/db")


def _get_enforcer():
    from inventra_engine.deps import get_enforcer
    return get_enforcer()


@router.post("/fix-indexes", response_model=ReconcileReport)
async def fix_indexes(
    body: ReconcileRequest,
    x_user_db_config: Optional[str] = Depends(descriptor_header),
    _=Depends(require_api_key),
):
    raw = descriptor_source(x_user_db_config, body.config)
    return await _get_enforcer().reconcile(raw, entities=body.entities)
