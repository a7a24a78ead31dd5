"""Raw-statement audit API router."""

from fastapi import APIRouter, Depends, Query

from inventra_engine.audit.schemas import AuditChainVerification, RawAuditEventResponse
from inventra_engine.common.security import require_api_key

router = APIRouter()


def _get_service():
    from inventra_engine.deps import get_audit_service
    return get_audit_service()


def _get_db():
    from inventra_engine.deps import get_db
    return get_db()


@router.get("/audit/{tenant_id}", response_model=list[RawAuditEventResponse])
async def get_audit_events(
    tenant_id: str,
    event_type: str | None = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    _=Depends(require_api_key),
):
    svc = _get_service()
    async with _get_db().get_session() as session:
        events = await svc.get_events(
            session, tenant_id, event_type=event_type, limit=limit, offset=offset,
        )
        return [RawAuditEventResponse.model_validate(e) for e in events]


@router.get("/audit/{tenant_id}/verify", response_model=AuditChainVerification)
async def verify_audit_chain(tenant_id: str, _=Depends(require_api_key)):
    svc = _get_service()
    async with _get_db().get_session() as session:
        result = await svc.verify_chain(session, tenant_id)
        return AuditChainVerification(**result)
