"""Audit service: record, verify, and query the raw-statement chain."""

import hashlib
import hmac as hmac_mod
import json
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from inventra_engine.audit.models import RawStatementAuditModel
from inventra_engine.common.config import InventraSettings

RAW_ACCEPTED = "raw.accepted"
RAW_REJECTED = "raw.rejected"
RAW_FAILED = "raw.failed"


def statement_text(statement: Any) -> str:
    """Canonical text of a SQL string or a MongoDB command document."""
    if isinstance(statement, str):
        return statement
    return json.dumps(statement, sort_keys=True, separators=(",", ":"), default=str)


class AuditService:
    """Immutable, hash-chained log of raw statements per tenant."""

    def __init__(self, settings: InventraSettings):
        self.settings = settings

    # ── Write ──

    async def record_statement(
        self,
        session: AsyncSession,
        tenant_id: str,
        event_type: str,
        engine: str,
        statement: Any,
        actor: str = "assistant",
        detail: dict[str, Any] | None = None,
    ) -> RawStatementAuditModel:
        """Append a raw-statement event to the tenant's chain."""
        detail = detail or {}
        text = statement_text(statement)

        head = await self.get_chain_head(session, tenant_id)
        prev_hash = head.event_hash if head else None
        sequence = head.sequence + 1 if head else 1

        event_hash = self._compute_event_hash(
            event_type, actor, engine, text, detail, prev_hash,
        )
        event = RawStatementAuditModel(
            tenant_id=tenant_id,
            sequence=sequence,
            event_type=event_type,
            actor=actor,
            engine=engine,
            statement=text,
            detail=detail,
            prev_hash=prev_hash,
            event_hash=event_hash,
            signature=self._sign(event_hash),
        )
        session.add(event)
        await session.flush()
        return event

    # ── Read ──

    async def get_chain_head(
        self, session: AsyncSession, tenant_id: str,
    ) -> RawStatementAuditModel | None:
        result = await session.execute(
            select(RawStatementAuditModel)
            .where(RawStatementAuditModel.tenant_id == tenant_id)
            .order_by(RawStatementAuditModel.sequence.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get_events(
        self,
        session: AsyncSession,
        tenant_id: str,
        event_type: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[RawStatementAuditModel]:
        """Paginated event list, newest first."""
        query = select(RawStatementAuditModel).where(RawStatementAuditModel.tenant_id == tenant_id)
        if event_type:
            query = query.where(RawStatementAuditModel.event_type == event_type)
        query = query.order_by(RawStatementAuditModel.sequence.desc()).offset(offset).limit(limit)
        result = await session.execute(query)
        return list(result.scalars().all())

    # ── Verify ──

    async def verify_chain(self, session: AsyncSession, tenant_id: str) -> dict[str, Any]:
        """Walk the chain oldest to newest, checking links, hashes and signatures."""
        result = await session.execute(
            select(RawStatementAuditModel)
            .where(RawStatementAuditModel.tenant_id == tenant_id)
            .order_by(RawStatementAuditModel.sequence.asc())
        )
        events = list(result.scalars().all())

        prev_hash = None
        for checked, event in enumerate(events):
            expected_hash = self._compute_event_hash(
                event.event_type, event.actor, event.engine,
                event.statement, event.detail or {}, event.prev_hash,
            )
            if (
                event.prev_hash != prev_hash
                or event.event_hash != expected_hash
                or not self._verify_signature(event.event_hash, event.signature)
            ):
                return {"valid": False, "events_checked": checked, "break_at": event.id}
            prev_hash = event.event_hash

        return {"valid": True, "events_checked": len(events), "break_at": None}

    # ── Internal helpers ──

    @staticmethod
    def _compute_event_hash(
        event_type: str,
        actor: str,
        engine: str,
        statement: str,
        detail: dict[str, Any],
        prev_hash: str | None,
    ) -> str:
        canonical = json.dumps(
            {
                "event_type": event_type,
                "actor": actor,
                "engine": engine,
                "statement": statement,
                "detail": detail,
                "prev_hash": prev_hash,
            },
            sort_keys=True,
            separators=(",", ":"),
            default=str,
        )
        return hashlib.sha256(canonical.encode()).hexdigest()

    def _sign(self, event_hash: str) -> str:
        return hmac_mod.new(
            self.settings.current_hmac_key.encode(),
            event_hash.encode(),
            hashlib.sha256,
        ).hexdigest()

    def _verify_signature(self, event_hash: str, signature: str) -> bool:
        """Accept a signature from any key in the keyring (rotation)."""
        for _version, key in self.settings.hmac_keyring.items():
            expected = hmac_mod.new(key.encode(), event_hash.encode(), hashlib.sha256).hexdigest()
            if hmac_mod.compare_digest(expected, signature):
                return True
        return False
