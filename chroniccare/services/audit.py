"""Fire-and-forget audit trail."""

import json
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy import insert
from sqlalchemy.ext.asyncio import AsyncSession

from chroniccare.models.notifications import audit_logs

logger = structlog.get_logger(__name__)


class AuditRecorder:
    """
    Writes audit entries in their own transaction.

    Call only after the audited change has been committed: a failing audit
    write is rolled back and logged, and never propagates.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def record(
        self,
        tenant_id: UUID,
        entity_type: str,
        entity_id: UUID,
        action: str,
        changes: dict[str, Any] | None = None,
    ) -> None:
        try:
            await self.db.execute(
                insert(audit_logs).values(
                    tenant_id=tenant_id,
                    entity_type=entity_type,
                    entity_id=entity_id,
                    action=action,
                    changes=json.loads(json.dumps(changes or {}, default=str)),
                )
            )
            await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            logger.warning(
                "audit_record_failed",
                entity_type=entity_type,
                entity_id=str(entity_id),
                action=action,
                error=str(e),
            )
