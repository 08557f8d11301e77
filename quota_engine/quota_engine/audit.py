"""Best-effort audit trail for ledger mutations.

Audit entries are written inside a SAVEPOINT.  A failing audit write rolls
back only its own savepoint and is logged; it never changes the outcome of
the quota decision or billing event it describes.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from quota_engine.state.repository import AuditRepository

logger = logging.getLogger(__name__)


async def record_audit_event(
    session: AsyncSession,
    account_id: str,
    action: str,
    *,
    entity_type: str | None = None,
    entity_id: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> bool:
    """Append an audit entry, swallowing and logging database failures.

    Returns
    -------
    bool
        ``True`` if the entry was written.
    """
    try:
        async with session.begin_nested():
            await AuditRepository(session, account_id).log(
                action,
                entity_type=entity_type,
                entity_id=entity_id,
                metadata=metadata,
            )
    except SQLAlchemyError:
        logger.warning(
            "Audit write failed: account=%s action=%s entity=%s/%s",
            account_id,
            action,
            entity_type,
            entity_id,
            exc_info=True,
        )
        return False
    return True
