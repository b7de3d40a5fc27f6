import logging
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from checkout.models import AuditLog

logger = logging.getLogger("checkout.audit")


class AuditWriter:
    """Best-effort audit trail, written in its own session after the fact."""

    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    async def log(
        self,
        action: str,
        target_type: str,
        target_id: UUID | str,
        actor_id: UUID | None = None,
        payload: dict | None = None,
    ) -> None:
        try:
            async with self._session_factory() as session:
                session.add(AuditLog(
                    actor_id=actor_id,
                    action=action,
                    target_type=target_type,
                    target_id=str(target_id),
                    payload=payload,
                ))
                await session.commit()
        except SQLAlchemyError as e:
            logger.error("Audit logging failed for %s %s %s: %s", action, target_type, target_id, e)
