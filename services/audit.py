from typing import Callable, List, Optional

from pymongo.errors import PyMongoError

from database.audit_log_table import AuditLogTableRepository
from models.schemas import AuditAction, AuditEvent, AuditOutcome
from utils.logger import get_logger

logger = get_logger("audit")

AuditListener = Callable[[AuditEvent], None]


class AuditEmitter:
    """
    Emits one structured event per pipeline decision or policy mutation.

    Events are written to the ``audit`` logger as JSON, appended to the audit
    collection when a repository is configured, and handed to any registered
    listeners (log tailing / streaming consumers live outside the gateway).
    """

    def __init__(self, repository: Optional[AuditLogTableRepository] = None) -> None:
        self.repository = repository
        self._listeners: List[AuditListener] = []

    def subscribe(self, listener: AuditListener) -> None:
        self._listeners.append(listener)

    async def emit(
        self,
        action: AuditAction,
        outcome: AuditOutcome,
        *,
        space_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        file_name: Optional[str] = None,
        extension: Optional[str] = None,
        detail: Optional[str] = None,
    ) -> AuditEvent:
        event = AuditEvent(
            space_id=space_id,
            actor_id=actor_id,
            action=action,
            outcome=outcome,
            file_name=file_name,
            extension=extension,
            detail=detail,
        )

        if outcome is AuditOutcome.ALLOWED:
            logger.info(event.model_dump_json(exclude_none=True))
        else:
            logger.warning(event.model_dump_json(exclude_none=True))

        if self.repository is not None:
            try:
                await self.repository.append(event)
            except PyMongoError as exc:
                logger.error("Failed to persist audit event %s: %s", event.action.value, exc)

        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as exc:
                logger.error("Audit listener %r failed: %s", listener, exc)

        return event
