from __future__ import annotations

from typing import Optional

from farmgate.logging import get_logger
from farmgate.storage.memory import MemoryStore

logger = get_logger(__name__)


class AuditService:
    """Append-only audit trail. Writes are best effort and never raise."""

    def __init__(self, store: MemoryStore) -> None:
        self.store = store

    def log_action(
        self,
        actor_id: str,
        action: str,
        entity_name: str,
        entity_id: Optional[str] = None,
        details: Optional[str] = None,
    ) -> bool:
        try:
            self.store.append_audit_event(
                actor_id, action, entity_name, entity_id=entity_id, details=details
            )
        except Exception as exc:
            logger.error(
                "audit_write_failed",
                action=action,
                entity_name=entity_name,
                error=str(exc),
            )
            return False
        return True
