import logging
from datetime import datetime, timezone
from typing import Any, Callable, Optional
from uuid import uuid4

from parley.ledger.interfaces import AuditStore
from parley.ledger.models import AuditEntry, ChangeEvent
from parley.shared.logging import get_logger, log_event

from .channel import EventChannel


def _now() -> datetime:
    return datetime.now(timezone.utc)


class AuditPublisher:
    """Appends audit entries and fans change events out to subscribers.

    Neither step may fail the business operation that triggered it: the
    entry is written first, then the event is published, and any error from
    either is logged and dropped.
    """

    def __init__(
        self,
        audit_store: AuditStore,
        channel: EventChannel,
        clock: Callable[[], datetime] = _now,
    ) -> None:
        self._audit_store = audit_store
        self._channel = channel
        self._clock = clock
        self._logger = get_logger("parley.audit")

    def record(
        self,
        org_id: str,
        action: str,
        target_type: str,
        target_id: str,
        before: Any,
        after: Any,
        actor: Optional[str] = None,
        new_state: Any = None,
    ) -> Optional[AuditEntry]:
        now = self._clock().isoformat()
        entry = AuditEntry(
            audit_id=uuid4().hex,
            org_id=org_id,
            actor=actor,
            action=action,
            target=f"{target_type}:{target_id}",
            before=before,
            after=after,
            created_at=now,
        )
        try:
            self._audit_store.append(entry)
        except Exception:
            self._logger.exception("audit append failed for %s on %s", action, entry.target)
            entry = None

        event = ChangeEvent(
            entity_type=target_type,
            entity_id=target_id,
            org_id=org_id,
            new_state=new_state if new_state is not None else after,
            timestamp=now,
        )
        try:
            self._channel.publish(event)
        except Exception as exc:
            log_event(
                self._logger,
                "event.publish_failed",
                level=logging.WARNING,
                org_id=org_id,
                action=action,
                target=f"{target_type}:{target_id}",
                error=str(exc),
            )
        return entry
