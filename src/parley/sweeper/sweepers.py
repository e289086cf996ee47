import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable, List, Optional

from parley.audit.channel import EventChannel
from parley.gating.expiry import is_muted
from parley.ledger.errors import ConflictError
from parley.ledger.interfaces import GatingStore
from parley.ledger.models import ChangeEvent, GatingState, public_view
from parley.shared.logging import get_logger, log_event


def _now() -> datetime:
    return datetime.now(timezone.utc)


class MuteSweeper:
    """Clears lapsed mute windows so stored rows match what readers compute.

    Gating reads never depend on this sweep having run.
    """

    def __init__(
        self,
        gating_store: GatingStore,
        channel: Optional[EventChannel] = None,
        clock: Callable[[], datetime] = _now,
    ):
        self._gating_store = gating_store
        self._channel = channel
        self._clock = clock
        self._logger = get_logger("parley.sweeper")

    def sweep(self, org_id: str) -> List[GatingState]:
        now = self._clock()
        cleared: List[GatingState] = []
        for state in self._gating_store.list_states(org_id):
            if not state.ai_muted_until or is_muted(state, now):
                continue
            updated = replace(state, ai_muted_until=None, updated_at=now.isoformat())
            try:
                saved = self._gating_store.update_state(updated, state.etag or "")
            except ConflictError:
                # Concurrent write; the next pass sees the fresh row.
                continue
            cleared.append(saved)
            self._notify(saved)
        log_event(self._logger, "sweep.mutes_cleared", org_id=org_id, cleared=len(cleared))
        return cleared

    def _notify(self, state: GatingState) -> None:
        if self._channel is None:
            return
        try:
            self._channel.publish(
                ChangeEvent(
                    entity_type="conversation",
                    entity_id=state.conversation_id,
                    org_id=state.org_id,
                    new_state=public_view(state),
                    timestamp=state.updated_at,
                )
            )
        except Exception as exc:
            log_event(
                self._logger,
                "event.publish_failed",
                level=logging.WARNING,
                org_id=state.org_id,
                conversation_id=state.conversation_id,
                error=str(exc),
            )
