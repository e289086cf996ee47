import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from parley.audit.publisher import AuditPublisher
from parley.ledger.errors import ConflictError, NotFound, ValidationError
from parley.ledger.interfaces import GatingStore, PolicyStore
from parley.ledger.models import GatingPolicy, GatingState, public_view
from parley.shared.logging import get_logger, log_event

from .expiry import active_mute, parse_timestamp

MAX_MUTE_MINUTES = 366 * 24 * 60


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _snapshot(state: Optional[GatingState]) -> Optional[Dict[str, Any]]:
    if state is None:
        return None
    return {"ai_enabled": state.ai_enabled, "ai_muted_until": state.ai_muted_until}


@dataclass
class GatingDecision:
    enabled: bool
    reason: str
    muted_until: Optional[str] = None


class GatingEngine:
    """Decides whether an agent may reply in a conversation right now.

    A mute window suppresses replies without touching the stored flag, so
    when it lapses the conversation goes back to whatever the flag said
    before the mute. Expiry is computed on every read from the clock.
    """

    def __init__(
        self,
        gating_store: GatingStore,
        policy_store: PolicyStore,
        audit: AuditPublisher,
        default_policy: GatingPolicy,
        max_conflict_retries: int = 3,
        clock: Callable[[], datetime] = _now,
    ):
        self._gating_store = gating_store
        self._policy_store = policy_store
        self._audit = audit
        self._default_policy = default_policy
        self._attempts = max(1, max_conflict_retries + 1)
        self._clock = clock
        self._logger = get_logger("parley.gating")

    def get_policy(self, org_id: str) -> GatingPolicy:
        policy = self._policy_store.get_policy(org_id)
        if policy is not None:
            return policy
        return replace(
            self._default_policy,
            org_id=org_id,
            source_defaults=dict(self._default_policy.source_defaults),
        )

    def put_policy(
        self,
        org_id: str,
        source_defaults: Dict[str, bool],
        fallback_enabled: bool = False,
        mute_window_minutes: Optional[int] = None,
        actor: Optional[str] = None,
    ) -> GatingPolicy:
        before = self.get_policy(org_id)
        if mute_window_minutes is None:
            mute_window_minutes = before.mute_window_minutes
        if not 1 <= mute_window_minutes <= MAX_MUTE_MINUTES:
            raise ValidationError(f"mute_window_minutes must be between 1 and {MAX_MUTE_MINUTES}")
        policy = self._policy_store.put_policy(
            GatingPolicy(
                org_id=org_id,
                source_defaults={source.lower(): bool(flag) for source, flag in source_defaults.items()},
                fallback_enabled=fallback_enabled,
                mute_window_minutes=mute_window_minutes,
                updated_at=self._clock().isoformat(),
            )
        )
        log_event(self._logger, "gating.policy_updated", org_id=org_id, actor=actor)
        self._audit.record(
            org_id,
            "gating.policy_updated",
            "policy",
            org_id,
            public_view(before),
            public_view(policy),
            actor=actor,
        )
        return policy

    def get_state(self, org_id: str, conversation_id: str) -> GatingState:
        state = self._gating_store.get_state(org_id, conversation_id)
        if state is None:
            raise NotFound(f"conversation {conversation_id} has no gating state")
        return state

    def evaluate(self, org_id: str, conversation_id: str, source: Optional[str] = None) -> GatingDecision:
        state = self._gating_store.get_state(org_id, conversation_id)
        if state is None:
            return GatingDecision(enabled=self.get_policy(org_id).default_for(source), reason="default")
        return self._decide(state, self._clock())

    def list_states(self, org_id: str) -> List[Tuple[GatingState, GatingDecision]]:
        """Every conversation of ``org_id`` with gating state, paired with its current decision."""
        now = self._clock()
        states = sorted(self._gating_store.list_states(org_id), key=lambda state: state.conversation_id)
        return [(state, self._decide(state, now)) for state in states]

    def is_ai_enabled(self, org_id: str, conversation_id: str, source: Optional[str] = None) -> bool:
        return self.evaluate(org_id, conversation_id, source).enabled

    def on_inbound_message(
        self,
        org_id: str,
        conversation_id: str,
        source: Optional[str] = None,
        at: Optional[Union[str, datetime]] = None,
    ) -> GatingState:
        seen_at = parse_timestamp(at) if at is not None else self._clock()
        seen_iso = seen_at.isoformat()
        for _ in range(self._attempts):
            state = self._gating_store.get_state(org_id, conversation_id)
            if state is None:
                now = self._clock().isoformat()
                try:
                    created = self._gating_store.create_state(
                        GatingState(
                            conversation_id=conversation_id,
                            org_id=org_id,
                            ai_enabled=self.get_policy(org_id).default_for(source),
                            ai_muted_until=None,
                            last_interaction=seen_iso,
                            source=source.lower() if source else None,
                            created_at=now,
                            updated_at=now,
                        )
                    )
                except ConflictError:
                    continue
                log_event(
                    self._logger,
                    "gating.created",
                    org_id=org_id,
                    conversation_id=conversation_id,
                    source=created.source,
                    ai_enabled=created.ai_enabled,
                )
                return created

            if state.last_interaction and parse_timestamp(state.last_interaction) >= seen_at:
                return state
            updated = replace(
                state,
                last_interaction=seen_iso,
                source=state.source or (source.lower() if source else None),
                updated_at=self._clock().isoformat(),
            )
            try:
                return self._gating_store.update_state(updated, state.etag or "")
            except ConflictError:
                continue
        raise ConflictError(f"gating state for {conversation_id} changed concurrently")

    def set_ai_enabled(
        self, org_id: str, conversation_id: str, enabled: bool, actor: Optional[str] = None
    ) -> GatingState:
        def mutate(state: GatingState) -> GatingState:
            state.ai_enabled = enabled
            if enabled:
                state.ai_muted_until = None
            return state

        return self._apply(org_id, conversation_id, "gating.enabled" if enabled else "gating.disabled", mutate, actor)

    def mute_for(
        self,
        org_id: str,
        conversation_id: str,
        duration_minutes: Optional[int] = None,
        actor: Optional[str] = None,
    ) -> GatingState:
        if duration_minutes is None:
            duration_minutes = self.get_policy(org_id).mute_window_minutes
        if duration_minutes <= 0:
            raise ValidationError("mute duration must be positive")
        if duration_minutes > MAX_MUTE_MINUTES:
            raise ValidationError(f"mute duration must not exceed {MAX_MUTE_MINUTES} minutes")
        try:
            until = self._clock() + timedelta(minutes=duration_minutes)
        except OverflowError as exc:
            raise ValidationError("mute duration is out of range") from exc
        return self._mute(org_id, conversation_id, until, actor)

    def mute_until(
        self, org_id: str, conversation_id: str, until: Union[str, datetime], actor: Optional[str] = None
    ) -> GatingState:
        expiry = parse_timestamp(until)
        if expiry <= self._clock():
            raise ValidationError("mute expiry must be in the future")
        return self._mute(org_id, conversation_id, expiry, actor)

    @staticmethod
    def _decide(state: GatingState, now: datetime) -> GatingDecision:
        muted_until = active_mute(state, now)
        if muted_until is not None:
            return GatingDecision(enabled=False, reason="muted", muted_until=muted_until)
        return GatingDecision(enabled=state.ai_enabled, reason="enabled" if state.ai_enabled else "disabled")

    def _mute(self, org_id: str, conversation_id: str, until: datetime, actor: Optional[str]) -> GatingState:
        def mutate(state: GatingState) -> GatingState:
            state.ai_muted_until = until.isoformat()
            return state

        return self._apply(org_id, conversation_id, "gating.muted", mutate, actor)

    def _apply(
        self,
        org_id: str,
        conversation_id: str,
        action: str,
        mutate: Callable[[GatingState], GatingState],
        actor: Optional[str],
    ) -> GatingState:
        for attempt in range(1, self._attempts + 1):
            current = self.get_state(org_id, conversation_id)
            updated = mutate(replace(current))
            updated.updated_at = self._clock().isoformat()
            try:
                saved = self._gating_store.update_state(updated, current.etag or "")
            except ConflictError:
                log_event(
                    self._logger,
                    "gating.conflict",
                    level=logging.DEBUG,
                    org_id=org_id,
                    conversation_id=conversation_id,
                    action=action,
                    attempt=attempt,
                )
                continue
            log_event(
                self._logger,
                action,
                org_id=org_id,
                conversation_id=conversation_id,
                ai_enabled=saved.ai_enabled,
                ai_muted_until=saved.ai_muted_until,
            )
            self._audit.record(
                org_id,
                action,
                "conversation",
                conversation_id,
                _snapshot(current),
                _snapshot(saved),
                actor=actor,
                new_state=public_view(saved),
            )
            return saved
        raise ConflictError(f"gating state for {conversation_id} changed concurrently during {action}")
