from datetime import datetime, timezone
from typing import Optional, Union

from parley.ledger.errors import ValidationError
from parley.ledger.models import GatingState


def parse_timestamp(value: Union[str, datetime]) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except (AttributeError, ValueError) as exc:
            raise ValidationError(f"invalid timestamp: {value!r}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def active_mute(state: Optional[GatingState], now: datetime) -> Optional[str]:
    """Mute expiry of ``state`` if it is still in the future, else None."""
    if state is None or not state.ai_muted_until:
        return None
    if parse_timestamp(state.ai_muted_until) <= now:
        return None
    return state.ai_muted_until


def is_muted(state: Optional[GatingState], now: datetime) -> bool:
    return active_mute(state, now) is not None
