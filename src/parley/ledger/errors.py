class CoreError(Exception):
    """Base class for errors surfaced by the lifecycle and gating core."""


class NotFound(CoreError):
    pass


class InvalidTransition(CoreError):
    def __init__(self, entity_id: str, current: str, requested: str) -> None:
        super().__init__(f"cannot move {entity_id} from {current} to {requested}")
        self.entity_id = entity_id
        self.current = current
        self.requested = requested


class ConflictError(CoreError):
    """Lost an optimistic-concurrency race. Re-read and retry is safe."""


class ValidationError(CoreError):
    pass


class StoreUnavailable(CoreError):
    pass


class AiDisabled(CoreError):
    def __init__(self, conversation_id: str, reason: str) -> None:
        super().__init__(f"automated response is gated off for {conversation_id} ({reason})")
        self.conversation_id = conversation_id
        self.reason = reason


class ChannelUnavailable(CoreError):
    """The change-event channel is not configured for subscriptions."""
