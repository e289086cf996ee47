import json
import queue
import threading
from dataclasses import asdict, dataclass
from typing import Dict, Iterator, List, Optional, Protocol

from parley.config.settings import AppSettings
from parley.ledger.errors import ChannelUnavailable
from parley.ledger.models import ChangeEvent

_CLOSED = object()


class Subscription(Protocol):
    def __iter__(self) -> Iterator[ChangeEvent]:
        ...

    def __next__(self) -> ChangeEvent:
        ...

    def close(self) -> None:
        ...


class EventChannel(Protocol):
    def publish(self, event: ChangeEvent) -> None:
        ...

    def subscribe(self, org_id: str) -> Subscription:
        ...


def encode_event(event: ChangeEvent) -> str:
    return json.dumps(asdict(event), sort_keys=True, default=str)


def decode_event(body: str) -> ChangeEvent:
    data = json.loads(body)
    return ChangeEvent(
        entity_type=data["entity_type"],
        entity_id=data["entity_id"],
        org_id=data["org_id"],
        new_state=data.get("new_state"),
        timestamp=data["timestamp"],
    )


class MemorySubscription:
    """Blocking iterator over one organization's change events."""

    def __init__(self, channel: "MemoryEventChannel", org_id: str) -> None:
        self.org_id = org_id
        self._channel = channel
        self._queue: "queue.Queue[object]" = queue.Queue()
        self._closed = False

    def __iter__(self) -> "MemorySubscription":
        return self

    def __next__(self) -> ChangeEvent:
        if self._closed and self._queue.empty():
            raise StopIteration
        item = self._queue.get()
        if item is _CLOSED:
            raise StopIteration
        return item  # type: ignore[return-value]

    def get(self, timeout: Optional[float] = None) -> Optional[ChangeEvent]:
        try:
            item = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        if item is _CLOSED:
            return None
        return item  # type: ignore[return-value]

    def deliver(self, event: ChangeEvent) -> None:
        self._queue.put(event)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._channel.unsubscribe(self)
        self._queue.put(_CLOSED)


class MemoryEventChannel(EventChannel):
    def __init__(self) -> None:
        self._subscribers: Dict[str, List[MemorySubscription]] = {}
        self._lock = threading.Lock()

    def publish(self, event: ChangeEvent) -> None:
        with self._lock:
            subscribers = list(self._subscribers.get(event.org_id, []))
        for subscription in subscribers:
            subscription.deliver(event)

    def subscribe(self, org_id: str) -> MemorySubscription:
        subscription = MemorySubscription(self, org_id)
        with self._lock:
            self._subscribers.setdefault(org_id, []).append(subscription)
        return subscription

    def unsubscribe(self, subscription: MemorySubscription) -> None:
        with self._lock:
            subscribers = self._subscribers.get(subscription.org_id, [])
            if subscription in subscribers:
                subscribers.remove(subscription)


@dataclass
class NoopEventChannel:
    def publish(self, event: ChangeEvent) -> None:
        return None

    def subscribe(self, org_id: str) -> Subscription:
        raise ChannelUnavailable("event channel is disabled")


def _message_body(message) -> str:
    body = getattr(message, "body", None)
    if body is None:
        return str(message)
    if isinstance(body, bytes):
        return body.decode("utf-8")
    if isinstance(body, str):
        return body
    return b"".join(body).decode("utf-8")


class ServiceBusSubscription:
    def __init__(self, connection_string: str, topic: str, subscription_name: str, org_id: str) -> None:
        from azure.servicebus import ServiceBusClient

        self.org_id = org_id
        self._client = ServiceBusClient.from_connection_string(connection_string)
        self._receiver = self._client.get_subscription_receiver(
            topic_name=topic,
            subscription_name=subscription_name,
        )
        self._buffer: List[ChangeEvent] = []
        self._closed = False

    def __iter__(self) -> "ServiceBusSubscription":
        return self

    def __next__(self) -> ChangeEvent:
        while not self._buffer:
            if self._closed:
                raise StopIteration
            for message in self._receiver.receive_messages(max_message_count=10, max_wait_time=5):
                event = decode_event(_message_body(message))
                self._receiver.complete_message(message)
                if event.org_id == self.org_id:
                    self._buffer.append(event)
        return self._buffer.pop(0)

    def close(self) -> None:
        self._closed = True
        self._receiver.close()
        self._client.close()


@dataclass
class ServiceBusEventChannel:
    connection_string: str
    topic: str
    subscription_name: Optional[str] = None

    def publish(self, event: ChangeEvent) -> None:
        from azure.servicebus import ServiceBusClient, ServiceBusMessage

        message = ServiceBusMessage(
            encode_event(event),
            application_properties={"org_id": event.org_id, "entity_type": event.entity_type},
        )
        message.message_id = f"{event.entity_type}:{event.entity_id}:{event.timestamp}"
        with ServiceBusClient.from_connection_string(self.connection_string) as client:
            sender = client.get_topic_sender(topic_name=self.topic)
            with sender:
                sender.send_messages(message)

    def subscribe(self, org_id: str) -> ServiceBusSubscription:
        if not self.subscription_name:
            raise RuntimeError("PARLEY_EVENT_SUBSCRIPTION is required to subscribe over Service Bus")
        return ServiceBusSubscription(self.connection_string, self.topic, self.subscription_name, org_id)


def build_event_channel(settings: AppSettings) -> EventChannel:
    if settings.event_backend == "memory":
        return MemoryEventChannel()
    if settings.event_backend == "none":
        return NoopEventChannel()
    if settings.event_backend != "servicebus":
        raise RuntimeError(f"Unsupported event backend: {settings.event_backend}")
    if not settings.service_bus_connection:
        raise RuntimeError("PARLEY_SERVICEBUS_CONNECTION is required for the servicebus event backend")
    return ServiceBusEventChannel(
        connection_string=settings.service_bus_connection,
        topic=settings.event_topic,
        subscription_name=settings.event_subscription,
    )
