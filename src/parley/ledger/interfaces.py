from typing import Iterable, List, Optional, Protocol

from .models import (
    AuditEntry,
    ConversationSlot,
    GatingPolicy,
    GatingState,
    Job,
    JobFilter,
    WebhookDelivery,
)


class JobsStore(Protocol):
    def create_job(self, job: Job) -> Job:
        ...

    def get_job(self, job_id: str, org_id: str) -> Optional[Job]:
        ...

    def update_job(self, job: Job, etag: str) -> Job:
        ...

    def query_jobs(self, org_id: str, job_filter: Optional[JobFilter] = None) -> Iterable[Job]:
        ...


class GatingStore(Protocol):
    def create_state(self, state: GatingState) -> GatingState:
        ...

    def get_state(self, org_id: str, conversation_id: str) -> Optional[GatingState]:
        ...

    def update_state(self, state: GatingState, etag: str) -> GatingState:
        ...

    def list_states(self, org_id: str) -> List[GatingState]:
        ...


class PolicyStore(Protocol):
    def get_policy(self, org_id: str) -> Optional[GatingPolicy]:
        ...

    def put_policy(self, policy: GatingPolicy) -> GatingPolicy:
        ...


class SlotStore(Protocol):
    def holder(self, org_id: str, conversation_id: str) -> Optional[str]:
        ...

    def get_slot(self, org_id: str, conversation_id: str) -> Optional[ConversationSlot]:
        ...

    def try_acquire(self, org_id: str, conversation_id: str, job_id: str) -> bool:
        ...

    def release(self, org_id: str, conversation_id: str, job_id: str) -> None:
        ...

    def release_if(self, org_id: str, conversation_id: str, job_id: str, etag: str) -> bool:
        ...


class AuditStore(Protocol):
    def append(self, entry: AuditEntry) -> AuditEntry:
        ...

    def list_entries(self, org_id: str, limit: int) -> List[AuditEntry]:
        ...


class WebhookStore(Protocol):
    def append(self, delivery: WebhookDelivery) -> WebhookDelivery:
        ...

    def list_deliveries(self, org_id: str, source: Optional[str], limit: int) -> List[WebhookDelivery]:
        ...
