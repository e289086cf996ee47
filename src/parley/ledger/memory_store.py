import threading
from dataclasses import replace
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from .errors import ConflictError
from .interfaces import AuditStore, GatingStore, JobsStore, PolicyStore, SlotStore, WebhookStore
from .models import (
    AuditEntry,
    ConversationSlot,
    GatingPolicy,
    GatingState,
    Job,
    JobFilter,
    WebhookDelivery,
)


def _next_etag(etag: str) -> str:
    return str(int(etag) + 1)


class MemoryJobsStore(JobsStore):
    def __init__(self) -> None:
        self._by_job_id: Dict[str, Job] = {}
        self._lock = threading.Lock()

    def create_job(self, job: Job) -> Job:
        with self._lock:
            if job.job_id in self._by_job_id:
                raise ConflictError(f"job {job.job_id} already exists")
            job = replace(job, etag="1")
            self._by_job_id[job.job_id] = job
            return replace(job)

    def get_job(self, job_id: str, org_id: str) -> Optional[Job]:
        job = self._by_job_id.get(job_id)
        if job is None or job.org_id != org_id:
            return None
        return replace(job)

    def update_job(self, job: Job, etag: str) -> Job:
        with self._lock:
            current = self._by_job_id.get(job.job_id)
            if current is None or current.etag != etag:
                raise ConflictError("etag mismatch")
            updated = replace(job, etag=_next_etag(etag))
            self._by_job_id[job.job_id] = updated
            return replace(updated)

    def query_jobs(self, org_id: str, job_filter: Optional[JobFilter] = None) -> List[Job]:
        job_filter = job_filter or JobFilter()
        with self._lock:
            jobs = list(self._by_job_id.values())
        return [replace(job) for job in jobs if job.org_id == org_id and job_filter.matches(job)]


class MemoryGatingStore(GatingStore):
    def __init__(self) -> None:
        self._states: Dict[Tuple[str, str], GatingState] = {}
        self._lock = threading.Lock()

    def create_state(self, state: GatingState) -> GatingState:
        key = (state.org_id, state.conversation_id)
        with self._lock:
            if key in self._states:
                raise ConflictError(f"gating state for {state.conversation_id} already exists")
            state = replace(state, etag="1")
            self._states[key] = state
            return replace(state)

    def get_state(self, org_id: str, conversation_id: str) -> Optional[GatingState]:
        state = self._states.get((org_id, conversation_id))
        return replace(state) if state is not None else None

    def update_state(self, state: GatingState, etag: str) -> GatingState:
        key = (state.org_id, state.conversation_id)
        with self._lock:
            current = self._states.get(key)
            if current is None or current.etag != etag:
                raise ConflictError("etag mismatch")
            updated = replace(state, etag=_next_etag(etag))
            self._states[key] = updated
            return replace(updated)

    def list_states(self, org_id: str) -> List[GatingState]:
        with self._lock:
            states = list(self._states.values())
        return [replace(state) for state in states if state.org_id == org_id]


class MemoryPolicyStore(PolicyStore):
    def __init__(self) -> None:
        self._policies: Dict[str, GatingPolicy] = {}

    def get_policy(self, org_id: str) -> Optional[GatingPolicy]:
        policy = self._policies.get(org_id)
        if policy is None:
            return None
        return replace(policy, source_defaults=dict(policy.source_defaults))

    def put_policy(self, policy: GatingPolicy) -> GatingPolicy:
        self._policies[policy.org_id] = replace(policy, source_defaults=dict(policy.source_defaults))
        return policy


class MemorySlotStore(SlotStore):
    def __init__(self) -> None:
        self._slots: Dict[Tuple[str, str], ConversationSlot] = {}
        self._lock = threading.Lock()

    def holder(self, org_id: str, conversation_id: str) -> Optional[str]:
        slot = self._slots.get((org_id, conversation_id))
        return slot.job_id if slot is not None else None

    def get_slot(self, org_id: str, conversation_id: str) -> Optional[ConversationSlot]:
        slot = self._slots.get((org_id, conversation_id))
        return replace(slot) if slot is not None else None

    def try_acquire(self, org_id: str, conversation_id: str, job_id: str) -> bool:
        key = (org_id, conversation_id)
        with self._lock:
            slot = self._slots.get(key)
            if slot is not None and slot.job_id is not None and slot.job_id != job_id:
                return False
            # Re-acquiring bumps the version so a pending conditional release loses.
            etag = _next_etag(slot.etag or "0") if slot is not None else "1"
            self._slots[key] = ConversationSlot(
                org_id=org_id,
                conversation_id=conversation_id,
                job_id=job_id,
                updated_at=datetime.now(timezone.utc).isoformat(),
                etag=etag,
            )
            return True

    def release(self, org_id: str, conversation_id: str, job_id: str) -> None:
        with self._lock:
            slot = self._slots.get((org_id, conversation_id))
            if slot is None or slot.job_id != job_id:
                return
            self._clear(slot)

    def release_if(self, org_id: str, conversation_id: str, job_id: str, etag: str) -> bool:
        with self._lock:
            slot = self._slots.get((org_id, conversation_id))
            if slot is None or slot.job_id != job_id or slot.etag != etag:
                return False
            self._clear(slot)
            return True

    def _clear(self, slot: ConversationSlot) -> None:
        self._slots[(slot.org_id, slot.conversation_id)] = replace(
            slot,
            job_id=None,
            updated_at=datetime.now(timezone.utc).isoformat(),
            etag=_next_etag(slot.etag or "0"),
        )


class MemoryAuditStore(AuditStore):
    def __init__(self) -> None:
        self._entries: List[AuditEntry] = []
        self._lock = threading.Lock()

    def append(self, entry: AuditEntry) -> AuditEntry:
        with self._lock:
            self._entries.append(entry)
        return entry

    def list_entries(self, org_id: str, limit: int) -> List[AuditEntry]:
        with self._lock:
            entries = [entry for entry in self._entries if entry.org_id == org_id]
        entries.reverse()
        return entries[:limit]


class MemoryWebhookStore(WebhookStore):
    def __init__(self) -> None:
        self._deliveries: List[WebhookDelivery] = []
        self._lock = threading.Lock()

    def append(self, delivery: WebhookDelivery) -> WebhookDelivery:
        with self._lock:
            self._deliveries.append(delivery)
        return delivery

    def list_deliveries(self, org_id: str, source: Optional[str], limit: int) -> List[WebhookDelivery]:
        with self._lock:
            deliveries = [
                item
                for item in self._deliveries
                if item.org_id == org_id and (source is None or item.source == source)
            ]
        deliveries.reverse()
        return deliveries[:limit]
