import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, Optional
from uuid import uuid4

from parley.audit.publisher import AuditPublisher
from parley.ledger.errors import ConflictError, CoreError, InvalidTransition, NotFound
from parley.ledger.interfaces import JobsStore, SlotStore
from parley.ledger.models import Job, JobFilter, JobStatus, public_view
from parley.shared.logging import get_logger, log_event

from .transitions import REASSIGNABLE_STATES, SLOT_HOLDING_STATES, can_transition


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _snapshot(job: Optional[Job]) -> Optional[Dict[str, Any]]:
    if job is None:
        return None
    return {
        "status": job.status,
        "agent_type": job.agent_type,
        "priority": job.priority,
        "retry_count": job.retry_count,
        "error": job.error,
    }


class JobListing:
    """Jobs of one organization, highest priority first, oldest first within a priority.

    Each iteration re-reads the store, so a listing can be walked again to
    see fresh state.
    """

    def __init__(self, jobs_store: JobsStore, org_id: str, job_filter: Optional[JobFilter] = None):
        self._jobs_store = jobs_store
        self.org_id = org_id
        self.job_filter = job_filter or JobFilter()

    def __iter__(self) -> Iterator[Job]:
        jobs = list(self._jobs_store.query_jobs(self.org_id, self.job_filter))
        jobs.sort(key=lambda job: job.created_at)
        jobs.sort(key=lambda job: job.priority, reverse=True)
        return iter(jobs)


class JobLifecycleManager:
    def __init__(
        self,
        jobs_store: JobsStore,
        slot_store: SlotStore,
        audit: AuditPublisher,
        max_conflict_retries: int = 3,
        clock: Callable[[], datetime] = _now,
    ):
        self._jobs_store = jobs_store
        self._slot_store = slot_store
        self._audit = audit
        self._attempts = max(1, max_conflict_retries + 1)
        self._clock = clock
        self._logger = get_logger("parley.lifecycle")

    def get_job(self, org_id: str, job_id: str) -> Job:
        job = self._jobs_store.get_job(job_id, org_id)
        if job is None:
            raise NotFound(f"job {job_id} not found")
        return job

    def list_by_org(self, org_id: str, job_filter: Optional[JobFilter] = None) -> JobListing:
        return JobListing(self._jobs_store, org_id, job_filter)

    def queue_status(self, org_id: str) -> Dict[str, int]:
        counts = {status: 0 for status in JobStatus.ALL}
        for job in self._jobs_store.query_jobs(org_id, JobFilter()):
            counts[job.status] = counts.get(job.status, 0) + 1
        return counts

    def enqueue(
        self,
        org_id: str,
        conversation_id: str,
        job_type: str,
        priority: int = 0,
        agent_type: Optional[str] = None,
        forced: bool = False,
        source: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
        actor: Optional[str] = None,
    ) -> Job:
        active = self._processing_job(org_id, conversation_id)
        if active is not None:
            raise ConflictError(
                f"conversation {conversation_id} already has job {active.job_id} processing"
            )
        now = self._now_iso()
        job = self._jobs_store.create_job(
            Job(
                job_id=uuid4().hex,
                org_id=org_id,
                conversation_id=conversation_id,
                job_type=job_type,
                status=JobStatus.PENDING,
                priority=priority,
                agent_type=agent_type,
                created_at=now,
                updated_at=now,
                forced=forced,
                source=source.lower() if source else None,
                data=data,
            )
        )
        log_event(
            self._logger,
            "job.enqueued",
            org_id=org_id,
            job_id=job.job_id,
            conversation_id=conversation_id,
            job_type=job_type,
            priority=priority,
            forced=forced,
        )
        self._audit.record(
            org_id,
            "job.enqueued",
            "job",
            job.job_id,
            None,
            _snapshot(job),
            actor=actor,
            new_state=public_view(job),
        )
        return job

    def dispatch(self, org_id: str, job_id: str, actor: Optional[str] = None) -> Job:
        job = self.get_job(org_id, job_id)
        if job.status == JobStatus.PROCESSING:
            raise ConflictError(f"job {job_id} is already processing")
        if job.status != JobStatus.PENDING:
            raise InvalidTransition(job_id, job.status, JobStatus.PROCESSING)

        self._acquire_slot(job)
        try:
            return self._apply(org_id, job_id, "job.dispatched", self._start_processing, actor)
        except CoreError:
            current = self._jobs_store.get_job(job_id, org_id)
            if current is None or current.status != JobStatus.PROCESSING:
                self._release_slot(job)
            raise

    def complete(self, org_id: str, job_id: str, result: Any = None, actor: Optional[str] = None) -> Job:
        def mutate(job: Job) -> Job:
            self._require(job, JobStatus.COMPLETED)
            now = self._now_iso()
            job.status = JobStatus.COMPLETED
            job.result = result
            job.completed_at = now
            job.updated_at = now
            return job

        job = self._apply(org_id, job_id, "job.completed", mutate, actor)
        self._release_slot(job)
        return job

    def fail(self, org_id: str, job_id: str, error: str, actor: Optional[str] = None) -> Job:
        def mutate(job: Job) -> Job:
            self._require(job, JobStatus.FAILED)
            job.status = JobStatus.FAILED
            job.error = error
            job.failure_count += 1
            job.updated_at = self._now_iso()
            return job

        job = self._apply(org_id, job_id, "job.failed", mutate, actor)
        self._release_slot(job)
        return job

    def cancel(self, org_id: str, job_id: str, actor: Optional[str] = None) -> Job:
        def mutate(job: Job) -> Optional[Job]:
            if job.status in (JobStatus.CANCELLED, JobStatus.COMPLETED):
                return None
            self._require(job, JobStatus.CANCELLED)
            job.status = JobStatus.CANCELLED
            job.updated_at = self._now_iso()
            return job

        job = self._apply(org_id, job_id, "job.cancelled", mutate, actor)
        self._release_slot(job)
        return job

    def retry(self, org_id: str, job_id: str, actor: Optional[str] = None) -> Job:
        def mutate(job: Job) -> Job:
            self._require(job, JobStatus.PENDING)
            job.status = JobStatus.PENDING
            job.error = None
            job.result = None
            job.retry_count += 1
            job.processing_started_at = None
            job.completed_at = None
            job.updated_at = self._now_iso()
            return job

        job = self._apply(org_id, job_id, "job.retried", mutate, actor)
        self._release_slot(job)
        return job

    def reassign(self, org_id: str, job_id: str, agent_type: str, actor: Optional[str] = None) -> Job:
        def mutate(job: Job) -> Optional[Job]:
            if job.status not in REASSIGNABLE_STATES:
                raise InvalidTransition(job_id, job.status, "reassigned")
            if job.agent_type == agent_type:
                return None
            job.agent_type = agent_type
            job.updated_at = self._now_iso()
            return job

        return self._apply(org_id, job_id, "job.reassigned", mutate, actor)

    def _start_processing(self, job: Job) -> Job:
        if job.status == JobStatus.PROCESSING:
            raise ConflictError(f"job {job.job_id} is already processing")
        self._require(job, JobStatus.PROCESSING)
        now = self._now_iso()
        job.status = JobStatus.PROCESSING
        job.processing_started_at = now
        job.updated_at = now
        return job

    def _apply(
        self,
        org_id: str,
        job_id: str,
        action: str,
        mutate: Callable[[Job], Optional[Job]],
        actor: Optional[str],
    ) -> Job:
        for attempt in range(1, self._attempts + 1):
            current = self.get_job(org_id, job_id)
            updated = mutate(replace(current))
            if updated is None:
                return current
            try:
                saved = self._jobs_store.update_job(updated, current.etag or "")
            except ConflictError:
                log_event(
                    self._logger,
                    "job.conflict",
                    level=logging.DEBUG,
                    org_id=org_id,
                    job_id=job_id,
                    action=action,
                    attempt=attempt,
                )
                continue
            log_event(
                self._logger,
                action,
                org_id=org_id,
                job_id=job_id,
                conversation_id=saved.conversation_id,
                from_status=current.status,
                to_status=saved.status,
            )
            self._audit.record(
                org_id,
                action,
                "job",
                job_id,
                _snapshot(current),
                _snapshot(saved),
                actor=actor,
                new_state=public_view(saved),
            )
            return saved
        raise ConflictError(f"job {job_id} changed concurrently during {action}")

    def _acquire_slot(self, job: Job) -> None:
        org_id, conversation_id = job.org_id, job.conversation_id
        for _ in range(self._attempts):
            if self._slot_store.try_acquire(org_id, conversation_id, job.job_id):
                return
            # The slot is read before its holder; the reclaim is conditional on that read.
            slot = self._slot_store.get_slot(org_id, conversation_id)
            if slot is None or slot.job_id is None:
                continue
            holder = self._jobs_store.get_job(slot.job_id, org_id)
            if holder is not None and holder.status in SLOT_HOLDING_STATES:
                raise ConflictError(
                    f"conversation {conversation_id} is held by job {slot.job_id} ({holder.status})"
                )
            if not self._slot_store.release_if(org_id, conversation_id, slot.job_id, slot.etag or ""):
                continue
            log_event(
                self._logger,
                "slot.reclaimed",
                level=logging.WARNING,
                org_id=org_id,
                conversation_id=conversation_id,
                stale_job_id=slot.job_id,
            )
        raise ConflictError(f"could not acquire conversation {conversation_id} for job {job.job_id}")

    def _release_slot(self, job: Job) -> None:
        try:
            self._slot_store.release(job.org_id, job.conversation_id, job.job_id)
        except CoreError as exc:
            # A stale slot is reclaimed by the next dispatch in this conversation.
            log_event(
                self._logger,
                "slot.release_failed",
                level=logging.WARNING,
                org_id=job.org_id,
                conversation_id=job.conversation_id,
                job_id=job.job_id,
                status=job.status,
                error=str(exc),
            )

    def _processing_job(self, org_id: str, conversation_id: str) -> Optional[Job]:
        holder_id = self._slot_store.holder(org_id, conversation_id)
        if holder_id is None:
            return None
        holder = self._jobs_store.get_job(holder_id, org_id)
        if holder is not None and holder.status == JobStatus.PROCESSING:
            return holder
        return None

    @staticmethod
    def _require(job: Job, target: str) -> None:
        if not can_transition(job.status, target):
            raise InvalidTransition(job.job_id, job.status, target)

    def _now_iso(self) -> str:
        return self._clock().isoformat()
