import threading

import pytest

from parley.audit.channel import MemoryEventChannel
from parley.audit.publisher import AuditPublisher
from parley.ledger.errors import ConflictError, InvalidTransition, NotFound
from parley.ledger.memory_store import MemoryAuditStore, MemoryJobsStore, MemorySlotStore
from parley.ledger.models import JobFilter, JobStatus
from parley.lifecycle.manager import JobLifecycleManager


@pytest.fixture
def stores():
    return MemoryJobsStore(), MemorySlotStore(), MemoryAuditStore()


@pytest.fixture
def manager(stores, clock):
    jobs_store, slot_store, audit_store = stores
    audit = AuditPublisher(audit_store, MemoryEventChannel(), clock=clock)
    return JobLifecycleManager(jobs_store, slot_store, audit, clock=clock)


def test_enqueue_creates_pending_job(manager, stores):
    job = manager.enqueue("org1", "c1", "qualification", priority=3, agent_type="qualifier", actor="u1")

    assert job.status == JobStatus.PENDING
    assert job.priority == 3
    assert job.retry_count == 0
    entries = stores[2].list_entries("org1", 10)
    assert [entry.action for entry in entries] == ["job.enqueued"]
    assert entries[0].actor == "u1"
    assert entries[0].target == f"job:{job.job_id}"


def test_full_happy_path(manager):
    job = manager.enqueue("org1", "c1", "qualification")
    dispatched = manager.dispatch("org1", job.job_id)
    assert dispatched.status == JobStatus.PROCESSING
    assert dispatched.processing_started_at is not None

    completed = manager.complete("org1", job.job_id, {"reply": "hi"})
    assert completed.status == JobStatus.COMPLETED
    assert completed.result == {"reply": "hi"}
    assert completed.completed_at is not None


def test_second_dispatch_is_a_conflict(manager):
    job = manager.enqueue("org1", "c1", "qualification")
    manager.dispatch("org1", job.job_id)

    with pytest.raises(ConflictError):
        manager.dispatch("org1", job.job_id)


def test_dispatch_of_finished_job_is_invalid(manager):
    job = manager.enqueue("org1", "c1", "qualification")
    manager.dispatch("org1", job.job_id)
    manager.complete("org1", job.job_id)

    with pytest.raises(InvalidTransition):
        manager.dispatch("org1", job.job_id)


def test_complete_after_completed_is_invalid_and_unchanged(manager):
    job = manager.enqueue("org1", "c1", "qualification")
    manager.dispatch("org1", job.job_id)
    done = manager.complete("org1", job.job_id, "first")

    with pytest.raises(InvalidTransition):
        manager.complete("org1", job.job_id, "second")

    current = manager.get_job("org1", job.job_id)
    assert current.result == "first"
    assert current.etag == done.etag


def test_fail_then_retry_increments_retry_count(manager):
    job = manager.enqueue("org1", "c1", "qualification")
    manager.dispatch("org1", job.job_id)
    failed = manager.fail("org1", job.job_id, "timeout")
    assert failed.status == JobStatus.FAILED
    assert failed.error == "timeout"
    assert failed.failure_count == 1

    retried = manager.retry("org1", job.job_id)
    assert retried.status == JobStatus.PENDING
    assert retried.retry_count == failed.retry_count + 1
    assert retried.error is None


def test_cancel_is_idempotent_without_extra_audit(manager, stores):
    job = manager.enqueue("org1", "c1", "qualification")
    first = manager.cancel("org1", job.job_id)
    audit_count = len(stores[2].list_entries("org1", 100))

    second = manager.cancel("org1", job.job_id)

    assert first.status == JobStatus.CANCELLED
    assert second.status == JobStatus.CANCELLED
    assert second.etag == first.etag
    assert len(stores[2].list_entries("org1", 100)) == audit_count


def test_cancel_completed_job_returns_it_unchanged(manager):
    job = manager.enqueue("org1", "c1", "qualification")
    manager.dispatch("org1", job.job_id)
    manager.complete("org1", job.job_id)

    assert manager.cancel("org1", job.job_id).status == JobStatus.COMPLETED


def test_cancel_failed_job_is_invalid(manager):
    job = manager.enqueue("org1", "c1", "qualification")
    manager.dispatch("org1", job.job_id)
    manager.fail("org1", job.job_id, "boom")

    with pytest.raises(InvalidTransition):
        manager.cancel("org1", job.job_id)


def test_cancelled_processing_job_rejects_late_completion(manager):
    job = manager.enqueue("org1", "c1", "qualification")
    manager.dispatch("org1", job.job_id)
    manager.cancel("org1", job.job_id)

    with pytest.raises(InvalidTransition):
        manager.complete("org1", job.job_id, "late")
    with pytest.raises(InvalidTransition):
        manager.fail("org1", job.job_id, "late")
    assert manager.get_job("org1", job.job_id).status == JobStatus.CANCELLED


def test_cancelled_job_can_be_retried(manager):
    job = manager.enqueue("org1", "c1", "qualification")
    manager.cancel("org1", job.job_id)

    assert manager.retry("org1", job.job_id).status == JobStatus.PENDING


def test_retry_of_pending_job_is_invalid(manager):
    job = manager.enqueue("org1", "c1", "qualification")

    with pytest.raises(InvalidTransition):
        manager.retry("org1", job.job_id)


def test_reassign_allowed_while_active(manager):
    job = manager.enqueue("org1", "c1", "qualification", agent_type="qualifier")
    assert manager.reassign("org1", job.job_id, "closer").agent_type == "closer"

    manager.dispatch("org1", job.job_id)
    assert manager.reassign("org1", job.job_id, "scheduler").agent_type == "scheduler"


def test_reassign_completed_job_is_blocked(manager):
    job = manager.enqueue("org1", "c1", "qualification", agent_type="qualifier")
    manager.dispatch("org1", job.job_id)
    manager.complete("org1", job.job_id)

    with pytest.raises(InvalidTransition):
        manager.reassign("org1", job.job_id, "closer")
    assert manager.get_job("org1", job.job_id).agent_type == "qualifier"


def test_unknown_or_foreign_job_is_not_found(manager):
    job = manager.enqueue("org1", "c1", "qualification")

    with pytest.raises(NotFound):
        manager.get_job("org1", "missing")
    with pytest.raises(NotFound):
        manager.dispatch("org2", job.job_id)


def test_enqueue_rejected_while_conversation_is_processing(manager):
    job = manager.enqueue("org1", "c1", "qualification")
    manager.dispatch("org1", job.job_id)

    with pytest.raises(ConflictError):
        manager.enqueue("org1", "c1", "closing")

    manager.complete("org1", job.job_id)
    assert manager.enqueue("org1", "c1", "closing").status == JobStatus.PENDING


def test_second_job_in_same_conversation_cannot_dispatch(manager):
    first = manager.enqueue("org1", "c1", "qualification")
    second = manager.enqueue("org1", "c1", "closing")
    manager.dispatch("org1", first.job_id)

    with pytest.raises(ConflictError):
        manager.dispatch("org1", second.job_id)
    assert manager.get_job("org1", second.job_id).status == JobStatus.PENDING

    manager.fail("org1", first.job_id, "boom")
    assert manager.dispatch("org1", second.job_id).status == JobStatus.PROCESSING


def test_stale_slot_is_reclaimed(manager, stores):
    jobs_store, slot_store, _ = stores
    first = manager.enqueue("org1", "c1", "qualification")
    manager.dispatch("org1", first.job_id)
    manager.complete("org1", first.job_id)
    # Simulate a crash between the job write and the slot release.
    assert slot_store.try_acquire("org1", "c1", first.job_id)

    second = manager.enqueue("org1", "c1", "closing")
    assert manager.dispatch("org1", second.job_id).status == JobStatus.PROCESSING
    assert slot_store.holder("org1", "c1") == second.job_id


class _InterleavingJobsStore(MemoryJobsStore):
    """Runs a callback the first time a chosen job is read, returning the pre-callback copy."""

    def __init__(self) -> None:
        super().__init__()
        self.watch_id = None
        self.on_read = None

    def get_job(self, job_id, org_id):
        job = super().get_job(job_id, org_id)
        if job_id == self.watch_id and self.on_read is not None:
            callback, self.on_read = self.on_read, None
            callback()
        return job


def test_reclaim_loses_to_holder_redispatched_after_slot_read(clock):
    jobs_store, slot_store = _InterleavingJobsStore(), MemorySlotStore()
    audit = AuditPublisher(MemoryAuditStore(), MemoryEventChannel(), clock=clock)
    manager = JobLifecycleManager(jobs_store, slot_store, audit, clock=clock)
    first = manager.enqueue("org1", "c1", "qualification")
    manager.dispatch("org1", first.job_id)
    manager.fail("org1", first.job_id, "boom")
    # Leave the failed job holding the slot, as if its release never landed.
    assert slot_store.try_acquire("org1", "c1", first.job_id)
    second = manager.enqueue("org1", "c1", "closing")

    def redispatch_first() -> None:
        manager.retry("org1", first.job_id)
        manager.dispatch("org1", first.job_id)

    jobs_store.watch_id = first.job_id
    jobs_store.on_read = redispatch_first

    with pytest.raises(ConflictError):
        manager.dispatch("org1", second.job_id)

    processing = list(manager.list_by_org("org1", JobFilter(status=JobStatus.PROCESSING)))
    assert [job.job_id for job in processing] == [first.job_id]
    assert slot_store.holder("org1", "c1") == first.job_id
    assert manager.get_job("org1", second.job_id).status == JobStatus.PENDING


class _FailingReleaseSlotStore(MemorySlotStore):
    def release(self, org_id, conversation_id, job_id):
        raise ConflictError("slot changed concurrently")


@pytest.mark.parametrize("action", ["complete", "fail", "cancel"])
def test_release_failure_does_not_hide_committed_transition(clock, action):
    jobs_store, slot_store = MemoryJobsStore(), _FailingReleaseSlotStore()
    audit = AuditPublisher(MemoryAuditStore(), MemoryEventChannel(), clock=clock)
    manager = JobLifecycleManager(jobs_store, slot_store, audit, clock=clock)
    job = manager.enqueue("org1", "c1", "qualification")
    manager.dispatch("org1", job.job_id)

    if action == "fail":
        saved = manager.fail("org1", job.job_id, "boom")
    else:
        saved = getattr(manager, action)("org1", job.job_id)

    expected = {"complete": JobStatus.COMPLETED, "fail": JobStatus.FAILED, "cancel": JobStatus.CANCELLED}[action]
    assert saved.status == expected
    assert manager.get_job("org1", job.job_id).status == expected
    # The stuck slot is reclaimed by the next dispatch.
    following = manager.enqueue("org1", "c1", "closing")
    assert manager.dispatch("org1", following.job_id).status == JobStatus.PROCESSING


def test_enqueue_stores_normalized_source(manager):
    job = manager.enqueue("org1", "c1", "qualification", source="HR")

    assert job.source == "hr"
    assert manager.get_job("org1", job.job_id).source == "hr"


def test_concurrent_dispatch_in_one_conversation_admits_one(manager):
    jobs = [manager.enqueue("org1", "c1", "qualification") for _ in range(8)]
    barrier = threading.Barrier(len(jobs))
    outcomes = []
    lock = threading.Lock()

    def worker(job_id: str) -> None:
        barrier.wait()
        try:
            manager.dispatch("org1", job_id)
            result = "ok"
        except ConflictError:
            result = "conflict"
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=worker, args=(job.job_id,)) for job in jobs]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert outcomes.count("ok") == 1
    processing = list(manager.list_by_org("org1", JobFilter(status=JobStatus.PROCESSING)))
    assert len(processing) == 1


def test_concurrent_dispatch_of_same_job_admits_one(manager):
    job = manager.enqueue("org1", "c1", "qualification")
    barrier = threading.Barrier(4)
    outcomes = []
    lock = threading.Lock()

    def worker() -> None:
        barrier.wait()
        try:
            manager.dispatch("org1", job.job_id)
            result = "ok"
        except ConflictError:
            result = "conflict"
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert outcomes.count("ok") == 1
    assert manager.get_job("org1", job.job_id).status == JobStatus.PROCESSING


def test_list_by_org_orders_by_priority_then_fifo(manager, clock):
    low = manager.enqueue("org1", "c1", "qualification", priority=5)
    clock.advance(seconds=1)
    high = manager.enqueue("org1", "c2", "qualification", priority=10)
    clock.advance(seconds=1)
    low_later = manager.enqueue("org1", "c3", "qualification", priority=5)
    manager.enqueue("org2", "c4", "qualification", priority=99)

    ordered = [job.job_id for job in manager.list_by_org("org1")]

    assert ordered == [high.job_id, low.job_id, low_later.job_id]


def test_list_by_org_is_restartable_and_filtered(manager):
    first = manager.enqueue("org1", "c1", "qualification", agent_type="qualifier")
    manager.enqueue("org1", "c2", "closing", agent_type="closer")
    listing = manager.list_by_org("org1", JobFilter(agent_type="qualifier"))

    assert [job.job_id for job in listing] == [first.job_id]
    manager.dispatch("org1", first.job_id)
    again = list(listing)
    assert again[0].status == JobStatus.PROCESSING
    assert list(manager.list_by_org("org1", JobFilter(conversation_id="c2")))[0].agent_type == "closer"


def test_queue_status_counts_every_status(manager):
    first = manager.enqueue("org1", "c1", "qualification")
    manager.enqueue("org1", "c2", "qualification")
    manager.dispatch("org1", first.job_id)

    status = manager.queue_status("org1")

    assert status == {
        "pending": 1,
        "processing": 1,
        "completed": 0,
        "failed": 0,
        "cancelled": 0,
    }


def test_every_transition_is_audited(manager, stores):
    job = manager.enqueue("org1", "c1", "qualification")
    manager.dispatch("org1", job.job_id)
    manager.fail("org1", job.job_id, "boom")
    manager.retry("org1", job.job_id)

    actions = [entry.action for entry in reversed(stores[2].list_entries("org1", 100))]
    assert actions == ["job.enqueued", "job.dispatched", "job.failed", "job.retried"]
    failed = [entry for entry in stores[2].list_entries("org1", 100) if entry.action == "job.failed"][0]
    assert failed.before["status"] == JobStatus.PROCESSING
    assert failed.after["status"] == JobStatus.FAILED
