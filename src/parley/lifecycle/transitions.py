from typing import Dict, FrozenSet

from parley.ledger.models import JobStatus

TRANSITIONS: Dict[str, FrozenSet[str]] = {
    JobStatus.PENDING: frozenset({JobStatus.PROCESSING, JobStatus.CANCELLED}),
    JobStatus.PROCESSING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}),
    JobStatus.FAILED: frozenset({JobStatus.PENDING}),
    JobStatus.CANCELLED: frozenset({JobStatus.PENDING}),
    JobStatus.COMPLETED: frozenset(),
}

# A slot held by a job in one of these states belongs to a dispatch that is
# either in flight or running, so it must not be reclaimed.
SLOT_HOLDING_STATES = frozenset({JobStatus.PENDING, JobStatus.PROCESSING})

REASSIGNABLE_STATES = frozenset({JobStatus.PENDING, JobStatus.PROCESSING})


def can_transition(current: str, target: str) -> bool:
    return target in TRANSITIONS.get(current, frozenset())
