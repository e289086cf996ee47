from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Optional


class JobStatus:
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    ALL = (PENDING, PROCESSING, COMPLETED, FAILED, CANCELLED)


class DeliveryStatus:
    SUCCESS = "success"
    ERROR = "error"
    PENDING = "pending"

    ALL = (SUCCESS, ERROR, PENDING)


@dataclass
class Job:
    job_id: str
    org_id: str
    conversation_id: str
    job_type: str
    status: str
    priority: int
    agent_type: Optional[str]
    created_at: str
    updated_at: str
    result: Any = None
    error: Optional[str] = None
    retry_count: int = 0
    failure_count: int = 0
    forced: bool = False
    source: Optional[str] = None
    data: Optional[Dict[str, Any]] = None
    processing_started_at: Optional[str] = None
    completed_at: Optional[str] = None
    etag: Optional[str] = None


@dataclass
class JobFilter:
    status: Optional[str] = None
    agent_type: Optional[str] = None
    conversation_id: Optional[str] = None

    def matches(self, job: Job) -> bool:
        if self.status is not None and job.status != self.status:
            return False
        if self.agent_type is not None and job.agent_type != self.agent_type:
            return False
        if self.conversation_id is not None and job.conversation_id != self.conversation_id:
            return False
        return True


@dataclass
class GatingState:
    conversation_id: str
    org_id: str
    ai_enabled: bool
    ai_muted_until: Optional[str]
    last_interaction: Optional[str]
    source: Optional[str]
    created_at: str
    updated_at: str
    etag: Optional[str] = None


@dataclass
class GatingPolicy:
    org_id: str
    source_defaults: Dict[str, bool] = field(default_factory=dict)
    fallback_enabled: bool = False
    mute_window_minutes: int = 60
    updated_at: Optional[str] = None

    def default_for(self, source: Optional[str]) -> bool:
        if source is None:
            return self.fallback_enabled
        return self.source_defaults.get(source.lower(), self.fallback_enabled)


@dataclass
class ConversationSlot:
    org_id: str
    conversation_id: str
    job_id: Optional[str]
    updated_at: str
    etag: Optional[str] = None


@dataclass
class AuditEntry:
    audit_id: str
    org_id: str
    actor: Optional[str]
    action: str
    target: str
    before: Any
    after: Any
    created_at: str


@dataclass
class WebhookDelivery:
    delivery_id: str
    org_id: str
    source: str
    event_id: Optional[str]
    status: str
    payload: Any
    error: Optional[str]
    created_at: str


@dataclass
class ChangeEvent:
    entity_type: str
    entity_id: str
    org_id: str
    new_state: Any
    timestamp: str


def public_view(record: Any) -> Dict[str, Any]:
    data = asdict(record)
    data.pop("etag", None)
    return data
