import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union
from uuid import uuid4

from parley.audit.channel import EventChannel, Subscription, build_event_channel
from parley.audit.publisher import AuditPublisher
from parley.config.catalog import AgentCatalog
from parley.config.settings import AppSettings
from parley.gating.engine import GatingDecision, GatingEngine
from parley.ledger.errors import AiDisabled, CoreError, ValidationError
from parley.ledger.models import (
    AuditEntry,
    DeliveryStatus,
    GatingPolicy,
    GatingState,
    Job,
    JobFilter,
    WebhookDelivery,
)
from parley.ledger.stores import LedgerStores, build_stores
from parley.lifecycle.manager import JobLifecycleManager, JobListing
from parley.shared.logging import get_logger, log_event


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class WebhookOutcome:
    delivery: WebhookDelivery
    gating: GatingState
    job: Optional[Job] = None
    skipped: Optional[str] = None


class Orchestrator:
    """Entry point for routes and webhook handlers.

    Gating is always consulted before a lifecycle mutation so that a job
    cannot be dispatched while AI is being switched off for its conversation.
    """

    def __init__(
        self,
        lifecycle: JobLifecycleManager,
        gating: GatingEngine,
        stores: LedgerStores,
        channel: EventChannel,
        catalog: AgentCatalog,
        clock: Callable[[], datetime] = _now,
    ):
        self.lifecycle = lifecycle
        self.gating = gating
        self._stores = stores
        self._channel = channel
        self._catalog = catalog
        self._clock = clock
        self._logger = get_logger("parley.orchestrator")

    # Jobs

    def enqueue(
        self,
        org_id: str,
        conversation_id: str,
        job_type: str,
        priority: int = 0,
        agent_type: Optional[str] = None,
        source: Optional[str] = None,
        force_agent: bool = False,
        data: Optional[Dict[str, Any]] = None,
        actor: Optional[str] = None,
    ) -> Job:
        spec = self._catalog.validate_job_type(job_type)
        if agent_type is not None:
            self._catalog.validate_agent_type(agent_type)
        if force_agent:
            if agent_type is None:
                raise ValidationError("force_agent requires an agent_type")
        else:
            decision = self.gating.evaluate(org_id, conversation_id, source)
            if not decision.enabled:
                raise AiDisabled(conversation_id, decision.reason)
        return self.lifecycle.enqueue(
            org_id,
            conversation_id,
            job_type,
            priority=priority,
            agent_type=agent_type or spec.default_agent,
            forced=force_agent,
            source=source,
            data=data,
            actor=actor,
        )

    def dispatch(self, org_id: str, job_id: str, actor: Optional[str] = None) -> Job:
        job = self.lifecycle.get_job(org_id, job_id)
        if not job.forced:
            decision = self.gating.evaluate(org_id, job.conversation_id, job.source)
            if not decision.enabled:
                raise AiDisabled(job.conversation_id, decision.reason)
        return self.lifecycle.dispatch(org_id, job_id, actor=actor)

    def complete(self, org_id: str, job_id: str, result: Any = None, actor: Optional[str] = None) -> Job:
        return self.lifecycle.complete(org_id, job_id, result, actor=actor)

    def fail(self, org_id: str, job_id: str, error: str, actor: Optional[str] = None) -> Job:
        return self.lifecycle.fail(org_id, job_id, error, actor=actor)

    def cancel(self, org_id: str, job_id: str, actor: Optional[str] = None) -> Job:
        return self.lifecycle.cancel(org_id, job_id, actor=actor)

    def retry(self, org_id: str, job_id: str, actor: Optional[str] = None) -> Job:
        return self.lifecycle.retry(org_id, job_id, actor=actor)

    def reassign(self, org_id: str, job_id: str, agent_type: str, actor: Optional[str] = None) -> Job:
        self._catalog.validate_agent_type(agent_type)
        return self.lifecycle.reassign(org_id, job_id, agent_type, actor=actor)

    def get_job(self, org_id: str, job_id: str) -> Job:
        return self.lifecycle.get_job(org_id, job_id)

    def list_jobs(self, org_id: str, job_filter: Optional[JobFilter] = None) -> JobListing:
        if job_filter is not None and job_filter.agent_type is not None:
            self._catalog.validate_agent_type(job_filter.agent_type)
        return self.lifecycle.list_by_org(org_id, job_filter)

    def queue_status(self, org_id: str) -> Dict[str, int]:
        return self.lifecycle.queue_status(org_id)

    # Conversation gating

    def on_inbound_message(
        self,
        org_id: str,
        conversation_id: str,
        source: Optional[str] = None,
        at: Optional[Union[str, datetime]] = None,
    ) -> GatingState:
        return self.gating.on_inbound_message(org_id, conversation_id, source=source, at=at)

    def is_ai_enabled(self, org_id: str, conversation_id: str, source: Optional[str] = None) -> bool:
        return self.gating.is_ai_enabled(org_id, conversation_id, source)

    def get_gating_state(self, org_id: str, conversation_id: str) -> GatingState:
        return self.gating.get_state(org_id, conversation_id)

    def list_gating_states(self, org_id: str) -> List[Tuple[GatingState, GatingDecision]]:
        return self.gating.list_states(org_id)

    def get_gating_decision(
        self, org_id: str, conversation_id: str, source: Optional[str] = None
    ) -> GatingDecision:
        return self.gating.evaluate(org_id, conversation_id, source)

    def set_ai_enabled(
        self, org_id: str, conversation_id: str, enabled: bool, actor: Optional[str] = None
    ) -> GatingState:
        return self.gating.set_ai_enabled(org_id, conversation_id, enabled, actor=actor)

    def mute_for(
        self,
        org_id: str,
        conversation_id: str,
        duration_minutes: Optional[int] = None,
        actor: Optional[str] = None,
    ) -> GatingState:
        return self.gating.mute_for(org_id, conversation_id, duration_minutes, actor=actor)

    def mute_until(
        self, org_id: str, conversation_id: str, until: Union[str, datetime], actor: Optional[str] = None
    ) -> GatingState:
        return self.gating.mute_until(org_id, conversation_id, until, actor=actor)

    def get_gating_policy(self, org_id: str) -> GatingPolicy:
        return self.gating.get_policy(org_id)

    def put_gating_policy(
        self,
        org_id: str,
        source_defaults: Dict[str, bool],
        fallback_enabled: bool = False,
        mute_window_minutes: Optional[int] = None,
        actor: Optional[str] = None,
    ) -> GatingPolicy:
        return self.gating.put_policy(
            org_id,
            source_defaults,
            fallback_enabled=fallback_enabled,
            mute_window_minutes=mute_window_minutes,
            actor=actor,
        )

    def apply_conversation_action(
        self,
        org_id: str,
        conversation_id: str,
        action: Dict[str, Any],
        actor: Optional[str] = None,
    ) -> Union[GatingState, Job]:
        action_type = action.get("type")
        if action_type == "toggle_ai":
            return self.set_ai_enabled(org_id, conversation_id, bool(action["enabled"]), actor=actor)
        if action_type == "mute_for":
            return self.mute_for(org_id, conversation_id, action.get("minutes"), actor=actor)
        if action_type == "mute_until":
            return self.mute_until(org_id, conversation_id, action["until"], actor=actor)
        if action_type == "force_agent":
            agent_type = self._catalog.validate_agent_type(action["agent_type"])
            job_type = action.get("job_type") or self._job_type_for_agent(agent_type)
            return self.enqueue(
                org_id,
                conversation_id,
                job_type,
                priority=action.get("priority", 0),
                agent_type=agent_type,
                force_agent=True,
                actor=actor,
            )
        raise ValidationError(f"unsupported conversation action: {action_type}")

    # Observability

    def record_webhook_delivery(
        self,
        org_id: str,
        source: str,
        status: str,
        payload: Any = None,
        event_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> WebhookDelivery:
        if status not in DeliveryStatus.ALL:
            raise ValidationError(f"unsupported delivery status: {status}")
        delivery = WebhookDelivery(
            delivery_id=uuid4().hex,
            org_id=org_id,
            source=source,
            event_id=event_id,
            status=status,
            payload=payload,
            error=error,
            created_at=self._clock().isoformat(),
        )
        self._stores.webhooks.append(delivery)
        log_event(
            self._logger,
            "webhook.recorded",
            level=logging.WARNING if status == DeliveryStatus.ERROR else logging.INFO,
            org_id=org_id,
            source=source,
            event_id=event_id,
            status=status,
        )
        return delivery

    def handle_inbound_webhook(
        self, org_id: str, source: str, body: Dict[str, Any], actor: Optional[str] = None
    ) -> WebhookOutcome:
        conversation_id = body["conversation_id"]
        event_id = body.get("event_id")
        try:
            state = self.on_inbound_message(org_id, conversation_id, source=source, at=body.get("message_at"))
            job = None
            skipped = None
            if body.get("job_type"):
                try:
                    job = self.enqueue(
                        org_id,
                        conversation_id,
                        body["job_type"],
                        priority=body.get("priority", 0),
                        agent_type=body.get("agent_type"),
                        source=source,
                        data=body.get("payload"),
                        actor=actor,
                    )
                except AiDisabled as exc:
                    skipped = exc.reason
        except CoreError as exc:
            self.record_webhook_delivery(
                org_id, source, DeliveryStatus.ERROR, payload=body, event_id=event_id, error=str(exc)
            )
            raise
        delivery = self.record_webhook_delivery(
            org_id, source, DeliveryStatus.SUCCESS, payload=body, event_id=event_id
        )
        return WebhookOutcome(delivery=delivery, gating=state, job=job, skipped=skipped)

    def list_webhook_deliveries(
        self, org_id: str, source: Optional[str] = None, limit: int = 50
    ) -> List[WebhookDelivery]:
        return self._stores.webhooks.list_deliveries(org_id, source, limit)

    def list_audit(self, org_id: str, limit: int = 100) -> List[AuditEntry]:
        return self._stores.audit.list_entries(org_id, limit)

    def subscribe(self, org_id: str) -> Subscription:
        return self._channel.subscribe(org_id)

    def _job_type_for_agent(self, agent_type: str) -> str:
        for job_type in self._catalog.job_types:
            spec = self._catalog.resolve(job_type)
            if spec is not None and spec.default_agent == agent_type:
                return job_type
        raise ValidationError(f"no job_type is served by agent {agent_type}")


def build_orchestrator(
    settings: Optional[AppSettings] = None,
    stores: Optional[LedgerStores] = None,
    channel: Optional[EventChannel] = None,
    catalog: Optional[AgentCatalog] = None,
    clock: Callable[[], datetime] = _now,
) -> Orchestrator:
    settings = settings or AppSettings.from_env()
    stores = stores or build_stores(settings)
    channel = channel or build_event_channel(settings)
    if catalog is None:
        catalog = AgentCatalog(Path(settings.catalog_path) if settings.catalog_path else None)
    audit = AuditPublisher(stores.audit, channel, clock=clock)
    lifecycle = JobLifecycleManager(
        stores.jobs,
        stores.slots,
        audit,
        max_conflict_retries=settings.max_conflict_retries,
        clock=clock,
    )
    gating = GatingEngine(
        stores.gating,
        stores.policies,
        audit,
        default_policy=GatingPolicy(
            org_id="",
            source_defaults=dict(settings.default_source_defaults),
            fallback_enabled=settings.default_fallback_enabled,
            mute_window_minutes=settings.default_mute_window_minutes,
        ),
        max_conflict_retries=settings.max_conflict_retries,
        clock=clock,
    )
    return Orchestrator(lifecycle, gating, stores, channel, catalog, clock=clock)
