import json
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional
from uuid import uuid4

from azure.core import MatchConditions
from azure.core.exceptions import (
    AzureError,
    ResourceExistsError,
    ResourceModifiedError,
    ResourceNotFoundError,
)
from azure.data.tables import TableServiceClient, UpdateMode

from .errors import ConflictError, StoreUnavailable
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


@contextmanager
def _translate_errors() -> Iterator[None]:
    try:
        yield
    except (ResourceModifiedError, ResourceExistsError) as exc:
        raise ConflictError("etag mismatch") from exc
    except ResourceNotFoundError as exc:
        raise ConflictError("entity vanished during conditional update") from exc
    except AzureError as exc:
        raise StoreUnavailable(str(exc)) from exc


def _get_or_none(table, partition_key: str, row_key: str):
    try:
        return table.get_entity(partition_key=partition_key, row_key=row_key)
    except ResourceNotFoundError:
        return None
    except AzureError as exc:
        raise StoreUnavailable(str(exc)) from exc


def _etag_of(entity: Any) -> Optional[str]:
    metadata = getattr(entity, "metadata", None) or {}
    return metadata.get("etag") or entity.get("odata.etag")


def _compact(entity: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in entity.items() if value is not None}


def _dumps(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, sort_keys=True, default=str)


def _loads(value: Optional[str]) -> Any:
    if value is None:
        return None
    return json.loads(value)


def _job_entity(job: Job) -> Dict[str, Any]:
    return _compact(
        {
            "PartitionKey": job.org_id,
            "RowKey": job.job_id,
            "conversation_id": job.conversation_id,
            "job_type": job.job_type,
            "status": job.status,
            "priority": job.priority,
            "agent_type": job.agent_type,
            "created_at": job.created_at,
            "updated_at": job.updated_at,
            "result_json": _dumps(job.result),
            "error": job.error,
            "retry_count": job.retry_count,
            "failure_count": job.failure_count,
            "forced": job.forced,
            "source": job.source,
            "data_json": _dumps(job.data),
            "processing_started_at": job.processing_started_at,
            "completed_at": job.completed_at,
        }
    )


def _job_from_entity(entity: Dict[str, Any]) -> Job:
    return Job(
        job_id=entity["RowKey"],
        org_id=entity["PartitionKey"],
        conversation_id=entity["conversation_id"],
        job_type=entity["job_type"],
        status=entity["status"],
        priority=entity.get("priority", 0),
        agent_type=entity.get("agent_type"),
        created_at=entity["created_at"],
        updated_at=entity["updated_at"],
        result=_loads(entity.get("result_json")),
        error=entity.get("error"),
        retry_count=entity.get("retry_count", 0),
        failure_count=entity.get("failure_count", 0),
        forced=entity.get("forced", False),
        source=entity.get("source"),
        data=_loads(entity.get("data_json")),
        processing_started_at=entity.get("processing_started_at"),
        completed_at=entity.get("completed_at"),
        etag=_etag_of(entity),
    )


class TableJobsStore(JobsStore):
    def __init__(self, service_client: TableServiceClient, table_name: str) -> None:
        self._table = service_client.get_table_client(table_name)

    def create_job(self, job: Job) -> Job:
        with _translate_errors():
            metadata = self._table.create_entity(_job_entity(job))
        return replace(job, etag=metadata.get("etag"))

    def get_job(self, job_id: str, org_id: str) -> Optional[Job]:
        entity = _get_or_none(self._table, org_id, job_id)
        if entity is None:
            return None
        return _job_from_entity(entity)

    def update_job(self, job: Job, etag: str) -> Job:
        with _translate_errors():
            metadata = self._table.update_entity(
                _job_entity(job),
                mode=UpdateMode.REPLACE,
                etag=etag,
                match_condition=MatchConditions.IfNotModified,
            )
        return replace(job, etag=metadata.get("etag"))

    def query_jobs(self, org_id: str, job_filter: Optional[JobFilter] = None) -> List[Job]:
        job_filter = job_filter or JobFilter()
        clauses = ["PartitionKey eq @org"]
        parameters: Dict[str, Any] = {"org": org_id}
        if job_filter.status is not None:
            clauses.append("status eq @status")
            parameters["status"] = job_filter.status
        if job_filter.agent_type is not None:
            clauses.append("agent_type eq @agent")
            parameters["agent"] = job_filter.agent_type
        if job_filter.conversation_id is not None:
            clauses.append("conversation_id eq @conversation")
            parameters["conversation"] = job_filter.conversation_id
        with _translate_errors():
            entities = list(self._table.query_entities(" and ".join(clauses), parameters=parameters))
        return [_job_from_entity(entity) for entity in entities]


def _state_entity(state: GatingState) -> Dict[str, Any]:
    return _compact(
        {
            "PartitionKey": state.org_id,
            "RowKey": state.conversation_id,
            "ai_enabled": state.ai_enabled,
            "ai_muted_until": state.ai_muted_until,
            "last_interaction": state.last_interaction,
            "source": state.source,
            "created_at": state.created_at,
            "updated_at": state.updated_at,
        }
    )


def _state_from_entity(entity: Dict[str, Any]) -> GatingState:
    return GatingState(
        conversation_id=entity["RowKey"],
        org_id=entity["PartitionKey"],
        ai_enabled=entity.get("ai_enabled", True),
        ai_muted_until=entity.get("ai_muted_until"),
        last_interaction=entity.get("last_interaction"),
        source=entity.get("source"),
        created_at=entity["created_at"],
        updated_at=entity["updated_at"],
        etag=_etag_of(entity),
    )


class TableGatingStore(GatingStore):
    def __init__(self, service_client: TableServiceClient, table_name: str) -> None:
        self._table = service_client.get_table_client(table_name)

    def create_state(self, state: GatingState) -> GatingState:
        with _translate_errors():
            metadata = self._table.create_entity(_state_entity(state))
        return replace(state, etag=metadata.get("etag"))

    def get_state(self, org_id: str, conversation_id: str) -> Optional[GatingState]:
        entity = _get_or_none(self._table, org_id, conversation_id)
        if entity is None:
            return None
        return _state_from_entity(entity)

    def update_state(self, state: GatingState, etag: str) -> GatingState:
        with _translate_errors():
            metadata = self._table.update_entity(
                _state_entity(state),
                mode=UpdateMode.REPLACE,
                etag=etag,
                match_condition=MatchConditions.IfNotModified,
            )
        return replace(state, etag=metadata.get("etag"))

    def list_states(self, org_id: str) -> List[GatingState]:
        with _translate_errors():
            entities = list(self._table.query_entities("PartitionKey eq @org", parameters={"org": org_id}))
        return [_state_from_entity(entity) for entity in entities]


class TablePolicyStore(PolicyStore):
    def __init__(self, service_client: TableServiceClient, table_name: str) -> None:
        self._table = service_client.get_table_client(table_name)

    def get_policy(self, org_id: str) -> Optional[GatingPolicy]:
        entity = _get_or_none(self._table, org_id, "policy")
        if entity is None:
            return None
        return GatingPolicy(
            org_id=org_id,
            source_defaults=_loads(entity.get("source_defaults_json")) or {},
            fallback_enabled=entity.get("fallback_enabled", False),
            mute_window_minutes=entity.get("mute_window_minutes", 60),
            updated_at=entity.get("updated_at"),
        )

    def put_policy(self, policy: GatingPolicy) -> GatingPolicy:
        entity = _compact(
            {
                "PartitionKey": policy.org_id,
                "RowKey": "policy",
                "source_defaults_json": _dumps(policy.source_defaults),
                "fallback_enabled": policy.fallback_enabled,
                "mute_window_minutes": policy.mute_window_minutes,
                "updated_at": policy.updated_at,
            }
        )
        with _translate_errors():
            self._table.upsert_entity(entity, mode=UpdateMode.REPLACE)
        return policy


class TableSlotStore(SlotStore):
    def __init__(self, service_client: TableServiceClient, table_name: str, max_attempts: int = 5) -> None:
        self._table = service_client.get_table_client(table_name)
        self._max_attempts = max_attempts

    def holder(self, org_id: str, conversation_id: str) -> Optional[str]:
        entity = _get_or_none(self._table, org_id, conversation_id)
        if entity is None:
            return None
        return entity.get("job_id") or None

    def get_slot(self, org_id: str, conversation_id: str) -> Optional[ConversationSlot]:
        entity = _get_or_none(self._table, org_id, conversation_id)
        if entity is None:
            return None
        return ConversationSlot(
            org_id=org_id,
            conversation_id=conversation_id,
            job_id=entity.get("job_id") or None,
            updated_at=entity.get("updated_at"),
            etag=_etag_of(entity),
        )

    def try_acquire(self, org_id: str, conversation_id: str, job_id: str) -> bool:
        for _ in range(self._max_attempts):
            entity = _get_or_none(self._table, org_id, conversation_id)
            if entity is not None and entity.get("job_id") and entity["job_id"] != job_id:
                return False
            # Re-acquiring rewrites the row so a pending conditional release loses.
            try:
                with _translate_errors():
                    if entity is None:
                        self._table.create_entity(self._slot_entity(org_id, conversation_id, job_id))
                    else:
                        self._replace(entity, org_id, conversation_id, job_id)
                return True
            except ConflictError:
                continue
        raise ConflictError(f"failed to acquire slot for {conversation_id} after retries")

    def release(self, org_id: str, conversation_id: str, job_id: str) -> None:
        for _ in range(self._max_attempts):
            entity = _get_or_none(self._table, org_id, conversation_id)
            if entity is None or entity.get("job_id") != job_id:
                return
            try:
                with _translate_errors():
                    self._replace(entity, org_id, conversation_id, "")
                return
            except ConflictError:
                continue
        raise ConflictError(f"failed to release slot for {conversation_id} after retries")

    def release_if(self, org_id: str, conversation_id: str, job_id: str, etag: str) -> bool:
        entity = _get_or_none(self._table, org_id, conversation_id)
        if entity is None or entity.get("job_id") != job_id or _etag_of(entity) != etag:
            return False
        try:
            with _translate_errors():
                self._replace(entity, org_id, conversation_id, "")
        except ConflictError:
            return False
        return True

    @staticmethod
    def _slot_entity(org_id: str, conversation_id: str, job_id: str) -> Dict[str, Any]:
        return {
            "PartitionKey": org_id,
            "RowKey": conversation_id,
            "job_id": job_id,
            "updated_at": datetime.now(timezone.utc).isoformat(),
        }

    def _replace(self, entity: Any, org_id: str, conversation_id: str, job_id: str) -> None:
        self._table.update_entity(
            self._slot_entity(org_id, conversation_id, job_id),
            mode=UpdateMode.REPLACE,
            etag=_etag_of(entity),
            match_condition=MatchConditions.IfNotModified,
        )


def _log_row_key(created_at: str) -> str:
    return f"{created_at}#{uuid4().hex[:8]}"


class TableAuditStore(AuditStore):
    def __init__(self, service_client: TableServiceClient, table_name: str) -> None:
        self._table = service_client.get_table_client(table_name)

    def append(self, entry: AuditEntry) -> AuditEntry:
        entity = _compact(
            {
                "PartitionKey": entry.org_id,
                "RowKey": _log_row_key(entry.created_at),
                "audit_id": entry.audit_id,
                "actor": entry.actor,
                "action": entry.action,
                "target": entry.target,
                "before_json": _dumps(entry.before),
                "after_json": _dumps(entry.after),
                "created_at": entry.created_at,
            }
        )
        with _translate_errors():
            self._table.create_entity(entity)
        return entry

    def list_entries(self, org_id: str, limit: int) -> List[AuditEntry]:
        with _translate_errors():
            entities = list(self._table.query_entities("PartitionKey eq @org", parameters={"org": org_id}))
        entries = [
            AuditEntry(
                audit_id=entity["audit_id"],
                org_id=org_id,
                actor=entity.get("actor"),
                action=entity["action"],
                target=entity["target"],
                before=_loads(entity.get("before_json")),
                after=_loads(entity.get("after_json")),
                created_at=entity["created_at"],
            )
            for entity in entities
        ]
        entries.sort(key=lambda entry: entry.created_at, reverse=True)
        return entries[:limit]


class TableWebhookStore(WebhookStore):
    def __init__(self, service_client: TableServiceClient, table_name: str) -> None:
        self._table = service_client.get_table_client(table_name)

    def append(self, delivery: WebhookDelivery) -> WebhookDelivery:
        entity = _compact(
            {
                "PartitionKey": delivery.org_id,
                "RowKey": _log_row_key(delivery.created_at),
                "delivery_id": delivery.delivery_id,
                "source": delivery.source,
                "event_id": delivery.event_id,
                "status": delivery.status,
                "payload_json": _dumps(delivery.payload),
                "error": delivery.error,
                "created_at": delivery.created_at,
            }
        )
        with _translate_errors():
            self._table.create_entity(entity)
        return delivery

    def list_deliveries(self, org_id: str, source: Optional[str], limit: int) -> List[WebhookDelivery]:
        query = "PartitionKey eq @org"
        parameters: Dict[str, Any] = {"org": org_id}
        if source is not None:
            query += " and source eq @source"
            parameters["source"] = source
        with _translate_errors():
            entities = list(self._table.query_entities(query, parameters=parameters))
        deliveries = [
            WebhookDelivery(
                delivery_id=entity["delivery_id"],
                org_id=org_id,
                source=entity["source"],
                event_id=entity.get("event_id"),
                status=entity["status"],
                payload=_loads(entity.get("payload_json")),
                error=entity.get("error"),
                created_at=entity["created_at"],
            )
            for entity in entities
        ]
        deliveries.sort(key=lambda delivery: delivery.created_at, reverse=True)
        return deliveries[:limit]
