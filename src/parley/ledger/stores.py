from dataclasses import dataclass

from parley.config.settings import AppSettings

from .interfaces import AuditStore, GatingStore, JobsStore, PolicyStore, SlotStore, WebhookStore
from .memory_store import (
    MemoryAuditStore,
    MemoryGatingStore,
    MemoryJobsStore,
    MemoryPolicyStore,
    MemorySlotStore,
    MemoryWebhookStore,
)


@dataclass
class LedgerStores:
    jobs: JobsStore
    gating: GatingStore
    policies: PolicyStore
    slots: SlotStore
    audit: AuditStore
    webhooks: WebhookStore


def build_stores(settings: AppSettings) -> LedgerStores:
    if settings.storage_backend == "memory":
        return LedgerStores(
            jobs=MemoryJobsStore(),
            gating=MemoryGatingStore(),
            policies=MemoryPolicyStore(),
            slots=MemorySlotStore(),
            audit=MemoryAuditStore(),
            webhooks=MemoryWebhookStore(),
        )

    if settings.storage_backend != "table":
        raise RuntimeError(f"Unsupported storage backend: {settings.storage_backend}")

    if not settings.table_connection_string:
        raise RuntimeError("PARLEY_TABLE_CONNECTION is required for table storage")

    from azure.data.tables import TableServiceClient

    from .table_storage import (
        TableAuditStore,
        TableGatingStore,
        TableJobsStore,
        TablePolicyStore,
        TableSlotStore,
        TableWebhookStore,
    )

    service_client = TableServiceClient.from_connection_string(settings.table_connection_string)
    return LedgerStores(
        jobs=TableJobsStore(service_client, settings.jobs_table),
        gating=TableGatingStore(service_client, settings.gating_table),
        policies=TablePolicyStore(service_client, settings.policy_table),
        slots=TableSlotStore(service_client, settings.slots_table),
        audit=TableAuditStore(service_client, settings.audit_table),
        webhooks=TableWebhookStore(service_client, settings.webhook_table),
    )
