from typing import Any, Dict, Tuple

import pytest
from azure.core.exceptions import (
    ResourceExistsError,
    ResourceModifiedError,
    ResourceNotFoundError,
    ServiceRequestError,
)

from parley.ledger.errors import ConflictError, StoreUnavailable
from parley.ledger.models import GatingState, Job, JobFilter
from parley.ledger.table_storage import TableGatingStore, TableJobsStore, TableSlotStore


class FakeTableClient:
    def __init__(self) -> None:
        self.rows: Dict[Tuple[str, str], Tuple[Dict[str, Any], int]] = {}
        self.offline = False

    def _check(self) -> None:
        if self.offline:
            raise ServiceRequestError("connection refused")

    def get_entity(self, partition_key: str, row_key: str):
        self._check()
        row = self.rows.get((partition_key, row_key))
        if row is None:
            raise ResourceNotFoundError("missing")
        entity, version = row
        return {**entity, "odata.etag": str(version)}

    def create_entity(self, entity):
        self._check()
        key = (entity["PartitionKey"], entity["RowKey"])
        if key in self.rows:
            raise ResourceExistsError("exists")
        self.rows[key] = (dict(entity), 1)
        return {"etag": "1"}

    def update_entity(self, entity, mode=None, etag=None, match_condition=None):
        self._check()
        key = (entity["PartitionKey"], entity["RowKey"])
        row = self.rows.get(key)
        if row is None:
            raise ResourceNotFoundError("missing")
        if etag is not None and str(row[1]) != etag:
            raise ResourceModifiedError("precondition failed")
        version = row[1] + 1
        self.rows[key] = (dict(entity), version)
        return {"etag": str(version)}

    def query_entities(self, query_filter: str, parameters=None):
        self._check()
        parameters = parameters or {}
        clauses = []
        for clause in query_filter.split(" and "):
            field, _, placeholder = clause.split(" ")
            clauses.append((field, parameters[placeholder.lstrip("@")]))
        for (partition_key, row_key), (entity, version) in list(self.rows.items()):
            if all(entity.get(field) == value for field, value in clauses):
                yield {**entity, "odata.etag": str(version)}


class FakeServiceClient:
    def __init__(self) -> None:
        self.tables: Dict[str, FakeTableClient] = {}

    def get_table_client(self, table_name: str) -> FakeTableClient:
        return self.tables.setdefault(table_name, FakeTableClient())


def _job() -> Job:
    return Job(
        job_id="j1",
        org_id="org1",
        conversation_id="c1",
        job_type="qualification",
        status="pending",
        priority=4,
        agent_type="qualifier",
        created_at="2024-03-01T00:00:00+00:00",
        updated_at="2024-03-01T00:00:00+00:00",
        data={"text": "hi"},
    )


def test_job_round_trip_through_entities():
    store = TableJobsStore(FakeServiceClient(), "jobs")
    created = store.create_job(_job())

    loaded = store.get_job("j1", "org1")

    assert loaded.etag == created.etag == "1"
    assert loaded.data == {"text": "hi"}
    assert loaded.priority == 4
    assert store.get_job("j1", "org2") is None
    assert [job.job_id for job in store.query_jobs("org1", JobFilter(status="pending"))] == ["j1"]
    assert store.query_jobs("org1", JobFilter(status="failed")) == []


def test_stale_etag_maps_to_conflict():
    store = TableJobsStore(FakeServiceClient(), "jobs")
    created = store.create_job(_job())
    created.status = "processing"
    store.update_job(created, created.etag)

    with pytest.raises(ConflictError):
        store.update_job(created, created.etag)


def test_duplicate_create_maps_to_conflict():
    store = TableGatingStore(FakeServiceClient(), "gating")
    state = GatingState(
        conversation_id="c1",
        org_id="org1",
        ai_enabled=False,
        ai_muted_until=None,
        last_interaction=None,
        source="external",
        created_at="2024-03-01T00:00:00+00:00",
        updated_at="2024-03-01T00:00:00+00:00",
    )
    store.create_state(state)

    with pytest.raises(ConflictError):
        store.create_state(state)
    assert store.get_state("org1", "c1").ai_enabled is False


def test_transport_failure_maps_to_store_unavailable():
    service = FakeServiceClient()
    store = TableJobsStore(service, "jobs")
    service.tables["jobs"].offline = True

    with pytest.raises(StoreUnavailable):
        store.get_job("j1", "org1")
    with pytest.raises(StoreUnavailable):
        store.create_job(_job())


def test_slot_acquire_and_release():
    slots = TableSlotStore(FakeServiceClient(), "slots")

    assert slots.try_acquire("org1", "c1", "j1") is True
    assert slots.try_acquire("org1", "c1", "j2") is False
    slots.release("org1", "c1", "j2")
    assert slots.holder("org1", "c1") == "j1"
    slots.release("org1", "c1", "j1")
    assert slots.holder("org1", "c1") is None
    assert slots.try_acquire("org1", "c1", "j2") is True


def test_slot_conditional_release_checks_version():
    slots = TableSlotStore(FakeServiceClient(), "slots")
    slots.try_acquire("org1", "c1", "j1")
    observed = slots.get_slot("org1", "c1")

    assert observed.job_id == "j1"
    assert slots.try_acquire("org1", "c1", "j1") is True
    assert slots.release_if("org1", "c1", "j1", observed.etag) is False
    assert slots.holder("org1", "c1") == "j1"

    current = slots.get_slot("org1", "c1")
    assert slots.release_if("org1", "c1", "j1", current.etag) is True
    assert slots.get_slot("org1", "c1").job_id is None
    assert slots.get_slot("org1", "c2") is None
