import json

import pytest

from parley.config.catalog import AgentCatalog
from parley.ledger.errors import ValidationError


def test_shipped_catalog_resolves_default_agents():
    catalog = AgentCatalog()

    assert "qualification" in catalog.job_types
    assert catalog.resolve("closing").default_agent == "closer"
    assert catalog.resolve("astrology") is None


def test_validation_rejects_unknown_values():
    catalog = AgentCatalog()

    with pytest.raises(ValidationError):
        catalog.validate_job_type("astrology")
    with pytest.raises(ValidationError):
        catalog.validate_agent_type("oracle")
    assert catalog.validate_agent_type("pooling") == "pooling"


def test_custom_catalog_path(tmp_path):
    path = tmp_path / "catalog.json"
    path.write_text(
        json.dumps({"agent_types": ["triage"], "job_types": [{"job_type": "triage", "default_agent": "triage"}]}),
        encoding="utf-8",
    )

    catalog = AgentCatalog(path)

    assert catalog.job_types == ["triage"]
    assert catalog.agent_types == ["triage"]


def test_catalog_rejects_unknown_default_agent(tmp_path):
    path = tmp_path / "catalog.json"
    path.write_text(
        json.dumps({"agent_types": [], "job_types": [{"job_type": "triage", "default_agent": "ghost"}]}),
        encoding="utf-8",
    )

    with pytest.raises(ValueError):
        AgentCatalog(path)
