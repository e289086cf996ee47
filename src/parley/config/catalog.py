import json
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from parley.config.paths import catalog_path
from parley.ledger.errors import ValidationError


@dataclass
class JobTypeSpec:
    job_type: str
    default_agent: Optional[str]


class AgentCatalog:
    """Closed sets of job and agent types accepted by one deployment."""

    def __init__(self, registry_path: Optional[Path] = None):
        self.registry_path = registry_path or catalog_path()
        self._job_types: Dict[str, JobTypeSpec] = {}
        self._agent_types: List[str] = []
        self._load()

    @property
    def job_types(self) -> List[str]:
        return list(self._job_types)

    @property
    def agent_types(self) -> List[str]:
        return list(self._agent_types)

    def resolve(self, job_type: str) -> Optional[JobTypeSpec]:
        return self._job_types.get(job_type)

    def validate_job_type(self, job_type: str) -> JobTypeSpec:
        spec = self.resolve(job_type)
        if spec is None:
            raise ValidationError(f"unsupported job_type: {job_type}")
        return spec

    def validate_agent_type(self, agent_type: str) -> str:
        if agent_type not in self._agent_types:
            raise ValidationError(f"unsupported agent_type: {agent_type}")
        return agent_type

    def _load(self) -> None:
        with self.registry_path.open("r", encoding="utf-8") as handle:
            data = json.load(handle)
        self._agent_types = list(data.get("agent_types", []))
        for entry in data.get("job_types", []):
            default_agent = entry.get("default_agent")
            if default_agent is not None and default_agent not in self._agent_types:
                raise ValueError(
                    f"job_type {entry['job_type']} references unknown agent {default_agent}"
                )
            self._job_types[entry["job_type"]] = JobTypeSpec(
                job_type=entry["job_type"],
                default_agent=default_agent,
            )
