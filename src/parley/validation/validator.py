import json
from pathlib import Path
from typing import Any, Dict, Optional

import jsonschema

from parley.config.paths import contracts_root
from parley.ledger.errors import ValidationError


class SchemaValidator:
    def __init__(self, contracts_dir: Optional[Path] = None):
        self.contracts_dir = contracts_dir or contracts_root()
        self._cache: Dict[str, Dict[str, Any]] = {}

    def validate_job_request(self, body: Dict[str, Any]) -> None:
        self._validate(body, "job-request.v1.schema.json")

    def validate_conversation_action(self, body: Dict[str, Any]) -> None:
        self._validate(body, "conversation-action.v1.schema.json")

    def validate_gating_policy(self, body: Dict[str, Any]) -> None:
        self._validate(body, "gating-policy.v1.schema.json")

    def validate_inbound_webhook(self, body: Dict[str, Any]) -> None:
        self._validate(body, "inbound-webhook.v1.schema.json")

    def validate_inbound_message(self, body: Dict[str, Any]) -> None:
        self._validate(body, "inbound-message.v1.schema.json")

    def _load_schema(self, name: str) -> Dict[str, Any]:
        if name in self._cache:
            return self._cache[name]
        path = self.contracts_dir / name
        with path.open("r", encoding="utf-8") as handle:
            schema = json.load(handle)
        self._cache[name] = schema
        return schema

    def _validate(self, instance: Dict[str, Any], schema_name: str) -> None:
        schema = self._load_schema(schema_name)
        try:
            jsonschema.validate(instance=instance, schema=schema)
        except jsonschema.ValidationError as exc:
            raise ValidationError(exc.message) from exc
