from dataclasses import dataclass, field
import os
from typing import Dict, Optional


def _parse_source_defaults(raw: str) -> Dict[str, bool]:
    defaults: Dict[str, bool] = {}
    for item in raw.split(","):
        item = item.strip()
        if not item:
            continue
        source, _, flag = item.partition("=")
        defaults[source.strip().lower()] = flag.strip().lower() in {"1", "true", "on", "yes"}
    return defaults


@dataclass
class AppSettings:
    storage_backend: str = "memory"
    table_connection_string: Optional[str] = None
    jobs_table: str = "jobs"
    gating_table: str = "conversation-gating"
    policy_table: str = "gating-policy"
    slots_table: str = "conversation-slots"
    audit_table: str = "audit-log"
    webhook_table: str = "webhook-deliveries"
    event_backend: str = "memory"
    service_bus_connection: Optional[str] = None
    event_topic: str = "parley-events"
    event_subscription: Optional[str] = None
    default_source_defaults: Dict[str, bool] = field(
        default_factory=lambda: {"hr": True, "inbound": True, "external": False}
    )
    default_fallback_enabled: bool = False
    default_mute_window_minutes: int = 60
    max_conflict_retries: int = 3
    catalog_path: Optional[str] = None
    sweep_interval_seconds: float = 60.0

    @classmethod
    def from_env(cls) -> "AppSettings":
        source_defaults = os.getenv("PARLEY_GATING_SOURCE_DEFAULTS")
        return cls(
            storage_backend=os.getenv("PARLEY_STORAGE_BACKEND", "memory"),
            table_connection_string=os.getenv("PARLEY_TABLE_CONNECTION"),
            jobs_table=os.getenv("PARLEY_JOBS_TABLE", "jobs"),
            gating_table=os.getenv("PARLEY_GATING_TABLE", "conversation-gating"),
            policy_table=os.getenv("PARLEY_POLICY_TABLE", "gating-policy"),
            slots_table=os.getenv("PARLEY_SLOTS_TABLE", "conversation-slots"),
            audit_table=os.getenv("PARLEY_AUDIT_TABLE", "audit-log"),
            webhook_table=os.getenv("PARLEY_WEBHOOK_TABLE", "webhook-deliveries"),
            event_backend=os.getenv("PARLEY_EVENT_BACKEND", "memory"),
            service_bus_connection=os.getenv("PARLEY_SERVICEBUS_CONNECTION"),
            event_topic=os.getenv("PARLEY_EVENT_TOPIC", "parley-events"),
            event_subscription=os.getenv("PARLEY_EVENT_SUBSCRIPTION"),
            default_source_defaults=(
                _parse_source_defaults(source_defaults)
                if source_defaults is not None
                else {"hr": True, "inbound": True, "external": False}
            ),
            default_fallback_enabled=os.getenv("PARLEY_GATING_FALLBACK_ENABLED", "false").lower() == "true",
            default_mute_window_minutes=int(os.getenv("PARLEY_MUTE_WINDOW_MINUTES", "60")),
            max_conflict_retries=int(os.getenv("PARLEY_MAX_CONFLICT_RETRIES", "3")),
            catalog_path=os.getenv("PARLEY_CATALOG_PATH"),
            sweep_interval_seconds=float(os.getenv("PARLEY_SWEEP_INTERVAL", "60.0")),
        )
