"""
Configuration loader for the action intelligence service.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./action_intel.db"          # postgresql:// | mysql:// | sqlite://
    store_backend: str = "memory"                      # "sql" | "memory"


@dataclass
class QueueConfig:
    worker_count: int = 5
    poll_interval_seconds: float = 5.0          # idle sleep between empty claims
    stuck_timeout_seconds: int = 300            # processing longer than this → failed
    reprocessing_debounce_seconds: int = 300    # delay applied to reprocessing items
    completed_retention_days: int = 7
    lease_wait_seconds: float = 30.0            # how long a worker waits on a busy opportunity
    maintenance_interval_seconds: int = 300
    reconcile_lease_ttl_seconds: int = 600      # opportunity lease held by a queue-driven pass


@dataclass
class IntelligenceSchedulerConfig:
    enabled: bool = True
    active_stale_days: int = 7
    closed_lost_stale_days: int = 90
    inter_item_delay_seconds: float = 2.0
    lease_ttl_seconds: int = 3300


@dataclass
class SendExecutorConfig:
    enabled: bool = True
    interval_seconds: int = 60
    batch_size: int = 50
    stale_sending_seconds: int = 600


@dataclass
class ServiceEndpointConfig:
    base_url: str = ""
    api_key: str = ""
    timeout_seconds: float = 30.0
    endpoints: dict[str, str] = field(default_factory=dict)


@dataclass
class Settings:
    app_name: str = "ActionIntel"
    debug: bool = False
    node_id: str = ""
    timezone: str = "UTC"
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    intelligence_scheduler: IntelligenceSchedulerConfig = field(default_factory=IntelligenceSchedulerConfig)
    send_executor: SendExecutorConfig = field(default_factory=SendExecutorConfig)
    generator: ServiceEndpointConfig = field(default_factory=ServiceEndpointConfig)
    messaging: ServiceEndpointConfig = field(default_factory=ServiceEndpointConfig)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def _endpoint_config(raw: dict[str, Any]) -> ServiceEndpointConfig:
    return ServiceEndpointConfig(
        base_url=raw.get("base_url", ""),
        api_key=raw.get("api_key", ""),
        timeout_seconds=float(raw.get("timeout_seconds", 30.0)),
        endpoints=raw.get("endpoints", {}),
    )


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "ACTION_INTEL_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)
        settings.node_id = raw.get("node_id", settings.node_id)
        settings.timezone = raw.get("timezone", settings.timezone)

        if "database" in raw:
            db = raw["database"]
            settings.database = DatabaseConfig(
                url=db.get("url", settings.database.url),
                store_backend=db.get("store_backend", settings.database.store_backend),
            )

        if "queue" in raw:
            q = raw["queue"]
            defaults = QueueConfig()
            settings.queue = QueueConfig(
                worker_count=q.get("worker_count", defaults.worker_count),
                poll_interval_seconds=q.get("poll_interval_seconds", defaults.poll_interval_seconds),
                stuck_timeout_seconds=q.get("stuck_timeout_seconds", defaults.stuck_timeout_seconds),
                reprocessing_debounce_seconds=q.get(
                    "reprocessing_debounce_seconds", defaults.reprocessing_debounce_seconds),
                completed_retention_days=q.get("completed_retention_days", defaults.completed_retention_days),
                lease_wait_seconds=q.get("lease_wait_seconds", defaults.lease_wait_seconds),
                maintenance_interval_seconds=q.get(
                    "maintenance_interval_seconds", defaults.maintenance_interval_seconds),
                reconcile_lease_ttl_seconds=q.get(
                    "reconcile_lease_ttl_seconds", defaults.reconcile_lease_ttl_seconds),
            )

        if "intelligence_scheduler" in raw:
            s = raw["intelligence_scheduler"]
            defaults = IntelligenceSchedulerConfig()
            settings.intelligence_scheduler = IntelligenceSchedulerConfig(
                enabled=s.get("enabled", defaults.enabled),
                active_stale_days=s.get("active_stale_days", defaults.active_stale_days),
                closed_lost_stale_days=s.get("closed_lost_stale_days", defaults.closed_lost_stale_days),
                inter_item_delay_seconds=s.get("inter_item_delay_seconds", defaults.inter_item_delay_seconds),
                lease_ttl_seconds=s.get("lease_ttl_seconds", defaults.lease_ttl_seconds),
            )

        if "send_executor" in raw:
            se = raw["send_executor"]
            defaults = SendExecutorConfig()
            settings.send_executor = SendExecutorConfig(
                enabled=se.get("enabled", defaults.enabled),
                interval_seconds=se.get("interval_seconds", defaults.interval_seconds),
                batch_size=se.get("batch_size", defaults.batch_size),
                stale_sending_seconds=se.get("stale_sending_seconds", defaults.stale_sending_seconds),
            )

        if "generator" in raw:
            settings.generator = _endpoint_config(raw["generator"])

        if "messaging" in raw:
            settings.messaging = _endpoint_config(raw["messaging"])

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings(settings: Settings = None) -> None:
    """Replace the cached settings (for testing)."""
    global _settings
    _settings = settings
