"""Tests for YAML configuration loading."""
from pathlib import Path

import pytest

from config.settings import Settings, get_settings, load_settings, reset_settings


@pytest.fixture(autouse=True)
def _clear_cached_settings():
    yield
    reset_settings(None)


def _write(tmp_path: Path, text: str) -> str:
    path = tmp_path / "settings.yaml"
    path.write_text(text)
    return str(path)


class TestLoadSettings:
    def test_missing_file_gives_defaults(self, tmp_path):
        settings = load_settings(str(tmp_path / "absent.yaml"))

        assert settings.database.store_backend == "memory"
        assert settings.queue.worker_count == 5
        assert settings.intelligence_scheduler.active_stale_days == 7
        assert settings.intelligence_scheduler.closed_lost_stale_days == 90
        assert settings.send_executor.stale_sending_seconds == 600

    def test_partial_sections_keep_defaults(self, tmp_path):
        path = _write(tmp_path, """
timezone: "Pacific/Auckland"
queue:
  worker_count: 2
intelligence_scheduler:
  enabled: false
""")
        settings = load_settings(path)

        assert settings.timezone == "Pacific/Auckland"
        assert settings.queue.worker_count == 2
        assert settings.queue.stuck_timeout_seconds == 300
        assert settings.queue.reconcile_lease_ttl_seconds == 600
        assert settings.intelligence_scheduler.enabled is False
        assert settings.intelligence_scheduler.lease_ttl_seconds == 3300

    def test_reconcile_lease_ttl_configurable(self, tmp_path):
        path = _write(tmp_path, """
queue:
  reconcile_lease_ttl_seconds: 1800
""")
        settings = load_settings(path)

        assert settings.queue.reconcile_lease_ttl_seconds == 1800
        assert settings.queue.lease_wait_seconds == 30.0

    def test_env_substitution(self, tmp_path, monkeypatch):
        monkeypatch.setenv("MESSAGING_BASE_URL", "https://mail.internal")
        monkeypatch.delenv("MESSAGING_API_KEY", raising=False)
        path = _write(tmp_path, """
messaging:
  base_url: "${MESSAGING_BASE_URL}"
  api_key: "${MESSAGING_API_KEY}"
  endpoints:
    send: "/v1/messages"
""")
        settings = load_settings(path)

        assert settings.messaging.base_url == "https://mail.internal"
        # unset variables are left as written
        assert settings.messaging.api_key == "${MESSAGING_API_KEY}"
        assert settings.messaging.endpoints == {"send": "/v1/messages"}

    def test_config_path_from_environment(self, tmp_path, monkeypatch):
        path = _write(tmp_path, "app_name: FromEnv\n")
        monkeypatch.setenv("ACTION_INTEL_CONFIG", path)

        assert load_settings().app_name == "FromEnv"
        assert get_settings().app_name == "FromEnv"

    def test_reset_replaces_cache(self):
        reset_settings(Settings(app_name="Injected"))
        assert get_settings().app_name == "Injected"

    def test_bundled_file_loads(self):
        bundled = Path(__file__).parent.parent / "config" / "settings.yaml"

        settings = load_settings(str(bundled))

        assert settings.database.store_backend == "sql"
        assert "generate" in settings.generator.endpoints
        assert settings.generator.timeout_seconds == 120.0
        assert settings.queue.reconcile_lease_ttl_seconds == 600
