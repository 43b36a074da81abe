"""Tests for server settings and the bind guard."""

from __future__ import annotations

import pytest

from vigil.core.config.settings import Settings, get_settings
from vigil.core.server.main import check_bind, is_loopback_host


class TestSettings:
    def test_defaults(self):
        settings = Settings(_env_file=None)
        assert settings.vigil_host == "127.0.0.1"
        assert settings.recent_window_days == 7
        assert settings.baseline_window_days == 23
        assert settings.dedup_window_hours == 24
        assert settings.proposal_expiry_hours == 72
        assert settings.min_baseline_samples == 5

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("VIGIL_PORT", "9100")
        monkeypatch.setenv("PROPOSAL_EXPIRY_HOURS", "24")
        settings = get_settings()
        assert settings.vigil_port == 9100
        assert settings.proposal_expiry_hours == 24
        assert settings.owner_user_id == "user-1"


class TestBindGuard:
    @pytest.mark.parametrize("host", ["127.0.0.1", "localhost", "::1", "[::1]", "127.0.0.2"])
    def test_loopback(self, host):
        assert is_loopback_host(host)

    @pytest.mark.parametrize("host", ["0.0.0.0", "192.168.1.10", "example.org"])
    def test_not_loopback(self, host):
        assert not is_loopback_host(host)

    def test_refuses_lan_bind(self):
        with pytest.raises(RuntimeError, match="VIGIL_ALLOW_INSECURE_BIND"):
            check_bind(Settings(_env_file=None, vigil_host="0.0.0.0"))

    def test_opt_in(self, caplog):
        check_bind(Settings(_env_file=None, vigil_host="0.0.0.0", vigil_allow_insecure_bind=True))
        assert "without authentication" in caplog.text

    def test_loopback_passes(self):
        check_bind(Settings(_env_file=None))
