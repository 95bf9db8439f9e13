"""
Unit Tests for runtime settings
"""

from points.config import Settings
from points.logs import configure_logging


class TestSettings:
    """Tests for reading configuration from the environment."""

    def test_defaults(self, monkeypatch):
        """Defaults apply when nothing is set."""
        for name in ("APP_ENV", "WEBHOOK_ENABLED", "ALFRED_PAY_WEBHOOK_SECRET", "ORDER_EXPIRY_MINUTES"):
            monkeypatch.delenv(name, raising=False)

        settings = Settings.from_env()

        assert settings.environment == "development"
        assert settings.webhook_enabled
        assert settings.webhook_secret is None
        assert settings.order_expiry_minutes == 20
        assert not settings.is_production
        assert not settings.release_pending_on_failure

    def test_from_env(self, monkeypatch):
        """Every supported variable is read."""
        monkeypatch.setenv("APP_ENV", "staging")
        monkeypatch.setenv("WEBHOOK_ENABLED", "false")
        monkeypatch.setenv("ALFRED_PAY_WEBHOOK_SECRET", "s3cret")
        monkeypatch.setenv("WEBHOOK_ALLOW_UNSIGNED", "yes")
        monkeypatch.setenv("RELEASE_PENDING_ON_FAILURE", "1")
        monkeypatch.setenv("ALFRED_PAY_BASE_URL", "https://alfred.example.com")
        monkeypatch.setenv("ALFRED_PAY_API_KEY", "key")
        monkeypatch.setenv("ALFRED_PAY_TIMEOUT_SECONDS", "7.5")
        monkeypatch.setenv("ORDER_EXPIRY_MINUTES", "30")

        settings = Settings.from_env()

        assert settings.is_production
        assert not settings.webhook_enabled
        assert settings.webhook_secret == "s3cret"
        assert settings.webhook_allow_unsigned
        assert settings.release_pending_on_failure
        assert settings.gateway_configured
        assert settings.gateway_timeout_seconds == 7.5
        assert settings.order_expiry_minutes == 30

    def test_empty_secret_is_unset(self, monkeypatch):
        """An empty secret counts as no secret."""
        monkeypatch.setenv("ALFRED_PAY_WEBHOOK_SECRET", "")
        assert Settings.from_env().webhook_secret is None

    def test_configure_logging(self):
        """Logging accepts JSON output and unknown levels."""
        configure_logging(Settings(log_level="DEBUG", log_json=True))
        configure_logging(Settings(log_level="not-a-level"))
