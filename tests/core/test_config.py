"""
Tests for configuration loading and validation.
"""

import pytest

from core.config import AlertingConfig, EscalationConfig, normalize_database_url
from core.exceptions import ErrorClassification, InvalidConfigError


ENV_KEYS = [
    "DATABASE_URL",
    "CANDLE_RETENTION_DAYS",
    "ALERT_DEBOUNCE_MINUTES",
    "ESCALATION_SWEEP_INTERVAL_SECONDS",
    "ESCALATION_SWEEP_DEADLINE_SECONDS",
    "GATEWAY_TIMEOUT_SECONDS",
    "DB_ECHO",
    "FRONTEND_URL",
    "TWILIO_ACCOUNT_SID",
    "TWILIO_AUTH_TOKEN",
    "TWILIO_FROM_NUMBER",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


class TestFromEnv:
    """Tests for AlertingConfig.from_env."""

    def test_defaults(self):
        config = AlertingConfig.from_env()

        assert config.aggregation.retention_days == 365
        assert config.escalation.debounce_minutes == 15
        assert config.email.enabled is False
        assert config.sms.enabled is False

    def test_overrides(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "postgres://u:p@db:5432/metrics")
        monkeypatch.setenv("ALERT_DEBOUNCE_MINUTES", "5")
        monkeypatch.setenv("DB_ECHO", "yes")
        monkeypatch.setenv("FRONTEND_URL", "https://ops.example.com")
        monkeypatch.setenv("TWILIO_ACCOUNT_SID", "AC1")
        monkeypatch.setenv("TWILIO_AUTH_TOKEN", "t")
        monkeypatch.setenv("TWILIO_FROM_NUMBER", "+15550000")

        config = AlertingConfig.from_env()

        assert config.database.url == "postgresql+asyncpg://u:p@db:5432/metrics"
        assert config.database.echo is True
        assert config.escalation.debounce_minutes == 5
        assert config.escalation.dashboard_url == "https://ops.example.com"
        assert config.sms.enabled is True

    def test_unparseable_value(self, monkeypatch):
        monkeypatch.setenv("ALERT_DEBOUNCE_MINUTES", "fifteen")

        with pytest.raises(InvalidConfigError) as exc:
            AlertingConfig.from_env()
        assert exc.value.context["config_key"] == "ALERT_DEBOUNCE_MINUTES"
        assert exc.value.classification == ErrorClassification.NON_RECOVERABLE

    def test_dotenv_file(self, tmp_path):
        env_file = tmp_path / "alerting.env"
        env_file.write_text("CANDLE_RETENTION_DAYS=30\n")

        config = AlertingConfig.from_env(str(env_file))

        assert config.aggregation.retention_days == 30


class TestValidate:
    """Tests for AlertingConfig.validate."""

    def test_testing_config_is_valid(self):
        AlertingConfig.for_testing().validate()

    @pytest.mark.parametrize("key, value", [
        ("CANDLE_RETENTION_DAYS", "0"),
        ("ALERT_DEBOUNCE_MINUTES", "-1"),
        ("GATEWAY_TIMEOUT_SECONDS", "0"),
        ("ESCALATION_SWEEP_DEADLINE_SECONDS", "600"),
    ])
    def test_rejects(self, monkeypatch, key, value):
        monkeypatch.setenv(key, value)
        with pytest.raises(InvalidConfigError):
            AlertingConfig.from_env()

    def test_deadline_must_fit_interval(self):
        config = AlertingConfig(
            escalation=EscalationConfig(sweep_interval_seconds=60, sweep_deadline_seconds=90)
        )
        with pytest.raises(InvalidConfigError):
            config.validate()


@pytest.mark.parametrize("raw, expected", [
    ("postgresql://u@h/db", "postgresql+asyncpg://u@h/db"),
    ("postgres://u@h/db", "postgresql+asyncpg://u@h/db"),
    ("postgresql+asyncpg://u@h/db", "postgresql+asyncpg://u@h/db"),
    ("sqlite:///x.db", "sqlite+aiosqlite:///x.db"),
    ("sqlite+aiosqlite:///:memory:", "sqlite+aiosqlite:///:memory:"),
])
def test_normalize_database_url(raw, expected):
    assert normalize_database_url(raw) == expected
