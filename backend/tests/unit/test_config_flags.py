from editorial_engine.core import config as config_module
from editorial_engine.core.config import (
    AppConfig,
    ConflictConfig,
    DecisionActionConfig,
    QualityConfig,
    ResendConfig,
    SentryConfig,
    WorkflowConfig,
)


def test_workflow_config_defaults(monkeypatch):
    for key in ("WORKFLOW_IDEMPOTENCY_WINDOW_SECONDS", "INVITATION_REMINDER_SCHEDULE", "INVITATION_STAGGER_INTERVAL_HOURS"):
        monkeypatch.delenv(key, raising=False)
    cfg = WorkflowConfig.from_env()
    assert cfg.idempotency_window_seconds == 300
    assert cfg.reminder_schedule_days == (3, 7, 14)
    assert cfg.default_stagger_interval_hours == 2


def test_workflow_config_reads_env(monkeypatch):
    monkeypatch.setenv("INVITATION_REMINDER_SCHEDULE", "10, 2,2")
    monkeypatch.setenv("WORKFLOW_TRANSITION_MAX_RETRIES", "0")
    monkeypatch.setenv("WORKFLOW_SWEEP_INTERVAL_SECONDS", "60")
    cfg = WorkflowConfig.from_env()
    assert cfg.reminder_schedule_days == (2, 10)
    assert cfg.transition_max_retries == 1
    assert cfg.sweep_interval_seconds == 60


def test_invalid_list_falls_back_to_default(monkeypatch):
    monkeypatch.setenv("INVITATION_REMINDER_SCHEDULE", "3,soon")
    assert WorkflowConfig.from_env().reminder_schedule_days == (3, 7, 14)


def test_conflict_config_env(monkeypatch):
    monkeypatch.setenv("COI_INSTITUTIONAL_RECENCY_YEARS", "5")
    monkeypatch.setenv("COI_FINANCIAL_COMPETING_SEVERITY", "BLOCKING")
    cfg = ConflictConfig.from_env()
    assert cfg.institutional_recency_years == 5
    assert cfg.financial_competing_severity == "blocking"
    assert cfg.severity_weights["blocking"] == 100.0


def test_quality_config_env(monkeypatch):
    monkeypatch.setenv("QUALITY_JOB_BACKOFF_MINUTES", "2,10")
    monkeypatch.setenv("QUALITY_LOW_COUNT_THRESHOLD", "not-a-number")
    cfg = QualityConfig.from_env()
    assert cfg.backoff_minutes == (2, 10)
    assert cfg.low_quality_count_threshold == 3


def test_decision_pipelines_override_from_json(monkeypatch):
    monkeypatch.setenv("DECISION_ACTION_PIPELINES", '{"accepted": ["notify_author", "send_to_production"]}')
    cfg = DecisionActionConfig.from_env()
    assert cfg.actions_for("accepted") == ("notify_author", "send_to_production")
    assert cfg.actions_for("rejected") == ("notify_author", "notify_reviewers")
    assert cfg.actions_for("withdrawn") == ()


def test_decision_pipelines_ignore_bad_json(monkeypatch):
    monkeypatch.setenv("DECISION_ACTION_PIPELINES", "{not json")
    assert DecisionActionConfig.from_env().pipelines == config_module.DEFAULT_DECISION_PIPELINES


def test_token_secret_falls_back_to_service_key(monkeypatch):
    monkeypatch.delenv("INVITATION_TOKEN_SECRET", raising=False)
    monkeypatch.setenv("SUPABASE_SERVICE_ROLE_KEY", "service-key")
    monkeypatch.setenv("APP_ENV", "Staging")
    cfg = AppConfig.from_env()
    assert cfg.token_secret == "service-key"
    assert cfg.is_staging is True


def test_resend_config_requires_api_key(monkeypatch):
    monkeypatch.delenv("RESEND_API_KEY", raising=False)
    assert ResendConfig.from_env() is None

    monkeypatch.setenv("RESEND_API_KEY", "re_123")
    monkeypatch.delenv("EMAIL_SENDER", raising=False)
    cfg = ResendConfig.from_env()
    assert cfg.api_key == "re_123"
    assert "resend.dev" in cfg.sender


def test_sentry_config_flags(monkeypatch):
    monkeypatch.setenv("SENTRY_ENABLED", "yes")
    monkeypatch.setenv("SENTRY_DSN", " https://key@sentry.example/1 ")
    cfg = SentryConfig.from_env()
    assert cfg.enabled is True
    assert cfg.dsn == "https://key@sentry.example/1"
