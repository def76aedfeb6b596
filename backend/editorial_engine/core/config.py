import json
import os
from dataclasses import dataclass, field
from typing import Optional


def _env_bool(key: str, default: bool) -> bool:
    raw = os.environ.get(key)
    if raw is None:
        return default
    lowered = raw.strip().lower()
    return lowered in {"1", "true", "yes", "y", "on"}


def _env_int(key: str, default: int) -> int:
    raw = (os.environ.get(key) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(key: str, default: float) -> float:
    raw = (os.environ.get(key) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int_list(key: str, default: tuple[int, ...]) -> tuple[int, ...]:
    """
    解析逗号分隔的整数列表，例如 "3,7,14"。

    中文注释: 任意一项非法时整体回退到默认值，避免半截配置生效。
    """
    raw = (os.environ.get(key) or "").strip()
    if not raw:
        return default
    try:
        values = tuple(int(part.strip()) for part in raw.split(",") if part.strip())
    except ValueError:
        return default
    return values or default


@dataclass(frozen=True)
class AppConfig:
    """
    Application Environment Config
    """
    env: str  # 'development', 'staging', 'production'
    is_staging: bool
    supabase_url: str
    supabase_key: str
    token_secret: str

    @staticmethod
    def from_env() -> "AppConfig":
        env = (os.environ.get("APP_ENV") or "development").strip().lower()
        supabase_url = (os.environ.get("SUPABASE_URL") or "").strip()
        supabase_key = (os.environ.get("SUPABASE_SERVICE_ROLE_KEY") or "").strip()
        # 中文注释: 邀请回复链接签名密钥；缺省时退回 service key（仅后端可见）。
        token_secret = (
            os.environ.get("INVITATION_TOKEN_SECRET") or supabase_key or "dev-secret"
        ).strip()

        return AppConfig(
            env=env,
            is_staging=env == "staging",
            supabase_url=supabase_url,
            supabase_key=supabase_key,
            token_secret=token_secret,
        )


# Global Config Instance
app_config = AppConfig.from_env()


@dataclass(frozen=True)
class WorkflowConfig:
    """
    稿件状态机 + 审稿邀请编排配置

    中文注释:
    - 幂等窗口、CAS 重试次数、提醒节奏都属于运营策略，必须可配置。
    - reminder_schedule 是“邀请发出后第 N 天”的提醒偏移量（升序）。
    """

    idempotency_window_seconds: int = 300
    transition_max_retries: int = 3
    default_response_deadline_days: int = 7
    default_stagger_interval_hours: int = 2
    reminder_schedule_days: tuple[int, ...] = (3, 7, 14)
    sweep_interval_seconds: int = 900
    response_token_max_age_seconds: int = 60 * 60 * 24 * 30

    @staticmethod
    def from_env() -> "WorkflowConfig":
        return WorkflowConfig(
            idempotency_window_seconds=max(0, _env_int("WORKFLOW_IDEMPOTENCY_WINDOW_SECONDS", 300)),
            transition_max_retries=max(1, _env_int("WORKFLOW_TRANSITION_MAX_RETRIES", 3)),
            default_response_deadline_days=max(1, _env_int("INVITATION_RESPONSE_DEADLINE_DAYS", 7)),
            default_stagger_interval_hours=max(0, _env_int("INVITATION_STAGGER_INTERVAL_HOURS", 2)),
            reminder_schedule_days=tuple(
                sorted(set(_env_int_list("INVITATION_REMINDER_SCHEDULE", (3, 7, 14))))
            ),
            sweep_interval_seconds=max(10, _env_int("WORKFLOW_SWEEP_INTERVAL_SECONDS", 900)),
            response_token_max_age_seconds=max(
                60, _env_int("INVITATION_TOKEN_MAX_AGE_SECONDS", 60 * 60 * 24 * 30)
            ),
        )


_DEFAULT_SEVERITY_WEIGHTS = {"blocking": 100.0, "high": 60.0, "medium": 30.0, "low": 10.0}

_DEFAULT_TYPE_MULTIPLIERS = {
    "coauthorship_recent": 1.3,
    "financial_competing": 1.2,
    "institutional_current": 1.1,
    "coauthorship_frequent": 1.0,
    "institutional_recent": 0.8,
    "financial_collaboration": 0.6,
    "other": 1.0,
}


@dataclass(frozen=True)
class ConflictConfig:
    """
    利益冲突（COI）检测规则配置

    中文注释:
    - 机构重叠回溯窗口、合著时间窗口、频次阈值全部来自配置。
    - 风险分值 = 各冲突 severity 权重 * 类型系数 的最大值；blocking 恒为 100。
    """

    institutional_recency_years: int = 3
    coauthorship_blocking_years: int = 2
    coauthorship_recent_years: int = 5
    coauthorship_lookback_years: int = 10
    frequent_min_publications: int = 3
    frequent_high_publications: int = 5
    financial_competing_severity: str = "high"
    financial_collaboration_severity: str = "medium"
    severity_weights: dict[str, float] = field(default_factory=lambda: dict(_DEFAULT_SEVERITY_WEIGHTS))
    type_multipliers: dict[str, float] = field(default_factory=lambda: dict(_DEFAULT_TYPE_MULTIPLIERS))

    @staticmethod
    def from_env() -> "ConflictConfig":
        return ConflictConfig(
            institutional_recency_years=max(0, _env_int("COI_INSTITUTIONAL_RECENCY_YEARS", 3)),
            coauthorship_blocking_years=max(0, _env_int("COI_COAUTHORSHIP_BLOCKING_YEARS", 2)),
            coauthorship_recent_years=max(0, _env_int("COI_COAUTHORSHIP_RECENT_YEARS", 5)),
            coauthorship_lookback_years=max(0, _env_int("COI_COAUTHORSHIP_LOOKBACK_YEARS", 10)),
            frequent_min_publications=max(1, _env_int("COI_FREQUENT_MIN_PUBLICATIONS", 3)),
            frequent_high_publications=max(1, _env_int("COI_FREQUENT_HIGH_PUBLICATIONS", 5)),
            financial_competing_severity=(
                os.environ.get("COI_FINANCIAL_COMPETING_SEVERITY") or "high"
            ).strip().lower(),
            financial_collaboration_severity=(
                os.environ.get("COI_FINANCIAL_COLLABORATION_SEVERITY") or "medium"
            ).strip().lower(),
        )


_DEFAULT_METRIC_WEIGHTS = {
    "completeness": 1.0,
    "depth": 0.8,
    "timeliness": 0.5,
    "specificity": 0.8,
    "constructiveness": 1.0,
    "clarity": 0.7,
    "professionalism": 0.9,
    "recommendation_alignment": 0.7,
}


@dataclass(frozen=True)
class QualityConfig:
    """
    审稿质量流水线配置

    中文注释:
    - 培训/徽章触发阈值是“政策”，不能硬编码在 service 里。
    - backoff_minutes 对应第 1/2/3... 次失败后的重试延迟。
    """

    low_rating_threshold: int = 2
    low_average_threshold: float = 0.6
    low_quality_count_threshold: int = 3
    low_quality_score_threshold: float = 0.6
    excellence_rating: int = 5
    excellence_flag: str = "excellent_quality"
    report_freshness_hours: int = 24
    max_attempts: int = 3
    backoff_minutes: tuple[int, ...] = (1, 5, 30)
    poll_interval_seconds: float = 5.0
    metric_weights: dict[str, float] = field(default_factory=lambda: dict(_DEFAULT_METRIC_WEIGHTS))

    @staticmethod
    def from_env() -> "QualityConfig":
        return QualityConfig(
            low_rating_threshold=_env_int("QUALITY_LOW_RATING_THRESHOLD", 2),
            low_average_threshold=_env_float("QUALITY_LOW_AVERAGE_THRESHOLD", 0.6),
            low_quality_count_threshold=max(1, _env_int("QUALITY_LOW_COUNT_THRESHOLD", 3)),
            low_quality_score_threshold=_env_float("QUALITY_LOW_SCORE_THRESHOLD", 0.6),
            excellence_rating=_env_int("QUALITY_EXCELLENCE_RATING", 5),
            excellence_flag=(os.environ.get("QUALITY_EXCELLENCE_FLAG") or "excellent_quality").strip(),
            report_freshness_hours=max(0, _env_int("QUALITY_REPORT_FRESHNESS_HOURS", 24)),
            max_attempts=max(1, _env_int("QUALITY_JOB_MAX_ATTEMPTS", 3)),
            backoff_minutes=_env_int_list("QUALITY_JOB_BACKOFF_MINUTES", (1, 5, 30)),
            poll_interval_seconds=max(0.2, _env_float("QUALITY_WORKER_POLL_INTERVAL_SEC", 5.0)),
        )


DEFAULT_DECISION_PIPELINES: dict[str, tuple[str, ...]] = {
    "accepted": ("notify_author", "notify_reviewers", "generate_doi"),
    "revisions_requested": ("notify_author", "notify_reviewers", "follow_up_reminder"),
    "rejected": ("notify_author", "notify_reviewers"),
}


@dataclass(frozen=True)
class DecisionActionConfig:
    """
    决策后动作编排配置（decision -> action 列表）

    中文注释:
    - DECISION_ACTION_PIPELINES 为 JSON，例如 {"accepted": ["notify_author", "generate_doi"]}。
    - 未出现在 JSON 中的 decision 沿用默认列表。
    """

    pipelines: dict[str, tuple[str, ...]] = field(
        default_factory=lambda: dict(DEFAULT_DECISION_PIPELINES)
    )
    follow_up_days: int = 14
    doi_prefix: str = "10.5555"
    # running 超过该分钟数视为执行进程已崩溃，可被重新认领
    stale_claim_minutes: int = 30

    @staticmethod
    def from_env() -> "DecisionActionConfig":
        pipelines = dict(DEFAULT_DECISION_PIPELINES)
        raw = (os.environ.get("DECISION_ACTION_PIPELINES") or "").strip()
        if raw:
            try:
                parsed = json.loads(raw)
            except ValueError:
                parsed = None
            if isinstance(parsed, dict):
                for decision, actions in parsed.items():
                    if isinstance(actions, list):
                        pipelines[str(decision)] = tuple(str(a) for a in actions)

        return DecisionActionConfig(
            pipelines=pipelines,
            follow_up_days=max(1, _env_int("DECISION_FOLLOW_UP_DAYS", 14)),
            doi_prefix=(os.environ.get("CROSSREF_DOI_PREFIX") or "10.5555").strip(),
            stale_claim_minutes=max(1, _env_int("DECISION_ACTION_STALE_MINUTES", 30)),
        )

    def actions_for(self, decision: str) -> tuple[str, ...]:
        return self.pipelines.get(str(decision), ())


@dataclass(frozen=True)
class SentryConfig:
    enabled: bool
    dsn: Optional[str]
    environment: str
    traces_sample_rate: float

    @staticmethod
    def from_env() -> "SentryConfig":
        dsn = (os.environ.get("SENTRY_DSN") or "").strip() or None
        return SentryConfig(
            enabled=_env_bool("SENTRY_ENABLED", False),
            dsn=dsn,
            environment=(os.environ.get("APP_ENV") or "development").strip().lower(),
            traces_sample_rate=_env_float("SENTRY_TRACES_SAMPLE_RATE", 0.0),
        )


@dataclass(frozen=True)
class ResendConfig:
    """
    Resend API Configuration (reviewer/author email delivery)
    """
    api_key: str
    sender: str

    @staticmethod
    def from_env() -> Optional["ResendConfig"]:
        api_key = (os.environ.get("RESEND_API_KEY") or "").strip()
        if not api_key:
            return None

        sender = (
            os.environ.get("EMAIL_SENDER") or "ScholarFlow <onboarding@resend.dev>"
        ).strip()

        return ResendConfig(api_key=api_key, sender=sender)
