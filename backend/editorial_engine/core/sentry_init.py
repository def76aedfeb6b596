import logging
from typing import Any

import sentry_sdk
from sentry_sdk.integrations.logging import LoggingIntegration

from editorial_engine.core.config import SentryConfig

_SENSITIVE_KEYS = {
    "password",
    "access_token",
    "refresh_token",
    "token",
    "response_token",
    "jwt",
    "authorization",
    "cookie",
    "supabase_key",
    "service_role",
    "service_role_key",
    "email",
}

# 审稿意见全文不上报
_MAX_TEXT_LENGTH = 2000


def _scrub(value: Any) -> Any:
    """
    隐私清洗：递归去除敏感字段与审稿正文等大段文本。
    """
    if isinstance(value, str) and len(value) > _MAX_TEXT_LENGTH:
        return "[Filtered]"

    if isinstance(value, dict):
        out: dict[str, Any] = {}
        for k, v in value.items():
            if str(k).strip().lower() in _SENSITIVE_KEYS:
                out[str(k)] = "[Filtered]"
                continue
            out[str(k)] = _scrub(v)
        return out

    if isinstance(value, (list, tuple)):
        return [_scrub(v) for v in value]

    return value


def _before_send(event: dict[str, Any], hint: dict[str, Any]) -> dict[str, Any] | None:
    for section in ("extra", "contexts", "tags"):
        obj = event.get(section)
        if isinstance(obj, dict):
            event[section] = _scrub(obj)
    return event


def init_sentry(cfg: SentryConfig | None = None) -> bool:
    """
    初始化 Sentry（worker / scheduler 进程入口调用）。

    零崩溃原则：未配置 DSN 或显式禁用时直接返回 False。
    """
    cfg = cfg or SentryConfig.from_env()
    if not cfg.enabled or not cfg.dsn:
        return False

    sentry_sdk.init(
        dsn=cfg.dsn,
        environment=cfg.environment,
        traces_sample_rate=cfg.traces_sample_rate,
        integrations=[LoggingIntegration(level=logging.INFO, event_level=logging.ERROR)],
        send_default_pii=False,
        before_send=_before_send,
    )
    return True
