from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional
from urllib.parse import urlparse

import resend
from jinja2 import Environment, FileSystemLoader, TemplateNotFound, select_autoescape

from editorial_engine.core.config import ResendConfig
from editorial_engine.core.errors import EditorialError, NotificationDeliveryFailed
from editorial_engine.lib.entity_store import EntityStore

logger = logging.getLogger("editorial_engine.notifications")

# template -> (notifications.type, 标题)
TEMPLATE_COPY: dict[str, tuple[str, str]] = {
    "reviewer_invitation": ("review_invite", "Invitation to review"),
    "invitation_reminder": ("chase", "Reminder: review invitation awaiting response"),
    "invitation_withdrawn": ("review_invite", "Review invitation withdrawn"),
    "decision_author": ("decision", "Editorial decision on your manuscript"),
    "decision_reviewer": ("decision", "Editorial decision on a manuscript you reviewed"),
    "revision_follow_up": ("chase", "Reminder: revision due"),
    "production_assignment": ("system", "New manuscript assigned for production"),
    "publication_scheduled": ("system", "Publication scheduled"),
    "manuscript_published": ("decision", "Your manuscript has been published"),
    "reviewer_training": ("system", "Reviewer training assigned"),
    "quality_badge": ("system", "Review quality badge awarded"),
}


def normalize_action_url(action_url: Optional[str]) -> Optional[str]:
    raw = str(action_url or "").strip()
    if not raw:
        return None
    if raw.startswith("/"):
        return raw
    if raw.startswith("./"):
        return f"/{raw[2:]}"
    try:
        parsed = urlparse(raw)
    except ValueError:
        return None
    if parsed.scheme not in {"http", "https"}:
        return None
    path = parsed.path or "/"
    if not path.startswith("/"):
        return None
    query = f"?{parsed.query}" if parsed.query else ""
    fragment = f"#{parsed.fragment}" if parsed.fragment else ""
    return f"{path}{query}{fragment}"


class NotificationSender:
    """
    Notification Sender: send(recipientId, template, variables) -> success|failure

    中文注释: 投递重试是 sender 自己的事，引擎只记录失败，不重发。
    """

    def send(self, recipient_id: str, template: str, variables: Mapping[str, Any]) -> bool:
        raise NotImplementedError


def deliver(sender: NotificationSender, recipient_id: str, template: str, variables: Mapping[str, Any]) -> bool:
    """
    统一的投递入口：失败只记日志（NotificationDeliveryFailed 为非致命），不打断主流程。
    """
    try:
        ok = bool(sender.send(str(recipient_id), template, dict(variables)))
    except Exception as e:  # 外部 sender 的任何异常都按投递失败处理
        logger.warning("notification sender raised for %s/%s: %s", recipient_id, template, e)
        ok = False
    if not ok:
        failure = NotificationDeliveryFailed(str(recipient_id), template)
        logger.warning("%s (variables=%s)", failure.detail, sorted(variables))
    return ok


class InAppNotificationSender(NotificationSender):
    """
    站内通知：写 notifications 表。
    """

    def __init__(self, store: EntityStore) -> None:
        self.store = store

    @staticmethod
    def _default_action_url(notification_type: str, manuscript_id: Optional[str]) -> str:
        if notification_type in {"review_invite", "chase"} and not manuscript_id:
            return "/dashboard?tab=reviewer"
        if notification_type == "review_invite":
            return "/dashboard?tab=reviewer"
        if notification_type == "system":
            return "/dashboard?tab=editor"
        if manuscript_id:
            return f"/dashboard/author/manuscripts/{manuscript_id}"
        return "/dashboard/notifications"

    def send(self, recipient_id: str, template: str, variables: Mapping[str, Any]) -> bool:
        notification_type, title = TEMPLATE_COPY.get(template, ("system", template.replace("_", " ").title()))
        manuscript_id = variables.get("manuscript_id")
        action_url = normalize_action_url(variables.get("action_url")) or self._default_action_url(
            notification_type, manuscript_id
        )
        content = str(variables.get("message") or variables.get("manuscript_title") or title)
        try:
            self.store.create(
                "notifications",
                {
                    "user_id": recipient_id,
                    "manuscript_id": manuscript_id,
                    "action_url": action_url,
                    "type": notification_type,
                    "template": template,
                    "title": title,
                    "content": content,
                    "is_read": False,
                },
            )
        except EditorialError as e:
            logger.warning("in-app notification insert failed for %s: %s", recipient_id, e)
            return False
        return True


class EmailNotificationSender(NotificationSender):
    """
    邮件通知：jinja2 渲染 core/templates/<template>.html，经 Resend 投递。

    中文注释:
    - 收件地址取 user_profiles.email。
    - 未配置 RESEND_API_KEY 时直接返回 False（由 CompositeNotificationSender 决定整体结果）。
    """

    _SENTINEL = object()

    def __init__(
        self,
        store: EntityStore,
        *,
        resend_config: ResendConfig | None | object = _SENTINEL,
        templates_dir: Path | None = None,
    ) -> None:
        if resend_config is self._SENTINEL:
            resend_config = ResendConfig.from_env()
        self.store = store
        self.resend_config: ResendConfig | None = resend_config  # type: ignore[assignment]
        if self.resend_config:
            resend.api_key = self.resend_config.api_key

        templates_dir = templates_dir or Path(__file__).resolve().parent.parent / "core" / "templates"
        self._jinja = Environment(
            loader=FileSystemLoader(str(templates_dir)),
            autoescape=select_autoescape(["html", "xml"]),
        )

    def render(self, template: str, variables: Mapping[str, Any]) -> str:
        return self._jinja.get_template(f"{template}.html").render(**variables)

    def _recipient_email(self, recipient_id: str) -> Optional[str]:
        profile = self.store.get("user_profiles", recipient_id)
        email = str((profile or {}).get("email") or "").strip()
        return email or None

    def send(self, recipient_id: str, template: str, variables: Mapping[str, Any]) -> bool:
        if not self.resend_config:
            return False
        to_email = self._recipient_email(recipient_id)
        if not to_email:
            logger.info("no email on file for %s, skipping %s", recipient_id, template)
            return False
        try:
            html = self.render(template, variables)
        except TemplateNotFound:
            logger.warning("email template missing: %s", template)
            return False

        _notification_type, subject = TEMPLATE_COPY.get(template, ("system", template))
        try:
            resend.Emails.send(
                {
                    "from": self.resend_config.sender,
                    "to": [to_email],
                    "subject": subject,
                    "html": html,
                }
            )
        except Exception as e:  # resend SDK 抛出的异常类型随版本变化
            logger.warning("[Resend] send failed for %s: %s", recipient_id, e)
            return False
        return True


class CompositeNotificationSender(NotificationSender):
    """任一渠道投递成功即视为成功（站内 + 邮件）"""

    def __init__(self, senders: Iterable[NotificationSender]) -> None:
        self.senders = list(senders)

    def send(self, recipient_id: str, template: str, variables: Mapping[str, Any]) -> bool:
        delivered = False
        for sender in self.senders:
            try:
                delivered = bool(sender.send(recipient_id, template, variables)) or delivered
            except Exception as e:  # 单个渠道失败不影响其它渠道
                logger.warning("%s failed for %s: %s", type(sender).__name__, recipient_id, e)
        return delivered
