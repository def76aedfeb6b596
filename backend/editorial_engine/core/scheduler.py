import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

from editorial_engine.core.errors import EditorialError
from editorial_engine.services.invitation_service import InvitationOrchestrator
from editorial_engine.services.post_decision_service import PostDecisionActionOrchestrator

logger = logging.getLogger("editorial_engine.scheduler")


@dataclass
class SweepReport:
    delivered: int = 0
    reminders: int = 0
    expired: int = 0
    published: int = 0
    follow_ups: int = 0
    errors: dict[str, str] = field(default_factory=dict)


class WorkflowScheduler:
    """
    定时清扫：错峰邀请投递 / 催办提醒 / 邀请过期 / 到期出版 / 修改稿跟进提醒。

    中文注释:
    - 每一步都依赖存储层的唯一键或 CAS，重复运行（多实例或重启）不会产生重复副作用。
    - 单步失败只记录日志，不影响其它步骤。
    """

    def __init__(
        self,
        invitations: InvitationOrchestrator,
        post_decision: PostDecisionActionOrchestrator,
        *,
        interval_seconds: Optional[float] = None,
    ) -> None:
        self.invitations = invitations
        self.post_decision = post_decision
        self.interval_seconds = (
            interval_seconds if interval_seconds is not None else invitations.config.sweep_interval_seconds
        )
        self.running = False

    def _steps(self) -> list[tuple[str, Callable[[], int]]]:
        return [
            ("delivered", self.invitations.deliver_scheduled),
            ("reminders", self.invitations.fire_due_reminders),
            ("expired", self.invitations.expire_overdue),
            ("published", self.post_decision.publish_due),
            ("follow_ups", self.post_decision.send_due_follow_ups),
        ]

    def run(self) -> SweepReport:
        report = SweepReport()
        for name, step in self._steps():
            try:
                setattr(report, name, step())
            except EditorialError as e:
                logger.error("sweep step %s failed: %s", name, e.detail)
                report.errors[name] = e.detail
        logger.info(
            "sweep done: delivered=%s reminders=%s expired=%s published=%s follow_ups=%s",
            report.delivered,
            report.reminders,
            report.expired,
            report.published,
            report.follow_ups,
        )
        return report

    async def start(self) -> None:
        logger.info("Workflow scheduler started (every %ss)", self.interval_seconds)
        self.running = True
        while self.running:
            try:
                await asyncio.to_thread(self.run)
            except Exception as e:
                logger.error(f"Scheduler loop error: {e}")
            await asyncio.sleep(self.interval_seconds)

    def stop(self) -> None:
        self.running = False


if __name__ == "__main__":
    from dotenv import load_dotenv

    from editorial_engine.core.sentry_init import init_sentry
    from editorial_engine.engine import EditorialEngine

    load_dotenv()
    logging.basicConfig(level=logging.INFO)
    init_sentry()
    engine = EditorialEngine.from_env()
    asyncio.run(engine.scheduler().start())
