from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Callable, Mapping, Optional

from editorial_engine.core.clock import Clock, SystemClock, parse_datetime
from editorial_engine.core.config import DecisionActionConfig
from editorial_engine.core.doi_generator import generate_doi
from editorial_engine.core.errors import (
    ConcurrentModification,
    DuplicateEntity,
    EditorialError,
    PreconditionNotMet,
)
from editorial_engine.core.roles import SYSTEM_ACTOR_ID
from editorial_engine.lib.entity_store import EntityStore
from editorial_engine.models.decision import ActionStatus, ActionType
from editorial_engine.models.invitation import AssignmentStatus
from editorial_engine.models.manuscript import Manuscript, ManuscriptStatus
from editorial_engine.services.lifecycle_service import LifecycleStateMachine
from editorial_engine.services.notification_service import NotificationSender, deliver

logger = logging.getLogger("editorial_engine.post_decision")

# handler(data) -> (success, details)
ActionHandler = Callable[[Mapping[str, Any]], "tuple[bool, dict[str, Any]]"]

_POST_ACCEPTANCE = {ManuscriptStatus.IN_PRODUCTION, ManuscriptStatus.PUBLISHED}


class PostDecisionActionOrchestrator:
    """
    决策后动作编排。

    中文注释:
    - 每个动作独立幂等、独立失败：decision_actions 以 (decision_id, action_type) 唯一，
      已成功的动作再次执行直接返回 True；失败的动作可以重新执行。
    - 每次尝试都写 decision_action_attempts 审计行（成功/失败 + 细节）。
    - 会改变稿件状态的动作一律走 LifecycleStateMachine（system 身份），非法流转照样被拒绝。
    """

    def __init__(
        self,
        store: EntityStore,
        lifecycle: LifecycleStateMachine,
        sender: NotificationSender,
        *,
        clock: Clock | None = None,
        config: DecisionActionConfig | None = None,
    ) -> None:
        self.store = store
        self.lifecycle = lifecycle
        self.sender = sender
        self.clock = clock or SystemClock()
        self.config = config or DecisionActionConfig()
        self._handlers: dict[ActionType, ActionHandler] = {
            ActionType.NOTIFY_AUTHOR: self._notify_author,
            ActionType.NOTIFY_REVIEWERS: self._notify_reviewers,
            ActionType.GENERATE_DOI: self._generate_doi,
            ActionType.ASSIGN_PRODUCTION_EDITOR: self._assign_production_editor,
            ActionType.SCHEDULE_PUBLICATION: self._schedule_publication,
            ActionType.FOLLOW_UP_REMINDER: self._follow_up_reminder,
            ActionType.SEND_TO_PRODUCTION: self._send_to_production,
        }
        missing = set(ActionType) - set(self._handlers)
        if missing:
            raise RuntimeError(f"post-decision handlers missing for: {sorted(m.value for m in missing)}")

    # === 入口 ===

    def execute_action(self, action_type: ActionType | str, data: Mapping[str, Any]) -> bool:
        try:
            action = ActionType(action_type)
        except ValueError:
            logger.warning("unknown post-decision action: %s", action_type)
            return False

        decision_id = str(data.get("decision_id") or "")
        manuscript_id = str(data.get("manuscript_id") or "")
        if not decision_id or not manuscript_id:
            raise PreconditionNotMet("decision_id and manuscript_id are required", action_type=action.value)

        claim = self._claim(action, decision_id, manuscript_id)
        if claim is None:
            return True
        if claim is False:
            return False

        try:
            success, details = self._handlers[action](data)
            error = None if success else str(details.get("error") or "action reported failure")
        except Exception as e:  # 单个动作失败不得影响其它动作
            logger.exception("post-decision action %s failed for decision %s", action.value, decision_id)
            success, details, error = False, {}, str(e)

        self._finish(claim, success, error, details)
        self._audit(action, decision_id, manuscript_id, success, error, details)
        logger.info(
            "post-decision action %s for decision %s: %s",
            action.value,
            decision_id,
            "succeeded" if success else f"failed ({error})",
        )
        return success

    def _claim(self, action: ActionType, decision_id: str, manuscript_id: str) -> Any:
        """
        返回 claim 行（本次需要执行）；None 表示已成功过（直接视为成功）；False 表示他人正在执行。
        """
        now = self.clock.now().isoformat()
        try:
            return self.store.create(
                "decision_actions",
                {
                    "decision_id": decision_id,
                    "manuscript_id": manuscript_id,
                    "action_type": action.value,
                    "status": ActionStatus.RUNNING.value,
                    "attempts": 1,
                    "started_at": now,
                    "created_at": now,
                },
            )
        except DuplicateEntity:
            pass

        existing = self.store.first("decision_actions", decision_id=decision_id, action_type=action.value)
        if existing is None:
            return False
        if existing.get("status") == ActionStatus.SUCCEEDED.value:
            logger.info("post-decision action %s already done for decision %s", action.value, decision_id)
            return None
        if existing.get("status") == ActionStatus.RUNNING.value:
            if not self.is_stale_claim(existing):
                logger.info("post-decision action %s already running for decision %s", action.value, decision_id)
                return False
            logger.warning(
                "reclaiming stale post-decision action %s for decision %s (started %s)",
                action.value,
                decision_id,
                existing.get("started_at"),
            )
        try:
            return self.store.update(
                "decision_actions",
                existing["id"],
                {
                    "status": ActionStatus.RUNNING.value,
                    "attempts": int(existing.get("attempts") or 0) + 1,
                    "started_at": now,
                },
                expected_version=int(existing["version"]),
            )
        except ConcurrentModification:
            return False

    def is_stale_claim(self, row: Mapping[str, Any]) -> bool:
        """running 状态停留超过 stale_claim_minutes 的认领行（执行进程大概率已退出）"""
        if row.get("status") != ActionStatus.RUNNING.value:
            return False
        started_at = parse_datetime(row.get("started_at"))
        if started_at is None:
            return False
        return self.clock.now() - started_at >= timedelta(minutes=self.config.stale_claim_minutes)

    def _finish(self, claim: Mapping[str, Any], success: bool, error: Optional[str], details: Mapping[str, Any]) -> None:
        self.store.update(
            "decision_actions",
            claim["id"],
            {
                "status": (ActionStatus.SUCCEEDED if success else ActionStatus.FAILED).value,
                "last_error": error,
                "result": dict(details),
                "finished_at": self.clock.now().isoformat(),
            },
        )

    def _audit(
        self,
        action: ActionType,
        decision_id: str,
        manuscript_id: str,
        success: bool,
        error: Optional[str],
        details: Mapping[str, Any],
    ) -> None:
        try:
            self.store.create(
                "decision_action_attempts",
                {
                    "decision_id": decision_id,
                    "manuscript_id": manuscript_id,
                    "action_type": action.value,
                    "success": success,
                    "error": error,
                    "details": dict(details),
                    "attempted_at": self.clock.now().isoformat(),
                },
            )
        except EditorialError as e:
            logger.warning("decision action audit insert failed (ignored): %s", e)

    def action_status(self, decision_id: str) -> dict[str, str]:
        return {
            str(row.get("action_type")): str(row.get("status"))
            for row in self.store.list("decision_actions", decision_id=decision_id)
        }

    # === 动作实现 ===

    def _manuscript(self, data: Mapping[str, Any]) -> Manuscript:
        return Manuscript.from_row(self.store.require("manuscripts", str(data["manuscript_id"])))

    def _notify_author(self, data: Mapping[str, Any]) -> tuple[bool, dict[str, Any]]:
        manuscript = self._manuscript(data)
        decision = self.store.require("editorial_decisions", str(data["decision_id"]))
        variables = {
            "manuscript_id": manuscript.id,
            "manuscript_title": manuscript.title,
            "decision": decision.get("decision"),
            "decision_letter": decision.get("decision_letter"),
            "decision_id": decision.get("id"),
        }
        failed = [a for a in manuscript.author_ids if not deliver(self.sender, a, "decision_author", variables)]
        if failed or not manuscript.author_ids:
            return False, {"error": "author notification failed", "failed_recipients": failed}

        if not decision.get("sent_at"):
            self.store.update("editorial_decisions", decision["id"], {"sent_at": self.clock.now().isoformat()})
        return True, {"recipients": list(manuscript.author_ids)}

    def _notify_reviewers(self, data: Mapping[str, Any]) -> tuple[bool, dict[str, Any]]:
        manuscript = self._manuscript(data)
        rows = self.store.list(
            "review_assignments",
            manuscript_id=manuscript.id,
            status=AssignmentStatus.COMPLETED.value,
            review_round=manuscript.review_round,
        )
        reviewer_ids = list(dict.fromkeys(str(r.get("reviewer_id")) for r in rows if r.get("reviewer_id")))
        variables = {
            "manuscript_id": manuscript.id,
            "manuscript_title": manuscript.title,
            "decision": data.get("decision"),
        }
        failed = [r for r in reviewer_ids if not deliver(self.sender, r, "decision_reviewer", variables)]
        if failed:
            return False, {"error": "reviewer notification failed", "failed_recipients": failed}
        return True, {"reviewer_count": len(reviewer_ids)}

    def _generate_doi(self, data: Mapping[str, Any]) -> tuple[bool, dict[str, Any]]:
        manuscript = self._manuscript(data)
        if manuscript.doi:
            return True, {"doi": manuscript.doi, "existing": True}
        doi = generate_doi(manuscript_id=manuscript.id, prefix=self.config.doi_prefix, issued_at=self.clock.now())
        self.store.update("manuscripts", manuscript.id, {"doi": doi})
        return True, {"doi": doi}

    def _ensure_in_production(self, manuscript: Manuscript, comment: str) -> str:
        if manuscript.status in _POST_ACCEPTANCE:
            return manuscript.status.value
        result = self.lifecycle.transition_with_retry(
            manuscript.id,
            ManuscriptStatus.IN_PRODUCTION.value,
            SYSTEM_ACTOR_ID,
            comment=comment,
        )
        return result.manuscript.status.value

    def _assign_production_editor(self, data: Mapping[str, Any]) -> tuple[bool, dict[str, Any]]:
        production_editor_id = data.get("production_editor_id")
        if not production_editor_id:
            return False, {"error": "production_editor_id is required"}
        manuscript = self._manuscript(data)
        status = self._ensure_in_production(manuscript, "production editor assigned")
        self.store.update("manuscripts", manuscript.id, {"production_editor_id": str(production_editor_id)})
        deliver(
            self.sender,
            str(production_editor_id),
            "production_assignment",
            {"manuscript_id": manuscript.id, "manuscript_title": manuscript.title},
        )
        return True, {"production_editor_id": str(production_editor_id), "status": status}

    def _send_to_production(self, data: Mapping[str, Any]) -> tuple[bool, dict[str, Any]]:
        manuscript = self._manuscript(data)
        status = self._ensure_in_production(manuscript, "sent to production")
        return True, {"status": status}

    def _schedule_publication(self, data: Mapping[str, Any]) -> tuple[bool, dict[str, Any]]:
        manuscript = self._manuscript(data)
        if manuscript.status == ManuscriptStatus.PUBLISHED:
            return True, {"status": manuscript.status.value}
        self._ensure_in_production(manuscript, "scheduled for publication")

        now = self.clock.now()
        publish_at = parse_datetime(data.get("publication_date")) or now
        if publish_at <= now:
            result = self.lifecycle.transition_with_retry(
                manuscript.id,
                ManuscriptStatus.PUBLISHED.value,
                SYSTEM_ACTOR_ID,
                comment="published",
            )
            return True, {"status": result.manuscript.status.value, "published_at": now.isoformat()}

        try:
            self.store.create(
                "scheduled_publications",
                {
                    "manuscript_id": manuscript.id,
                    "decision_id": str(data["decision_id"]),
                    "publish_at": publish_at.isoformat(),
                    "status": "scheduled",
                    "created_at": now.isoformat(),
                },
            )
        except DuplicateEntity:
            logger.info("publication for %s already scheduled", manuscript.id)
        if manuscript.editor_id:
            deliver(
                self.sender,
                manuscript.editor_id,
                "publication_scheduled",
                {"manuscript_id": manuscript.id, "publish_at": publish_at.isoformat()},
            )
        return True, {"publish_at": publish_at.isoformat()}

    def _follow_up_reminder(self, data: Mapping[str, Any]) -> tuple[bool, dict[str, Any]]:
        manuscript = self._manuscript(data)
        days = int(data.get("follow_up_days") or self.config.follow_up_days)
        due_at = self.clock.now() + timedelta(days=days)
        try:
            self.store.create(
                "follow_up_reminders",
                {
                    "decision_id": str(data["decision_id"]),
                    "manuscript_id": manuscript.id,
                    "recipient_ids": list(manuscript.author_ids),
                    "due_at": due_at.isoformat(),
                    "status": "pending",
                    "created_at": self.clock.now().isoformat(),
                },
            )
        except DuplicateEntity:
            logger.info("follow-up reminder already scheduled for decision %s", data["decision_id"])
        return True, {"due_at": due_at.isoformat()}

    # === 后台释放（由 WorkflowScheduler 调用） ===

    def publish_due(self) -> int:
        now = self.clock.now()
        published = 0
        for row in self.store.list("scheduled_publications", status="scheduled"):
            publish_at = parse_datetime(row.get("publish_at"))
            if publish_at is None or publish_at > now:
                continue
            try:
                claimed = self.store.update(
                    "scheduled_publications",
                    row["id"],
                    {"status": "publishing"},
                    expected_version=int(row["version"]),
                )
            except ConcurrentModification:
                continue
            manuscript = Manuscript.from_row(self.store.require("manuscripts", row["manuscript_id"]))
            try:
                if manuscript.status != ManuscriptStatus.PUBLISHED:
                    self.lifecycle.transition_with_retry(
                        manuscript.id,
                        ManuscriptStatus.PUBLISHED.value,
                        SYSTEM_ACTOR_ID,
                        comment="scheduled publication",
                    )
            except EditorialError as e:
                logger.warning("scheduled publication of %s failed: %s", manuscript.id, e.detail)
                self.store.update("scheduled_publications", claimed["id"], {"status": "failed", "last_error": e.detail})
                continue
            self.store.update(
                "scheduled_publications",
                claimed["id"],
                {"status": "published", "published_at": now.isoformat()},
            )
            for author_id in manuscript.author_ids:
                deliver(
                    self.sender,
                    author_id,
                    "manuscript_published",
                    {"manuscript_id": manuscript.id, "manuscript_title": manuscript.title, "doi": manuscript.doi},
                )
            published += 1
        return published

    def send_due_follow_ups(self) -> int:
        now = self.clock.now()
        sent = 0
        for row in self.store.list("follow_up_reminders", status="pending"):
            due_at = parse_datetime(row.get("due_at"))
            if due_at is None or due_at > now:
                continue
            try:
                self.store.update(
                    "follow_up_reminders",
                    row["id"],
                    {"status": "sent", "sent_at": now.isoformat()},
                    expected_version=int(row["version"]),
                )
            except ConcurrentModification:
                continue
            manuscript = Manuscript.from_row(self.store.require("manuscripts", row["manuscript_id"]))
            if manuscript.status != ManuscriptStatus.REVISIONS_REQUESTED:
                # 作者已经提交修改稿
                continue
            for recipient in row.get("recipient_ids") or []:
                deliver(
                    self.sender,
                    str(recipient),
                    "revision_follow_up",
                    {"manuscript_id": manuscript.id, "manuscript_title": manuscript.title},
                )
            sent += 1
        return sent
