from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Optional

from editorial_engine.core.clock import Clock, SystemClock, parse_datetime
from editorial_engine.core.config import WorkflowConfig
from editorial_engine.core.errors import (
    EditorialError,
    InvalidTransition,
    PreconditionNotMet,
    Unauthorized,
)
from editorial_engine.core.retry import retry_on_conflict
from editorial_engine.core.roles import Role, RoleProvider
from editorial_engine.lib.entity_store import EntityStore
from editorial_engine.models.invitation import AssignmentStatus
from editorial_engine.models.manuscript import (
    TRANSITION_ROLES,
    Manuscript,
    ManuscriptStatus,
    TimelineEntry,
    normalize_status,
)

logger = logging.getLogger("editorial_engine.lifecycle")


@dataclass(frozen=True)
class TransitionResult:
    manuscript: Manuscript
    from_status: str
    to_status: str
    changed: bool


class LifecycleStateMachine:
    """
    稿件状态机：manuscripts.status 的唯一写入者。

    中文注释:
    - 边校验 -> 角色校验 -> 前置条件校验，任一失败都不产生任何写入。
    - status + timeline 在同一次 CAS 更新里落库（expected_version），并发时只有一个成功。
    - 同一 (manuscript, target) 在幂等窗口内重放视为 no-op，而不是 InvalidTransition。
    - status_transition_logs 只是审计副本，写入失败不影响主流程。
    """

    def __init__(
        self,
        store: EntityStore,
        roles: RoleProvider,
        *,
        clock: Clock | None = None,
        config: WorkflowConfig | None = None,
    ) -> None:
        self.store = store
        self.roles = roles
        self.clock = clock or SystemClock()
        self.config = config or WorkflowConfig()

    # === 查询 ===

    def get(self, manuscript_id: str) -> Manuscript:
        return Manuscript.from_row(self.store.require("manuscripts", manuscript_id))

    def allowed_next(self, manuscript_id: str) -> set[str]:
        return ManuscriptStatus.allowed_next(self.get(manuscript_id).status.value)

    def history(self, manuscript_id: str) -> list[TimelineEntry]:
        return list(self.get(manuscript_id).timeline)

    # === 写入 ===

    def transition(
        self,
        manuscript_id: str,
        target_status: str,
        actor_id: str,
        *,
        comment: Optional[str] = None,
        editor_id: Optional[str] = None,
    ) -> TransitionResult:
        row = self.store.require("manuscripts", manuscript_id)
        manuscript = Manuscript.from_row(row)
        current = manuscript.status.value

        target = normalize_status(target_status)
        if target is None:
            raise InvalidTransition(current, str(target_status), ManuscriptStatus.allowed_next(current))

        if current == target and self._is_recent_replay(manuscript, target):
            logger.info("transition replay ignored: %s -> %s (%s)", manuscript_id, target, actor_id)
            return TransitionResult(manuscript=manuscript, from_status=current, to_status=target, changed=False)

        edge = (ManuscriptStatus(current), ManuscriptStatus(target))
        if edge not in TRANSITION_ROLES:
            logger.warning("rejected transition %s: %s -> %s", manuscript_id, current, target)
            raise InvalidTransition(current, target, ManuscriptStatus.allowed_next(current))

        self._authorize(manuscript, edge, actor_id)
        extra = self._check_preconditions(manuscript, edge, actor_id, editor_id=editor_id)

        now = self.clock.now().isoformat()
        entry = TimelineEntry(
            from_status=current,
            to_status=target,
            changed_by=str(actor_id),
            comment=comment,
            created_at=now,
        )
        patch: dict[str, Any] = {
            "status": target,
            "updated_at": now,
            "timeline": [*(row.get("timeline") or []), entry.model_dump(mode="json")],
            **extra,
        }
        # ConcurrentModification 直接上抛：调用方需重新读取后重试（见 transition_with_retry）
        updated = self.store.update("manuscripts", manuscript_id, patch, expected_version=int(row["version"]))
        self._insert_transition_log(manuscript_id, entry)
        logger.info("manuscript %s: %s -> %s by %s", manuscript_id, current, target, actor_id)
        return TransitionResult(
            manuscript=Manuscript.from_row(updated),
            from_status=current,
            to_status=target,
            changed=True,
        )

    def transition_with_retry(self, manuscript_id: str, target_status: str, actor_id: str, **kwargs: Any) -> TransitionResult:
        """
        版本冲突时重新读取再试；若对方已经把稿件推到同一目标，重放判定会让本次变成 no-op。
        """
        return retry_on_conflict(
            self.transition,
            manuscript_id,
            target_status,
            actor_id,
            attempts=self.config.transition_max_retries,
            **kwargs,
        )

    # === 内部校验 ===

    def _is_recent_replay(self, manuscript: Manuscript, target: str) -> bool:
        for entry in reversed(manuscript.timeline):
            if entry.to_status != target:
                continue
            changed_at = parse_datetime(entry.created_at)
            if changed_at is None:
                return False
            window = timedelta(seconds=self.config.idempotency_window_seconds)
            return self.clock.now() - changed_at <= window
        return False

    def _authorize(
        self,
        manuscript: Manuscript,
        edge: tuple[ManuscriptStatus, ManuscriptStatus],
        actor_id: str,
    ) -> None:
        role = self.roles.role_of(str(actor_id))
        if role is None:
            raise Unauthorized(f"Unknown actor {actor_id}", actor_id=actor_id)
        if role == Role.ADMIN:
            return
        required = TRANSITION_ROLES[edge]
        if role not in required:
            raise Unauthorized(
                f"Role {role.value} cannot move manuscript {edge[0].value} -> {edge[1].value}",
                actor_id=actor_id,
                required=sorted(r.value for r in required),
            )
        if role == Role.AUTHOR and str(actor_id) not in manuscript.author_ids:
            raise Unauthorized("Only manuscript authors can perform this transition", actor_id=actor_id)

    def _count_assignments(self, manuscript: Manuscript, status: AssignmentStatus) -> int:
        rows = self.store.list(
            "review_assignments",
            manuscript_id=manuscript.id,
            status=status.value,
        )
        return len([r for r in rows if int(r.get("review_round") or 1) == manuscript.review_round])

    def _check_preconditions(
        self,
        manuscript: Manuscript,
        edge: tuple[ManuscriptStatus, ManuscriptStatus],
        actor_id: str,
        *,
        editor_id: Optional[str],
    ) -> dict[str, Any]:
        source, target = edge
        extra: dict[str, Any] = {}

        if source == ManuscriptStatus.SUBMITTED and target == ManuscriptStatus.WITH_EDITOR:
            extra["editor_id"] = str(editor_id or actor_id)

        elif source == ManuscriptStatus.WITH_EDITOR and target == ManuscriptStatus.UNDER_REVIEW:
            if self._count_assignments(manuscript, AssignmentStatus.ACCEPTED) < 1:
                raise PreconditionNotMet(
                    "At least one accepted review assignment is required",
                    manuscript_id=manuscript.id,
                )

        elif target in {ManuscriptStatus.ACCEPTED, ManuscriptStatus.REVISIONS_REQUESTED}:
            if self._count_assignments(manuscript, AssignmentStatus.COMPLETED) < 1:
                raise PreconditionNotMet(
                    "At least one completed review is required before a decision",
                    manuscript_id=manuscript.id,
                )

        elif source == ManuscriptStatus.REVISIONS_REQUESTED and target == ManuscriptStatus.UNDER_REVIEW:
            extra["review_round"] = manuscript.review_round + 1

        elif target == ManuscriptStatus.PUBLISHED:
            if not manuscript.doi:
                raise PreconditionNotMet("A DOI is required before publication", manuscript_id=manuscript.id)

        return extra

    def _insert_transition_log(self, manuscript_id: str, entry: TimelineEntry) -> None:
        """
        写入 status_transition_logs（审计副本，失败则降级忽略）。
        """
        try:
            self.store.create(
                "status_transition_logs",
                {"manuscript_id": manuscript_id, **entry.model_dump(mode="json")},
            )
        except EditorialError as e:
            logger.warning("transition log insert failed (ignored): %s", e)
