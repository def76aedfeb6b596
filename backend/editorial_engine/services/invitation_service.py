from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Iterable, Mapping, Optional

from pydantic import ValidationError

from editorial_engine.core.clock import Clock, SystemClock, parse_datetime
from editorial_engine.core.config import WorkflowConfig
from editorial_engine.core.errors import (
    AlreadyResponded,
    ConcurrentModification,
    DuplicateEntity,
    EditorialError,
    IneligibleReviewer,
    InvalidTransition,
    InvitationExpired,
    PreconditionNotMet,
    Unauthorized,
)
from editorial_engine.core.retry import retry_on_conflict
from editorial_engine.core.roles import SYSTEM_ACTOR_ID, Role, RoleProvider
from editorial_engine.core.tokens import InvitationTokenSigner
from editorial_engine.lib.entity_store import EntityStore
from editorial_engine.models.invitation import (
    ACTIVE_INVITATION_STATUSES,
    AssignmentStatus,
    InvitationBatchResult,
    InvitationOptions,
    InvitationOutcome,
    InvitationResponse,
    InvitationStats,
    InvitationStatus,
    ReviewAssignment,
    ReviewerInvitation,
)
from editorial_engine.models.manuscript import Manuscript, ManuscriptStatus
from editorial_engine.services.conflict_service import ConflictOfInterestEngine
from editorial_engine.services.lifecycle_service import LifecycleStateMachine
from editorial_engine.services.notification_service import NotificationSender, deliver

logger = logging.getLogger("editorial_engine.invitations")

_INVITABLE_STATUSES = {ManuscriptStatus.WITH_EDITOR, ManuscriptStatus.UNDER_REVIEW}


@dataclass(frozen=True)
class ResponseResult:
    invitation: ReviewerInvitation
    assignment: Optional[ReviewAssignment] = None
    manuscript_status: Optional[str] = None


class InvitationOrchestrator:
    """
    审稿邀请编排：批量邀请（COI 过滤 + 错峰）、回复处理、撤回/改派、提醒与过期。

    中文注释:
    - 批量结果里逐个列出每位审稿人的结果；COI 拦截的人绝不静默丢弃。
    - 回复按 invitation 行的 version 串行化（CAS），不同邀请之间互不阻塞。
    - 提醒的幂等键是 (invitation_id, offset_days)，由 invitation_reminders 唯一约束保证。
    """

    def __init__(
        self,
        store: EntityStore,
        conflicts: ConflictOfInterestEngine,
        lifecycle: LifecycleStateMachine,
        roles: RoleProvider,
        sender: NotificationSender,
        *,
        clock: Clock | None = None,
        config: WorkflowConfig | None = None,
        signer: InvitationTokenSigner | None = None,
    ) -> None:
        self.store = store
        self.conflicts = conflicts
        self.lifecycle = lifecycle
        self.roles = roles
        self.sender = sender
        self.clock = clock or SystemClock()
        self.config = config or WorkflowConfig()
        self.signer = signer or InvitationTokenSigner(max_age_seconds=self.config.response_token_max_age_seconds)

    # === 邀请 ===

    def _require_editor(self, actor_id: str) -> Role:
        role = self.roles.role_of(str(actor_id))
        if role not in {Role.EDITOR, Role.ADMIN}:
            raise Unauthorized("Only editors can manage reviewer invitations", actor_id=actor_id)
        return role

    def send_invitations(
        self,
        manuscript_id: str,
        reviewer_ids: Iterable[str],
        review_deadline: datetime,
        response_deadline: Optional[datetime] = None,
        options: InvitationOptions | Mapping[str, Any] | None = None,
        *,
        invited_by: str,
    ) -> InvitationBatchResult:
        self._require_editor(invited_by)
        opts = options if isinstance(options, InvitationOptions) else InvitationOptions.model_validate(options or {})

        manuscript = Manuscript.from_row(self.store.require("manuscripts", manuscript_id))
        if manuscript.status not in _INVITABLE_STATUSES:
            raise PreconditionNotMet(
                f"Cannot invite reviewers while manuscript is {manuscript.status.value}",
                manuscript_id=manuscript_id,
            )

        now = self.clock.now()
        response_deadline = parse_datetime(response_deadline) or (
            now + timedelta(days=self.config.default_response_deadline_days)
        )
        review_deadline = parse_datetime(review_deadline)
        if review_deadline is None or review_deadline <= now:
            raise PreconditionNotMet("Review deadline must be in the future")
        if response_deadline <= now:
            raise PreconditionNotMet("Response deadline must be in the future")

        interval_hours = (
            opts.stagger_interval_hours
            if opts.stagger_interval_hours is not None
            else self.config.default_stagger_interval_hours
        )
        reminder_schedule = (
            sorted({int(d) for d in (opts.reminder_schedule or self.config.reminder_schedule_days) if int(d) > 0})
            if opts.send_reminders
            else []
        )

        unique_ids = [str(r) for r in dict.fromkeys(str(r) for r in reviewer_ids if str(r).strip())]
        active = self._active_reviewers(manuscript)

        results: list[InvitationOutcome] = []
        slot = 0
        for eligibility in self.conflicts.evaluate(manuscript_id, unique_ids):
            reviewer_id = eligibility.reviewer_id
            if reviewer_id in active:
                results.append(
                    InvitationOutcome(
                        reviewer_id=reviewer_id,
                        status="failed",
                        success=False,
                        error="Reviewer already has an active invitation for this manuscript",
                    )
                )
                continue
            if not eligibility.is_eligible:
                blocking = eligibility.blocking_conflicts
                error = IneligibleReviewer(reviewer_id, blocking)
                logger.info("skipping ineligible reviewer %s for %s: %s", reviewer_id, manuscript_id, error.detail)
                results.append(
                    InvitationOutcome(
                        reviewer_id=reviewer_id,
                        status="failed",
                        success=False,
                        error=error.detail,
                        conflicts=blocking,
                    )
                )
                continue

            scheduled_for = now + timedelta(hours=slot * float(interval_hours)) if opts.staggered else now
            slot += 1
            results.append(
                self._create_invitation(
                    manuscript=manuscript,
                    reviewer_id=reviewer_id,
                    invited_by=invited_by,
                    review_deadline=review_deadline,
                    response_deadline=response_deadline,
                    scheduled_for=scheduled_for,
                    reminder_schedule=reminder_schedule,
                    opts=opts,
                )
            )

        success_count = len([r for r in results if r.success])
        batch = InvitationBatchResult(
            total_invited=len(unique_ids),
            success_count=success_count,
            failure_count=len(results) - success_count,
            results=results,
            metadata={
                "manuscript_id": manuscript_id,
                "invited_by": str(invited_by),
                "staggered": opts.staggered,
                "stagger_interval_hours": interval_hours if opts.staggered else 0,
                "reminder_schedule": reminder_schedule,
                "response_deadline": response_deadline.isoformat(),
                "review_deadline": review_deadline.isoformat(),
                "processed_at": now.isoformat(),
            },
        )
        logger.info(
            "invitation batch for %s: %s/%s succeeded",
            manuscript_id,
            batch.success_count,
            batch.total_invited,
        )
        return batch

    def _active_reviewers(self, manuscript: Manuscript) -> set[str]:
        """
        仍占用本轮审稿名额的审稿人。

        中文注释:
        - pending 邀请无论轮次都算占用。
        - accepted 邀请只在本轮且审稿未完成时占用；上一轮的审稿人在修回后可以再次邀请。
        """
        active: set[str] = set()
        for row in self.store.list(
            "reviewer_invitations",
            manuscript_id=manuscript.id,
            status=sorted(ACTIVE_INVITATION_STATUSES),
        ):
            reviewer_id = str(row.get("reviewer_id"))
            if row.get("status") == InvitationStatus.PENDING.value:
                active.add(reviewer_id)
                continue
            if int(row.get("review_round") or 1) != manuscript.review_round:
                continue
            assignment = self.store.first("review_assignments", invitation_id=row["id"])
            if assignment is not None and assignment.get("status") == AssignmentStatus.COMPLETED.value:
                continue
            active.add(reviewer_id)
        return active

    def _create_invitation(
        self,
        *,
        manuscript: Manuscript,
        reviewer_id: str,
        invited_by: str,
        review_deadline: datetime,
        response_deadline: datetime,
        scheduled_for: datetime,
        reminder_schedule: list[int],
        opts: InvitationOptions,
    ) -> InvitationOutcome:
        now = self.clock.now()
        try:
            row = self.store.create(
                "reviewer_invitations",
                {
                    "manuscript_id": manuscript.id,
                    "reviewer_id": reviewer_id,
                    "invited_by": str(invited_by),
                    "status": InvitationStatus.PENDING.value,
                    "review_round": manuscript.review_round,
                    "review_deadline": review_deadline.isoformat(),
                    "response_deadline": response_deadline.isoformat(),
                    "scheduled_for": scheduled_for.isoformat(),
                    "sent_at": None,
                    "delivery_attempted_at": None,
                    "reminder_count": 0,
                    "reminder_schedule": reminder_schedule,
                    "send_reminders": bool(reminder_schedule),
                    "custom_message": opts.custom_message,
                    "priority": opts.priority,
                    "created_at": now.isoformat(),
                },
            )
        except EditorialError as e:
            logger.warning("invitation insert failed for reviewer %s: %s", reviewer_id, e)
            return InvitationOutcome(reviewer_id=reviewer_id, status="failed", success=False, error=e.detail)

        if scheduled_for > now:
            return InvitationOutcome(
                reviewer_id=reviewer_id,
                status="scheduled",
                success=True,
                scheduled_for=scheduled_for,
                invitation_id=row["id"],
            )

        delivered = self._deliver_invitation(row, manuscript)
        return InvitationOutcome(
            reviewer_id=reviewer_id,
            status="sent" if delivered else "pending_delivery",
            success=True,
            scheduled_for=scheduled_for,
            invitation_id=row["id"],
        )

    def response_token(self, invitation: ReviewerInvitation | Mapping[str, Any]) -> str:
        inv = invitation if isinstance(invitation, ReviewerInvitation) else ReviewerInvitation.model_validate(invitation)
        return self.signer.dumps(inv.id, inv.reviewer_id)

    def _deliver_invitation(self, row: Mapping[str, Any], manuscript: Manuscript | None = None) -> bool:
        """
        投递一封邀请：先 CAS 抢占 delivery_attempted_at（多调度实例只有一个能抢到），再发送。
        """
        now = self.clock.now()
        try:
            claimed = self.store.update(
                "reviewer_invitations",
                row["id"],
                {"delivery_attempted_at": now.isoformat()},
                expected_version=int(row["version"]),
            )
        except ConcurrentModification:
            logger.info("invitation %s delivery claimed elsewhere", row["id"])
            return False

        invitation = ReviewerInvitation.model_validate(claimed)
        if manuscript is None:
            manuscript = Manuscript.from_row(self.store.require("manuscripts", invitation.manuscript_id))
        ok = deliver(
            self.sender,
            invitation.reviewer_id,
            "reviewer_invitation",
            {
                "manuscript_id": invitation.manuscript_id,
                "manuscript_title": manuscript.title,
                "invitation_id": invitation.id,
                "review_deadline": invitation.review_deadline.isoformat(),
                "response_deadline": invitation.response_deadline.isoformat(),
                "response_token": self.response_token(invitation),
                "custom_message": invitation.custom_message,
                "priority": invitation.priority,
            },
        )
        if ok:
            self.store.update("reviewer_invitations", invitation.id, {"sent_at": now.isoformat()})
        return ok

    # === 回复 ===

    def respond(
        self,
        invitation_id: str,
        reviewer_id: str,
        decision: str,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> ResponseResult:
        try:
            response = InvitationResponse.model_validate({**dict(metadata or {}), "decision": decision})
        except ValidationError as e:
            messages = "; ".join(str(err.get("msg")) for err in e.errors())
            raise PreconditionNotMet(messages or "Invalid invitation response", invitation_id=invitation_id) from e

        invitation = retry_on_conflict(
            self._record_response,
            invitation_id,
            str(reviewer_id),
            response,
            attempts=self.config.transition_max_retries,
        )

        if response.decision == "decline":
            self._store_alternative(invitation, response)
            logger.info("invitation %s declined by %s", invitation.id, reviewer_id)
            return ResponseResult(invitation=invitation)

        assignment = self._create_assignment(invitation)
        manuscript_status = self._start_review_if_first(invitation.manuscript_id)
        logger.info("invitation %s accepted by %s", invitation.id, reviewer_id)
        return ResponseResult(invitation=invitation, assignment=assignment, manuscript_status=manuscript_status)

    def respond_by_token(
        self,
        token: str,
        decision: str,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> ResponseResult:
        payload = self.signer.loads(token)
        return self.respond(payload["invitation_id"], payload["reviewer_id"], decision, metadata)

    def _record_response(
        self,
        invitation_id: str,
        reviewer_id: str,
        response: InvitationResponse,
    ) -> ReviewerInvitation:
        row = self.store.require("reviewer_invitations", invitation_id)
        invitation = ReviewerInvitation.model_validate(row)
        if invitation.reviewer_id != reviewer_id:
            raise Unauthorized("Invitation belongs to another reviewer", invitation_id=invitation_id)
        if invitation.status == InvitationStatus.EXPIRED:
            raise InvitationExpired("Invitation has expired", invitation_id=invitation_id)
        if invitation.status != InvitationStatus.PENDING:
            raise AlreadyResponded(invitation_id, invitation.status.value)

        now = self.clock.now()
        if now > invitation.response_deadline:
            self._expire(row)
            raise InvitationExpired("Invitation response deadline has passed", invitation_id=invitation_id)

        accepted = response.decision == "accept"
        patch: dict[str, Any] = {
            "status": (InvitationStatus.ACCEPTED if accepted else InvitationStatus.DECLINED).value,
            "responded_at": now.isoformat(),
            "response_metadata": response.model_dump(
                mode="json",
                exclude={"decision", "alternative_reviewer"},
                exclude_none=True,
            ),
        }
        if not accepted:
            patch["decline_reason"] = (response.decline_reason or "").strip()
        # 版本不一致说明有人先写了（另一条回复/过期清扫/提醒计数）；重新读取后再判定
        updated = self.store.update("reviewer_invitations", invitation_id, patch, expected_version=int(row["version"]))
        return ReviewerInvitation.model_validate(updated)

    def _store_alternative(self, invitation: ReviewerInvitation, response: InvitationResponse) -> None:
        if response.alternative_reviewer is None:
            return
        try:
            self.store.create(
                "suggested_reviewers",
                {
                    "manuscript_id": invitation.manuscript_id,
                    "suggested_by": invitation.reviewer_id,
                    "invitation_id": invitation.id,
                    **response.alternative_reviewer.model_dump(mode="json"),
                    "created_at": self.clock.now().isoformat(),
                },
            )
        except EditorialError as e:
            logger.warning("storing alternative reviewer failed for %s: %s", invitation.id, e)

    def _create_assignment(self, invitation: ReviewerInvitation) -> ReviewAssignment:
        manuscript = Manuscript.from_row(self.store.require("manuscripts", invitation.manuscript_id))
        try:
            row = self.store.create(
                "review_assignments",
                {
                    "manuscript_id": invitation.manuscript_id,
                    "reviewer_id": invitation.reviewer_id,
                    "invitation_id": invitation.id,
                    "status": AssignmentStatus.ACCEPTED.value,
                    "due_date": invitation.review_deadline.isoformat(),
                    "review_round": manuscript.review_round,
                    "created_at": self.clock.now().isoformat(),
                },
            )
        except DuplicateEntity:
            row = self.store.first("review_assignments", invitation_id=invitation.id)
            if row is None:
                raise
        return ReviewAssignment.model_validate(row)

    def _start_review_if_first(self, manuscript_id: str) -> str:
        manuscript = Manuscript.from_row(self.store.require("manuscripts", manuscript_id))
        if manuscript.status != ManuscriptStatus.WITH_EDITOR:
            return manuscript.status.value
        try:
            result = self.lifecycle.transition_with_retry(
                manuscript_id,
                ManuscriptStatus.UNDER_REVIEW.value,
                SYSTEM_ACTOR_ID,
                comment="first reviewer accepted",
            )
        except InvalidTransition as e:
            # 并发接受时另一条回复已经推进了状态
            logger.info("under_review transition skipped for %s: %s", manuscript_id, e.detail)
            return Manuscript.from_row(self.store.require("manuscripts", manuscript_id)).status.value
        return result.manuscript.status.value

    # === 撤回 / 改派 ===

    def withdraw(self, invitation_id: str, actor_id: str, *, reason: Optional[str] = None) -> ReviewerInvitation:
        self._require_editor(actor_id)

        def _withdraw_once() -> dict[str, Any]:
            row = self.store.require("reviewer_invitations", invitation_id)
            if row.get("status") != InvitationStatus.PENDING.value:
                raise PreconditionNotMet(
                    f"Only pending invitations can be withdrawn (status={row.get('status')})",
                    invitation_id=invitation_id,
                )
            return self.store.update(
                "reviewer_invitations",
                invitation_id,
                {
                    "status": InvitationStatus.WITHDRAWN.value,
                    "withdrawn_by": str(actor_id),
                    "withdrawn_reason": reason,
                    "responded_at": None,
                },
                expected_version=int(row["version"]),
            )

        invitation = ReviewerInvitation.model_validate(
            retry_on_conflict(_withdraw_once, attempts=self.config.transition_max_retries)
        )
        if invitation.sent_at is not None:
            deliver(
                self.sender,
                invitation.reviewer_id,
                "invitation_withdrawn",
                {"manuscript_id": invitation.manuscript_id, "invitation_id": invitation.id, "reason": reason},
            )
        logger.info("invitation %s withdrawn by %s", invitation_id, actor_id)
        return invitation

    def reassign(
        self,
        invitation_id: str,
        actor_id: str,
        *,
        reason: str,
        replacement_reviewer_id: Optional[str] = None,
        review_deadline: Optional[datetime] = None,
        options: InvitationOptions | Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        """
        撤回一个已接受的邀请（同时撤回对应 ReviewAssignment），可选地邀请替代审稿人。
        """
        self._require_editor(actor_id)
        if not (reason or "").strip():
            raise PreconditionNotMet("Reassignment reason is required")

        def _withdraw_accepted_once() -> dict[str, Any]:
            row = self.store.require("reviewer_invitations", invitation_id)
            if row.get("status") != InvitationStatus.ACCEPTED.value:
                raise PreconditionNotMet(
                    "Only accepted invitations can be reassigned; withdraw pending ones instead",
                    invitation_id=invitation_id,
                )
            assignment_row = self.store.first("review_assignments", invitation_id=invitation_id)
            if assignment_row is not None and assignment_row.get("status") == AssignmentStatus.COMPLETED.value:
                raise PreconditionNotMet("Review already completed", assignment_id=assignment_row["id"])
            return self.store.update(
                "reviewer_invitations",
                invitation_id,
                {
                    "status": InvitationStatus.WITHDRAWN.value,
                    "withdrawn_by": str(actor_id),
                    "withdrawn_reason": reason.strip(),
                },
                expected_version=int(row["version"]),
            )

        # 先落邀请（CAS + 重试），成功后才撤回 assignment；邀请写失败时两者都保持原样
        updated = retry_on_conflict(_withdraw_accepted_once, attempts=self.config.transition_max_retries)
        invitation = ReviewerInvitation.model_validate(updated)
        retry_on_conflict(
            self._withdraw_assignment,
            invitation_id,
            reason.strip(),
            attempts=self.config.transition_max_retries,
        )
        deliver(
            self.sender,
            invitation.reviewer_id,
            "invitation_withdrawn",
            {"manuscript_id": invitation.manuscript_id, "invitation_id": invitation.id, "reason": reason.strip()},
        )
        logger.info("invitation %s reassigned by %s", invitation_id, actor_id)

        replacement: Optional[InvitationBatchResult] = None
        if replacement_reviewer_id:
            replacement = self.send_invitations(
                invitation.manuscript_id,
                [replacement_reviewer_id],
                review_deadline or invitation.review_deadline,
                options=options,
                invited_by=actor_id,
            )
        return {
            "invitation": invitation,
            "replacement": replacement,
        }

    def _withdraw_assignment(self, invitation_id: str, reason: str) -> Optional[dict[str, Any]]:
        assignment_row = self.store.first("review_assignments", invitation_id=invitation_id)
        if assignment_row is None:
            return None
        if assignment_row.get("status") in {AssignmentStatus.COMPLETED.value, AssignmentStatus.WITHDRAWN.value}:
            # 已完成的审稿保留；已撤回的无需再写
            logger.warning(
                "assignment %s is %s, left unchanged on reassignment",
                assignment_row["id"],
                assignment_row.get("status"),
            )
            return assignment_row
        return self.store.update(
            "review_assignments",
            assignment_row["id"],
            {"status": AssignmentStatus.WITHDRAWN.value, "withdrawn_reason": reason},
            expected_version=int(assignment_row["version"]),
        )

    # === 后台清扫（可重入） ===

    def _pending_rows(self) -> list[dict[str, Any]]:
        return self.store.list("reviewer_invitations", status=InvitationStatus.PENDING.value)

    def deliver_scheduled(self) -> int:
        """发送到点的错峰邀请；已尝试过投递的不会重复发送。"""
        now = self.clock.now()
        delivered = 0
        for row in self._pending_rows():
            if row.get("delivery_attempted_at"):
                continue
            scheduled_for = parse_datetime(row.get("scheduled_for"))
            if scheduled_for is None or scheduled_for > now:
                continue
            if self._deliver_invitation(row):
                delivered += 1
        return delivered

    def fire_due_reminders(self) -> int:
        now = self.clock.now()
        fired = 0
        for row in self._pending_rows():
            invitation = ReviewerInvitation.model_validate(row)
            if not invitation.send_reminders or not invitation.reminder_schedule:
                continue
            base = invitation.sent_at or invitation.scheduled_for
            if invitation.sent_at is None and not row.get("delivery_attempted_at"):
                continue
            if now >= invitation.response_deadline:
                continue
            for offset in sorted(invitation.reminder_schedule):
                if now < base + timedelta(days=offset):
                    break
                if self._fire_reminder(invitation, offset, now):
                    fired += 1
        return fired

    def _fire_reminder(self, invitation: ReviewerInvitation, offset: int, now: datetime) -> bool:
        try:
            key = self.store.create(
                "invitation_reminders",
                {
                    "invitation_id": invitation.id,
                    "offset_days": int(offset),
                    "fired_at": now.isoformat(),
                },
            )
        except DuplicateEntity:
            return False

        def _bump() -> dict[str, Any]:
            current = self.store.require("reviewer_invitations", invitation.id)
            return self.store.update(
                "reviewer_invitations",
                invitation.id,
                {
                    "reminder_count": int(current.get("reminder_count") or 0) + 1,
                    "last_reminder_at": now.isoformat(),
                },
                expected_version=int(current["version"]),
            )

        try:
            retry_on_conflict(_bump, attempts=self.config.transition_max_retries)
        except EditorialError:
            # 释放幂等键，下一次清扫还能补发这一档提醒
            self.store.delete("invitation_reminders", key["id"])
            raise
        deliver(
            self.sender,
            invitation.reviewer_id,
            "invitation_reminder",
            {
                "manuscript_id": invitation.manuscript_id,
                "invitation_id": invitation.id,
                "offset_days": offset,
                "response_deadline": invitation.response_deadline.isoformat(),
                "response_token": self.response_token(invitation),
            },
        )
        logger.info("reminder (day %s) fired for invitation %s", offset, invitation.id)
        return True

    def _expire(self, row: Mapping[str, Any]) -> bool:
        try:
            self.store.update(
                "reviewer_invitations",
                row["id"],
                {"status": InvitationStatus.EXPIRED.value, "expired_at": self.clock.now().isoformat()},
                expected_version=int(row["version"]),
            )
        except ConcurrentModification:
            # 回复与过期竞争：先落库者胜
            logger.info("invitation %s changed while expiring, skipped", row["id"])
            return False
        logger.info("invitation %s expired", row["id"])
        return True

    def expire_overdue(self) -> int:
        now = self.clock.now()
        expired = 0
        for row in self._pending_rows():
            deadline = parse_datetime(row.get("response_deadline"))
            if deadline is not None and deadline < now and self._expire(row):
                expired += 1
        return expired

    # === 统计 ===

    def invitation_stats(self, manuscript_id: str) -> InvitationStats:
        rows = [ReviewerInvitation.model_validate(r) for r in self.store.list("reviewer_invitations", manuscript_id=manuscript_id)]
        stats = InvitationStats(total=len(rows))
        response_hours: list[float] = []
        for inv in rows:
            setattr(stats, inv.status.value, getattr(stats, inv.status.value) + 1)
            if inv.responded_at is not None and inv.status in {InvitationStatus.ACCEPTED, InvitationStatus.DECLINED}:
                start = inv.sent_at or inv.created_at or inv.scheduled_for
                response_hours.append(max(0.0, (inv.responded_at - start).total_seconds() / 3600))
        if stats.total:
            stats.response_rate = round((stats.accepted + stats.declined) / stats.total, 4)
        if response_hours:
            stats.avg_response_hours = round(sum(response_hours) / len(response_hours), 2)
        return stats
