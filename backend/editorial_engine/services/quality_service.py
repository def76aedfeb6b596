from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Callable, Iterable, Optional

from pydantic import ValidationError

from editorial_engine.core.clock import Clock, SystemClock
from editorial_engine.core.config import QualityConfig
from editorial_engine.core.errors import (
    ConcurrentModification,
    DuplicateEntity,
    PreconditionNotMet,
    Unauthorized,
)
from editorial_engine.core.retry import retry_on_conflict
from editorial_engine.core.roles import Role, RoleProvider
from editorial_engine.lib.entity_store import EntityStore
from editorial_engine.models.quality import (
    EditorFeedback,
    FeedbackOutcome,
    QualityAnalysisJob,
    QualityJobStatus,
    QualityJobType,
    QualityReport,
    QualityReportStatus,
    ReviewerQualityProfile,
    ReviewerTrainingTask,
    TrainingTaskStatus,
)
from editorial_engine.services.notification_service import NotificationSender, deliver
from editorial_engine.services.quality_analysis import analyze_review, review_age_hours
from editorial_engine.services.quality_queue import JobQueue

logger = logging.getLogger("editorial_engine.quality")

_CONFLICT_RETRIES = 5


class QualityService:
    """
    审稿质量流水线（入队 / 分析落库 / 编辑反馈 / 培训与徽章）。

    中文注释:
    - queue_analysis 只负责入队并立刻返回 job_id，绝不等待分析完成。
    - 编辑反馈是同步且权威的：覆盖报告中的计算结果，并按配置阈值触发副作用。
    - 同一审稿人最多一个未完成培训（reviewer_training_tasks.open_slot 唯一键）。
    - 徽章按 review 去重：同一条审稿的重复好评不会重复计数。
    """

    def __init__(
        self,
        store: EntityStore,
        queue: JobQueue,
        roles: RoleProvider,
        sender: NotificationSender,
        *,
        clock: Clock | None = None,
        config: QualityConfig | None = None,
    ) -> None:
        self.store = store
        self.queue = queue
        self.roles = roles
        self.sender = sender
        self.clock = clock or SystemClock()
        self.config = config or QualityConfig()

    # === 入队 ===

    def queue_analysis(
        self,
        review_id: str,
        job_type: QualityJobType | str = QualityJobType.FULL_ANALYSIS,
        priority: int = 5,
        *,
        requested_by: Optional[str] = None,
    ) -> str:
        try:
            kind = QualityJobType(job_type)
        except ValueError as e:
            raise PreconditionNotMet(f"Unknown quality job type: {job_type}") from e
        if isinstance(priority, bool) or not isinstance(priority, int) or not 1 <= priority <= 10:
            raise PreconditionNotMet("Priority must be an integer between 1 and 10", priority=priority)
        self.store.require("reviews", review_id)

        for job in self.queue.list(status=QualityJobStatus.QUEUED.value, review_id=str(review_id)):
            if job.job_type == kind:
                logger.info("analysis for review %s already queued as %s", review_id, job.id)
                return job.id

        job = self.queue.enqueue(
            str(review_id),
            kind.value,
            priority,
            requested_by=requested_by,
            max_attempts=self.config.max_attempts,
        )
        logger.info("queued %s for review %s (job=%s, priority=%s)", kind.value, review_id, job.id, priority)
        return job.id

    def queue_analysis_if_stale(
        self,
        review_id: str,
        job_type: QualityJobType | str = QualityJobType.FULL_ANALYSIS,
        priority: int = 5,
    ) -> Optional[str]:
        report = self.get_report(review_id)
        if report is not None:
            age = review_age_hours(report.analyzed_at, self.clock.now())
            if age is not None and age < self.config.report_freshness_hours:
                return None
        return self.queue_analysis(review_id, job_type, priority)

    def cancel_job(self, job_id: str) -> bool:
        cancelled = self.queue.cancel(job_id)
        if cancelled:
            logger.info("quality job %s cancelled", job_id)
        return cancelled

    def parked_jobs(self) -> list[QualityAnalysisJob]:
        return self.queue.list(status=QualityJobStatus.FAILED.value)

    def requeue_job(self, job_id: str, actor_id: str) -> QualityAnalysisJob:
        if self.roles.role_of(str(actor_id)) not in {Role.EDITOR, Role.ADMIN}:
            raise Unauthorized("Only editors can requeue quality jobs", actor_id=actor_id)
        job = self.queue.get(job_id)
        if job is None or job.status != QualityJobStatus.FAILED:
            raise PreconditionNotMet("Only parked (failed) jobs can be requeued", job_id=job_id)
        logger.info("quality job %s requeued by %s", job_id, actor_id)
        return self.queue.requeue(job_id)

    # === 分析（worker 调用） ===

    def get_report(self, review_id: str) -> Optional[QualityReport]:
        row = self.store.first("quality_reports", review_id=str(review_id))
        return QualityReport.model_validate(row) if row else None

    def run_analysis(self, job: QualityAnalysisJob) -> QualityReport:
        review = self.store.require("reviews", job.review_id)
        others = [
            r
            for r in self.store.list("reviews", manuscript_id=review.get("manuscript_id"))
            if r.get("id") != review.get("id")
        ]
        previous = self.get_report(job.review_id)
        result = analyze_review(
            review,
            job.job_type,
            weights=self.config.metric_weights,
            other_reviews=others,
            previous=previous.metrics if previous else None,
        )
        now = self.clock.now().isoformat()
        computed = {
            "overall_score": result.overall_score,
            "metrics": result.metrics.model_dump(mode="json"),
            "recommendations": result.recommendations,
            "analyzed_at": now,
        }

        def _write() -> dict[str, Any]:
            existing = self.store.first("quality_reports", review_id=job.review_id)
            if existing is None:
                try:
                    return self.store.create(
                        "quality_reports",
                        {
                            "review_id": job.review_id,
                            "reviewer_id": review.get("reviewer_id"),
                            "manuscript_id": review.get("manuscript_id"),
                            "status": QualityReportStatus.AUTO_ANALYZED.value,
                            "flags": result.flags,
                            "editor_flags": [],
                            **computed,
                        },
                    )
                except DuplicateEntity as e:
                    raise ConcurrentModification("quality_reports", job.review_id) from e
            patch = dict(computed)
            # 编辑已给出的 flags 是权威结果，不被后台分析覆盖
            if existing.get("status") != QualityReportStatus.EDITOR_REVIEWED.value or not existing.get("editor_flags"):
                patch["flags"] = result.flags
            return self.store.update(
                "quality_reports",
                existing["id"],
                patch,
                expected_version=int(existing["version"]),
            )

        report = QualityReport.model_validate(retry_on_conflict(_write, attempts=_CONFLICT_RETRIES))

        reviewer_id = review.get("reviewer_id")
        if reviewer_id and report.editor_rating is None:
            self._record_score(str(reviewer_id), job.review_id, result.overall_score)
        logger.info(
            "review %s analyzed (%s): score=%s flags=%s",
            job.review_id,
            job.job_type.value,
            result.overall_score,
            result.flags,
        )
        return report

    # === 编辑反馈 ===

    def submit_editor_feedback(
        self,
        review_id: str,
        rating: int,
        notes: Optional[str] = None,
        flags: Optional[Iterable[str]] = None,
        *,
        editor_id: str,
    ) -> FeedbackOutcome:
        if self.roles.role_of(str(editor_id)) not in {Role.EDITOR, Role.ADMIN}:
            raise Unauthorized("Only editors can rate reviews", actor_id=editor_id)
        try:
            feedback = EditorFeedback(rating=rating, notes=notes, flags=list(flags or []))
        except ValidationError as e:
            raise PreconditionNotMet("Rating must be an integer between 1 and 5", review_id=review_id) from e

        review = self.store.require("reviews", review_id)
        reviewer_id = str(review.get("reviewer_id") or "")
        if not reviewer_id:
            raise PreconditionNotMet("Review has no reviewer", review_id=review_id)

        report = QualityReport.model_validate(
            retry_on_conflict(self._upsert_editor_report, review, feedback, str(editor_id), attempts=_CONFLICT_RETRIES)
        )

        profile = self._record_score(
            reviewer_id,
            str(review_id),
            feedback.rating / 5,
            low_quality=feedback.rating <= self.config.low_rating_threshold,
        )
        outcome = FeedbackOutcome(report=report)

        if feedback.rating <= self.config.low_rating_threshold and self._needs_training(profile):
            task, created = self._ensure_training_task(reviewer_id, str(review_id), feedback.rating, profile)
            outcome.training_task_id = task.id
            outcome.training_task_created = created

        if feedback.rating == self.config.excellence_rating and self.config.excellence_flag in report.all_flags:
            outcome.badge_awarded = self._award_badge(reviewer_id, str(review_id))

        logger.info(
            "editor %s rated review %s: %s (training=%s, badge=%s)",
            editor_id,
            review_id,
            feedback.rating,
            outcome.training_task_created,
            outcome.badge_awarded,
        )
        return outcome

    def _upsert_editor_report(self, review: dict[str, Any], feedback: EditorFeedback, editor_id: str) -> dict[str, Any]:
        review_id = str(review["id"])
        patch: dict[str, Any] = {
            "editor_rating": feedback.rating,
            "editor_notes": feedback.notes,
            "editor_id": editor_id,
            "status": QualityReportStatus.EDITOR_REVIEWED.value,
            "editor_reviewed_at": self.clock.now().isoformat(),
        }
        if feedback.flags:
            patch["flags"] = list(dict.fromkeys(feedback.flags))
            patch["editor_flags"] = list(dict.fromkeys(feedback.flags))

        existing = self.store.first("quality_reports", review_id=review_id)
        if existing is None:
            try:
                return self.store.create(
                    "quality_reports",
                    {
                        "review_id": review_id,
                        "reviewer_id": review.get("reviewer_id"),
                        "manuscript_id": review.get("manuscript_id"),
                        "flags": [],
                        "editor_flags": [],
                        **patch,
                    },
                )
            except DuplicateEntity as e:
                # 与后台分析同时创建：重读后走更新分支
                raise ConcurrentModification("quality_reports", review_id) from e
        return self.store.update(
            "quality_reports",
            existing["id"],
            patch,
            expected_version=int(existing["version"]),
        )

    # === 审稿人画像 ===

    def get_profile(self, reviewer_id: str) -> ReviewerQualityProfile:
        row = self.store.first("reviewer_quality_profiles", reviewer_id=str(reviewer_id))
        return ReviewerQualityProfile.model_validate(row) if row else ReviewerQualityProfile(reviewer_id=str(reviewer_id))

    def _mutate_profile(
        self,
        reviewer_id: str,
        mutate: Callable[[ReviewerQualityProfile], bool],
    ) -> ReviewerQualityProfile:
        """
        读取 -> 修改 -> CAS 写回；mutate 返回 False 表示无需写入。
        """

        def _once() -> ReviewerQualityProfile:
            row = self.store.first("reviewer_quality_profiles", reviewer_id=reviewer_id)
            profile = (
                ReviewerQualityProfile.model_validate(row) if row else ReviewerQualityProfile(reviewer_id=reviewer_id)
            )
            if not mutate(profile):
                return profile
            payload = profile.model_dump(mode="json", exclude={"id", "version"})
            if row is None:
                try:
                    return ReviewerQualityProfile.model_validate(
                        self.store.create("reviewer_quality_profiles", payload)
                    )
                except DuplicateEntity as e:
                    raise ConcurrentModification("reviewer_quality_profiles", reviewer_id) from e
            return ReviewerQualityProfile.model_validate(
                self.store.update(
                    "reviewer_quality_profiles",
                    row["id"],
                    payload,
                    expected_version=int(row["version"]),
                )
            )

        return retry_on_conflict(_once, attempts=_CONFLICT_RETRIES)

    def _record_score(
        self,
        reviewer_id: str,
        review_id: str,
        score: float,
        *,
        low_quality: Optional[bool] = None,
    ) -> ReviewerQualityProfile:
        is_low = score < self.config.low_quality_score_threshold if low_quality is None else low_quality

        def _apply(profile: ReviewerQualityProfile) -> bool:
            profile.review_scores[review_id] = round(float(score), 4)
            if is_low and review_id not in profile.low_quality_review_ids:
                profile.low_quality_review_ids.append(review_id)
            elif not is_low and review_id in profile.low_quality_review_ids:
                profile.low_quality_review_ids.remove(review_id)
            return True

        return self._mutate_profile(reviewer_id, _apply)

    def _needs_training(self, profile: ReviewerQualityProfile) -> bool:
        average = profile.average_score
        low_average = average is not None and average < self.config.low_average_threshold
        return low_average or profile.low_quality_count >= self.config.low_quality_count_threshold

    def _ensure_training_task(
        self,
        reviewer_id: str,
        review_id: str,
        rating: int,
        profile: ReviewerQualityProfile,
    ) -> tuple[ReviewerTrainingTask, bool]:
        try:
            row = self.store.create(
                "reviewer_training_tasks",
                {
                    "reviewer_id": reviewer_id,
                    "status": TrainingTaskStatus.OPEN.value,
                    "open_slot": reviewer_id,
                    "reason": (
                        f"Editor rating {rating}; average quality "
                        f"{profile.average_score:.2f}, low-quality reviews {profile.low_quality_count}"
                    ),
                    "triggered_by_review_id": review_id,
                    "created_at": self.clock.now().isoformat(),
                },
            )
        except DuplicateEntity:
            existing = self.store.first(
                "reviewer_training_tasks",
                reviewer_id=reviewer_id,
                status=TrainingTaskStatus.OPEN.value,
            )
            if existing is None:
                raise
            return ReviewerTrainingTask.model_validate(existing), False

        task = ReviewerTrainingTask.model_validate(row)
        deliver(self.sender, reviewer_id, "reviewer_training", {"training_task_id": task.id, "reason": task.reason})
        logger.info("training task %s opened for reviewer %s", task.id, reviewer_id)
        return task, True

    def open_training_tasks(self, reviewer_id: str) -> list[ReviewerTrainingTask]:
        return [
            ReviewerTrainingTask.model_validate(r)
            for r in self.store.list(
                "reviewer_training_tasks",
                reviewer_id=str(reviewer_id),
                status=TrainingTaskStatus.OPEN.value,
            )
        ]

    def complete_training(self, task_id: str) -> ReviewerTrainingTask:
        row = self.store.require("reviewer_training_tasks", task_id)
        if row.get("status") != TrainingTaskStatus.OPEN.value:
            raise PreconditionNotMet("Training task is not open", task_id=task_id)
        updated = self.store.update(
            "reviewer_training_tasks",
            task_id,
            {
                "status": TrainingTaskStatus.COMPLETED.value,
                "open_slot": None,
                "completed_at": self.clock.now().isoformat(),
            },
            expected_version=int(row["version"]),
        )
        return ReviewerTrainingTask.model_validate(updated)

    def _award_badge(self, reviewer_id: str, review_id: str) -> bool:
        awarded: list[bool] = []

        def _apply(profile: ReviewerQualityProfile) -> bool:
            awarded.clear()
            if any(b.get("review_id") == review_id for b in profile.badges):
                awarded.append(False)
                return False
            profile.badges.append(
                {
                    "type": "quality_excellence",
                    "review_id": review_id,
                    "awarded_at": self.clock.now().isoformat(),
                }
            )
            profile.excellence_count += 1
            awarded.append(True)
            return True

        profile = self._mutate_profile(reviewer_id, _apply)
        if awarded and awarded[0]:
            deliver(
                self.sender,
                reviewer_id,
                "quality_badge",
                {"review_id": review_id, "excellence_count": profile.excellence_count},
            )
            return True
        return False

    def requeue_horizon(self, attempts: int) -> Optional[timedelta]:
        """第 attempts 次失败后的退避时长；超过上限返回 None（停放）。"""
        if attempts >= self.config.max_attempts:
            return None
        schedule = self.config.backoff_minutes or (1,)
        return timedelta(minutes=schedule[min(max(attempts, 1) - 1, len(schedule) - 1)])
