from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

from pydantic import BaseModel, Field, ValidationError

from editorial_engine.core.clock import Clock, SystemClock
from editorial_engine.core.errors import DuplicateEntity, PreconditionNotMet, Unauthorized
from editorial_engine.lib.entity_store import EntityStore
from editorial_engine.models.invitation import AssignmentStatus, ReviewAssignment
from editorial_engine.services.quality_service import QualityService

logger = logging.getLogger("editorial_engine.assignments")


class ReviewSubmission(BaseModel):
    """审稿意见提交载荷（五个必填段落缺失时仍可提交，由质量分析给出 completeness）"""

    summary: str = ""
    strengths: str = ""
    weaknesses: str = ""
    detailed_comments: str = ""
    recommendation: str = Field(..., min_length=1)
    confidential_comments: Optional[str] = None


class AssignmentService:
    """
    ReviewAssignment 生命周期：accepted -> in_progress -> completed。
    """

    def __init__(
        self,
        store: EntityStore,
        quality: QualityService,
        *,
        clock: Clock | None = None,
    ) -> None:
        self.store = store
        self.quality = quality
        self.clock = clock or SystemClock()

    def _require_own(self, assignment_id: str, reviewer_id: str) -> dict[str, Any]:
        row = self.store.require("review_assignments", assignment_id)
        if str(row.get("reviewer_id")) != str(reviewer_id):
            raise Unauthorized("Assignment belongs to another reviewer", assignment_id=assignment_id)
        return row

    def list_for_manuscript(self, manuscript_id: str, *, status: Optional[str] = None) -> list[ReviewAssignment]:
        filters: dict[str, Any] = {"manuscript_id": manuscript_id}
        if status is not None:
            filters["status"] = status
        return [ReviewAssignment.model_validate(r) for r in self.store.list("review_assignments", **filters)]

    def start_review(self, assignment_id: str, reviewer_id: str) -> ReviewAssignment:
        row = self._require_own(assignment_id, reviewer_id)
        if row.get("status") == AssignmentStatus.IN_PROGRESS.value:
            return ReviewAssignment.model_validate(row)
        if row.get("status") != AssignmentStatus.ACCEPTED.value:
            raise PreconditionNotMet(
                f"Cannot start review from status {row.get('status')}",
                assignment_id=assignment_id,
            )
        updated = self.store.update(
            "review_assignments",
            assignment_id,
            {"status": AssignmentStatus.IN_PROGRESS.value, "started_at": self.clock.now().isoformat()},
            expected_version=int(row["version"]),
        )
        return ReviewAssignment.model_validate(updated)

    def submit_review(
        self,
        assignment_id: str,
        reviewer_id: str,
        payload: Mapping[str, Any],
    ) -> dict[str, Any]:
        """
        提交审稿意见：写 reviews 行 + 标记 assignment completed，并在没有新鲜报告时排队质量分析。
        """
        try:
            submission = ReviewSubmission.model_validate(dict(payload))
        except ValidationError as e:
            raise PreconditionNotMet("A recommendation is required", assignment_id=assignment_id) from e

        row = self._require_own(assignment_id, reviewer_id)
        status = row.get("status")
        if status not in {AssignmentStatus.ACCEPTED.value, AssignmentStatus.IN_PROGRESS.value}:
            raise PreconditionNotMet(f"Cannot submit a review from status {status}", assignment_id=assignment_id)

        now = self.clock.now().isoformat()
        try:
            review = self.store.create(
                "reviews",
                {
                    "assignment_id": assignment_id,
                    "manuscript_id": row.get("manuscript_id"),
                    "reviewer_id": str(reviewer_id),
                    "review_round": row.get("review_round") or 1,
                    "due_date": row.get("due_date"),
                    "submitted_at": now,
                    "created_at": now,
                    **submission.model_dump(),
                },
            )
        except DuplicateEntity as e:
            raise PreconditionNotMet("Review already submitted", assignment_id=assignment_id) from e

        self.store.update(
            "review_assignments",
            assignment_id,
            {"status": AssignmentStatus.COMPLETED.value, "completed_at": now},
        )
        job_id = self.quality.queue_analysis_if_stale(review["id"])
        logger.info("review %s submitted for assignment %s (analysis job=%s)", review["id"], assignment_id, job_id)
        return {"review": review, "analysis_job_id": job_id}
