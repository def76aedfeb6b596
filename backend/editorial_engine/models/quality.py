from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class QualityJobType(str, Enum):
    QUICK_CHECK = "quick_check"
    CONSISTENCY_ANALYSIS = "consistency_analysis"
    FULL_ANALYSIS = "full_analysis"


class QualityJobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class QualityReportStatus(str, Enum):
    AUTO_ANALYZED = "auto_analyzed"
    EDITOR_REVIEWED = "editor_reviewed"


class QualityFlag(str, Enum):
    EXCELLENT_QUALITY = "excellent_quality"
    NEEDS_IMPROVEMENT = "needs_improvement"
    BIAS_SUSPECTED = "bias_suspected"
    UNPROFESSIONAL_TONE = "unprofessional_tone"
    INCOMPLETE_REVIEW = "incomplete_review"
    INCONSISTENT_RECOMMENDATION = "inconsistent_recommendation"
    LOW_CONSTRUCTIVENESS = "low_constructiveness"


class QualityAnalysisJob(BaseModel):
    id: str
    review_id: str
    job_type: QualityJobType = QualityJobType.FULL_ANALYSIS
    priority: int = Field(5, ge=1, le=10)
    status: QualityJobStatus = QualityJobStatus.QUEUED
    attempts: int = 0
    max_attempts: int = 3
    available_at: Optional[datetime] = None
    last_error: Optional[str] = None
    requested_by: Optional[str] = None
    locked_by: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    version: int = 1
    created_at: Optional[datetime] = None


class QualityMetrics(BaseModel):
    completeness: Optional[float] = None
    depth: Optional[float] = None
    timeliness: Optional[float] = None
    specificity: Optional[float] = None
    constructiveness: Optional[float] = None
    clarity: Optional[float] = None
    professionalism: Optional[float] = None
    recommendation_alignment: Optional[float] = None
    internal_consistency: Optional[float] = None
    cross_reviewer_consistency: Optional[float] = None
    bias_indicators: list[str] = Field(default_factory=list)

    def scored(self) -> dict[str, float]:
        return {
            name: float(value)
            for name, value in self.model_dump(exclude={"bias_indicators"}).items()
            if value is not None
        }


class QualityReport(BaseModel):
    id: Optional[str] = None
    review_id: str
    reviewer_id: Optional[str] = None
    manuscript_id: Optional[str] = None
    overall_score: Optional[float] = None
    metrics: QualityMetrics = Field(default_factory=QualityMetrics)
    flags: list[str] = Field(default_factory=list)
    editor_flags: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)
    editor_rating: Optional[int] = Field(default=None, ge=1, le=5)
    editor_notes: Optional[str] = None
    editor_id: Optional[str] = None
    status: QualityReportStatus = QualityReportStatus.AUTO_ANALYZED
    analyzed_at: Optional[datetime] = None
    version: int = 1

    @property
    def all_flags(self) -> list[str]:
        return list(dict.fromkeys([*self.flags, *self.editor_flags]))


class EditorFeedback(BaseModel):
    """编辑对审稿质量的权威评价（同步写入）"""

    rating: int = Field(..., ge=1, le=5)
    notes: Optional[str] = Field(default=None, max_length=5000)
    flags: list[str] = Field(default_factory=list)


class ReviewerQualityProfile(BaseModel):
    id: Optional[str] = None
    reviewer_id: str
    review_scores: dict[str, float] = Field(default_factory=dict)
    low_quality_review_ids: list[str] = Field(default_factory=list)
    badges: list[dict[str, Any]] = Field(default_factory=list)
    excellence_count: int = 0
    version: int = 1

    @property
    def average_score(self) -> Optional[float]:
        if not self.review_scores:
            return None
        return sum(self.review_scores.values()) / len(self.review_scores)

    @property
    def low_quality_count(self) -> int:
        return len(self.low_quality_review_ids)


class TrainingTaskStatus(str, Enum):
    OPEN = "open"
    COMPLETED = "completed"


class ReviewerTrainingTask(BaseModel):
    id: str
    reviewer_id: str
    status: TrainingTaskStatus = TrainingTaskStatus.OPEN
    reason: str = ""
    triggered_by_review_id: Optional[str] = None
    # 只在 open 时等于 reviewer_id；配合唯一键保证“同一审稿人最多一个未完成培训”
    open_slot: Optional[str] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    version: int = 1


class FeedbackOutcome(BaseModel):
    report: QualityReport
    training_task_id: Optional[str] = None
    training_task_created: bool = False
    badge_awarded: bool = False
