from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field, model_validator

from editorial_engine.models.conflict import ConflictRecord


class InvitationStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    EXPIRED = "expired"
    WITHDRAWN = "withdrawn"


class AssignmentStatus(str, Enum):
    INVITED = "invited"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    WITHDRAWN = "withdrawn"


# 可能仍占用审稿名额的状态（用于重复邀请拦截，accepted 还需按轮次判断）
ACTIVE_INVITATION_STATUSES = frozenset({InvitationStatus.PENDING.value, InvitationStatus.ACCEPTED.value})


class ReviewerInvitation(BaseModel):
    id: str
    manuscript_id: str
    reviewer_id: str
    invited_by: Optional[str] = None
    status: InvitationStatus = InvitationStatus.PENDING
    review_round: int = 1
    review_deadline: datetime
    response_deadline: datetime
    scheduled_for: datetime
    sent_at: Optional[datetime] = None
    delivery_attempted_at: Optional[datetime] = None
    reminder_count: int = 0
    reminder_schedule: list[int] = Field(default_factory=list)
    send_reminders: bool = True
    decline_reason: Optional[str] = None
    responded_at: Optional[datetime] = None
    response_metadata: dict[str, Any] = Field(default_factory=dict)
    custom_message: Optional[str] = None
    priority: str = "normal"
    version: int = 1
    created_at: Optional[datetime] = None


class ReviewAssignment(BaseModel):
    id: str
    manuscript_id: str
    reviewer_id: str
    invitation_id: Optional[str] = None
    status: AssignmentStatus = AssignmentStatus.ACCEPTED
    due_date: datetime
    review_round: int = 1
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    version: int = 1
    created_at: Optional[datetime] = None


class InvitationOptions(BaseModel):
    """sendInvitations 的可选参数"""

    staggered: bool = False
    stagger_interval_hours: Optional[float] = Field(default=None, ge=0)
    send_reminders: bool = True
    reminder_schedule: Optional[list[int]] = None
    custom_message: Optional[str] = None
    priority: Literal["normal", "high", "urgent"] = "normal"


class AlternativeReviewer(BaseModel):
    name: str
    email: Optional[str] = None
    affiliation: Optional[str] = None
    expertise: Optional[str] = None
    reason: Optional[str] = None


class InvitationResponse(BaseModel):
    """
    审稿人回复邀请的载荷。

    中文注释: 接受时必须确认档期；拒绝时必须给出原因（与公开回复链接的校验保持一致）。
    """

    decision: Literal["accept", "decline"]
    availability_confirmed: bool = False
    decline_reason: Optional[str] = None
    alternative_reviewer: Optional[AlternativeReviewer] = None
    expertise_rating: Optional[int] = Field(default=None, ge=1, le=5)
    additional_comments: Optional[str] = None

    @model_validator(mode="after")
    def _validate_decision_fields(self) -> "InvitationResponse":
        if self.decision == "accept" and not self.availability_confirmed:
            raise ValueError("Availability confirmation is required when accepting")
        if self.decision == "decline" and not (self.decline_reason or "").strip():
            raise ValueError("Decline reason is required when declining")
        return self


class InvitationOutcome(BaseModel):
    reviewer_id: str
    status: Literal["sent", "scheduled", "pending_delivery", "failed"]
    success: bool
    error: Optional[str] = None
    scheduled_for: Optional[datetime] = None
    invitation_id: Optional[str] = None
    conflicts: list[ConflictRecord] = Field(default_factory=list)


class InvitationBatchResult(BaseModel):
    total_invited: int
    success_count: int
    failure_count: int
    results: list[InvitationOutcome]
    metadata: dict[str, Any] = Field(default_factory=dict)


class InvitationStats(BaseModel):
    total: int = 0
    pending: int = 0
    accepted: int = 0
    declined: int = 0
    expired: int = 0
    withdrawn: int = 0
    response_rate: float = 0.0
    avg_response_hours: float = 0.0
