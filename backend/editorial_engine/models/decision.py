from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class DecisionValue(str, Enum):
    ACCEPTED = "accepted"
    REVISIONS_REQUESTED = "revisions_requested"
    REJECTED = "rejected"


class ActionType(str, Enum):
    """
    决策后动作（封闭枚举）。

    中文注释: 每个成员必须在 PostDecisionActionOrchestrator 的 handler 表里有且只有一个处理函数，
    构造 orchestrator 时会校验完整性。
    """

    NOTIFY_AUTHOR = "notify_author"
    NOTIFY_REVIEWERS = "notify_reviewers"
    GENERATE_DOI = "generate_doi"
    ASSIGN_PRODUCTION_EDITOR = "assign_production_editor"
    SCHEDULE_PUBLICATION = "schedule_publication"
    FOLLOW_UP_REMINDER = "follow_up_reminder"
    SEND_TO_PRODUCTION = "send_to_production"


class ActionStatus(str, Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class EditorialDecision(BaseModel):
    id: str
    manuscript_id: str
    decision: DecisionValue
    decision_letter: str = ""
    editor_id: Optional[str] = None
    review_round: int = 1
    created_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    version: int = 1


class DecisionOptions(BaseModel):
    """record_decision 的附加参数，会原样透传给每个动作"""

    production_editor_id: Optional[str] = None
    publication_date: Optional[datetime] = None
    follow_up_days: Optional[int] = Field(default=None, ge=1)
    actions: Optional[list[ActionType]] = None


class ActionResult(BaseModel):
    action_type: ActionType
    success: bool
    error: Optional[str] = None


class DecisionOutcome(BaseModel):
    decision: EditorialDecision
    manuscript_status: str
    created: bool = True
    actions: list[ActionResult] = Field(default_factory=list)

    @property
    def failed_actions(self) -> list[ActionType]:
        return [a.action_type for a in self.actions if not a.success]


class ActionAttempt(BaseModel):
    decision_id: Optional[str] = None
    manuscript_id: Optional[str] = None
    action_type: ActionType
    success: bool
    error: Optional[str] = None
    details: dict[str, Any] = Field(default_factory=dict)
    attempted_at: datetime
