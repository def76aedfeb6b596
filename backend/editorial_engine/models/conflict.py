from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, computed_field


class ConflictType(str, Enum):
    INSTITUTIONAL_CURRENT = "institutional_current"
    INSTITUTIONAL_RECENT = "institutional_recent"
    COAUTHORSHIP_RECENT = "coauthorship_recent"
    COAUTHORSHIP_FREQUENT = "coauthorship_frequent"
    FINANCIAL_COMPETING = "financial_competing"
    FINANCIAL_COLLABORATION = "financial_collaboration"
    OTHER = "other"


class ConflictSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    BLOCKING = "blocking"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    ConflictSeverity.LOW: 1,
    ConflictSeverity.MEDIUM: 2,
    ConflictSeverity.HIGH: 3,
    ConflictSeverity.BLOCKING: 4,
}


class ConflictRecord(BaseModel):
    """
    冲突记录：由当前事实纯函数推导，不作为事实源持久化。
    """

    reviewer_id: str
    author_id: str
    conflict_type: ConflictType
    severity: ConflictSeverity
    description: str = ""
    evidence: dict[str, Any] = Field(default_factory=dict)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def is_blocking(self) -> bool:
        return self.severity == ConflictSeverity.BLOCKING

    @property
    def fingerprint(self) -> str:
        # 覆盖（override）按 “类型:作者” 记忆自己放行过哪些 blocking 冲突
        return f"{self.conflict_type.value}:{self.author_id}"


class EligibilityOverride(BaseModel):
    id: Optional[str] = None
    manuscript_id: str
    reviewer_id: str
    reason: str
    overridden_by: str
    covered_conflicts: list[str] = Field(default_factory=list)
    timestamp: datetime


class ReviewerEligibility(BaseModel):
    reviewer_id: str
    is_eligible: bool
    conflicts: list[ConflictRecord] = Field(default_factory=list)
    risk_score: int = Field(0, ge=0, le=100)
    override: Optional[EligibilityOverride] = None

    @property
    def blocking_conflicts(self) -> list[ConflictRecord]:
        return [c for c in self.conflicts if c.is_blocking]


# === 冲突证据（外部事实源） ===


class Affiliation(BaseModel):
    person_id: str
    institution: str
    department: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None  # None 表示当前在职


class Collaboration(BaseModel):
    person_a_id: str
    person_b_id: str
    relationship_type: str = "coauthor"
    collaboration_count: int = 1
    first_collaboration_date: Optional[date] = None
    last_collaboration_date: date
    confidence_score: Optional[float] = None

    def other(self, person_id: str) -> str:
        return self.person_b_id if self.person_a_id == person_id else self.person_a_id


class FinancialInterest(BaseModel):
    person_id: str
    entity: str
    relation: str = "collaboration"  # competing | collaboration
    description: Optional[str] = None


class DeclaredConflict(BaseModel):
    reviewer_id: str
    conflicted_with_id: str
    severity: ConflictSeverity
    description: str = ""
    status: str = "active"
    valid_until: Optional[datetime] = None
    reported_by: Optional[str] = None


class ConflictStatistics(BaseModel):
    manuscript_id: str
    reviewers_checked: int = 0
    total_conflicts: int = 0
    by_type: dict[str, int] = Field(default_factory=dict)
    by_severity: dict[str, int] = Field(default_factory=dict)
    blocked_reviewers: int = 0
    overridden_reviewers: int = 0
