from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from editorial_engine.core.roles import Role


class ManuscriptPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class ManuscriptStatus(str, Enum):
    """
    稿件生命周期状态枚举。

    中文注释:
    - 状态只能由 LifecycleStateMachine 写入，其它组件只读。
    - published / rejected 为终态。
    """

    DRAFT = "draft"
    SUBMITTED = "submitted"
    WITH_EDITOR = "with_editor"
    UNDER_REVIEW = "under_review"
    REVISIONS_REQUESTED = "revisions_requested"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    IN_PRODUCTION = "in_production"
    PUBLISHED = "published"

    @classmethod
    def allowed_next(cls, current: str) -> set[str]:
        """
        状态机规则必须显性可见：

        - draft -> submitted
        - submitted -> with_editor
        - with_editor -> under_review
        - under_review -> revisions_requested / accepted / rejected
        - revisions_requested -> under_review
        - accepted -> in_production
        - in_production -> published
        """
        c = (current or "").strip().lower()
        return {target.value for (source, target) in TRANSITION_ROLES if source.value == c}

    @property
    def is_terminal(self) -> bool:
        return self in {ManuscriptStatus.PUBLISHED, ManuscriptStatus.REJECTED}


# 边 -> 允许的角色集合。ADMIN 作为提升权限角色可以代行任何边。
# 中文注释: “author” 边额外要求操作者属于稿件作者集合（见 lifecycle_service）。
TRANSITION_ROLES: dict[tuple[ManuscriptStatus, ManuscriptStatus], frozenset[Role]] = {
    (ManuscriptStatus.DRAFT, ManuscriptStatus.SUBMITTED): frozenset({Role.AUTHOR}),
    (ManuscriptStatus.SUBMITTED, ManuscriptStatus.WITH_EDITOR): frozenset({Role.EDITOR}),
    (ManuscriptStatus.WITH_EDITOR, ManuscriptStatus.UNDER_REVIEW): frozenset({Role.EDITOR, Role.SYSTEM}),
    (ManuscriptStatus.UNDER_REVIEW, ManuscriptStatus.REVISIONS_REQUESTED): frozenset({Role.EDITOR}),
    (ManuscriptStatus.UNDER_REVIEW, ManuscriptStatus.ACCEPTED): frozenset({Role.EDITOR}),
    (ManuscriptStatus.UNDER_REVIEW, ManuscriptStatus.REJECTED): frozenset({Role.EDITOR}),
    (ManuscriptStatus.REVISIONS_REQUESTED, ManuscriptStatus.UNDER_REVIEW): frozenset({Role.AUTHOR}),
    (ManuscriptStatus.ACCEPTED, ManuscriptStatus.IN_PRODUCTION): frozenset({Role.SYSTEM}),
    (ManuscriptStatus.IN_PRODUCTION, ManuscriptStatus.PUBLISHED): frozenset({Role.SYSTEM}),
}


def normalize_status(value: str | None) -> str | None:
    if value is None:
        return None
    v = str(value).strip().lower()
    if not v:
        return None
    try:
        return ManuscriptStatus(v).value
    except ValueError:
        return None


class TimelineEntry(BaseModel):
    from_status: str
    to_status: str
    changed_by: str
    comment: Optional[str] = None
    created_at: datetime


class Manuscript(BaseModel):
    id: str
    title: str = ""
    status: ManuscriptStatus = ManuscriptStatus.DRAFT
    priority: ManuscriptPriority = ManuscriptPriority.NORMAL
    editor_id: Optional[str] = None
    author_ids: list[str] = Field(default_factory=list)
    review_round: int = 1
    doi: Optional[str] = None
    timeline: list[TimelineEntry] = Field(default_factory=list)
    version: int = 1
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Manuscript":
        return cls.model_validate(row)
