from __future__ import annotations

from datetime import timedelta
from typing import Any, Mapping

import pytest

from editorial_engine.core.clock import FixedClock
from editorial_engine.core.config import WorkflowConfig
from editorial_engine.core.roles import Role, StaticRoleProvider
from editorial_engine.engine import EditorialEngine
from editorial_engine.lib.entity_store import InMemoryEntityStore
from editorial_engine.services.evidence_source import StaticEvidenceSource
from editorial_engine.services.notification_service import NotificationSender

# === 全局测试配置 ===
# 中文注释:
# 1. 所有单测都跑在内存存储 + 固定时钟上，不访问 Supabase / Resend。
# 2. 角色用固定 id，方便断言通知收件人。

EDITOR = "editor-1"
ADMIN = "admin-1"
AUTHOR = "author-1"
COAUTHOR = "author-2"
PRODUCTION_EDITOR = "prod-1"
REVIEWERS = ("reviewer-1", "reviewer-2", "reviewer-3", "reviewer-4")
MANUSCRIPT_ID = "ms-1"


class RecordingSender(NotificationSender):
    """记录所有投递；fail_for / fail_templates 命中时返回失败"""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, dict[str, Any]]] = []
        self.fail_for: set[str] = set()
        self.fail_templates: set[str] = set()

    def send(self, recipient_id: str, template: str, variables: Mapping[str, Any]) -> bool:
        if recipient_id in self.fail_for or template in self.fail_templates:
            return False
        self.sent.append((recipient_id, template, dict(variables)))
        return True

    def templates_for(self, recipient_id: str) -> list[str]:
        return [template for rid, template, _ in self.sent if rid == recipient_id]

    def count(self, template: str) -> int:
        return len([1 for _, t, _ in self.sent if t == template])


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def store() -> InMemoryEntityStore:
    return InMemoryEntityStore()


@pytest.fixture
def sender() -> RecordingSender:
    return RecordingSender()


@pytest.fixture
def roles() -> StaticRoleProvider:
    mapping: dict[str, Role] = {
        EDITOR: Role.EDITOR,
        ADMIN: Role.ADMIN,
        AUTHOR: Role.AUTHOR,
        COAUTHOR: Role.AUTHOR,
        PRODUCTION_EDITOR: Role.EDITOR,
    }
    mapping.update({r: Role.REVIEWER for r in REVIEWERS})
    return StaticRoleProvider(mapping)


@pytest.fixture
def evidence() -> StaticEvidenceSource:
    return StaticEvidenceSource()


@pytest.fixture
def engine(store, clock, roles, sender, evidence) -> EditorialEngine:
    return EditorialEngine.in_memory(
        store=store,
        clock=clock,
        roles=roles,
        sender=sender,
        evidence=evidence,
        workflow_config=WorkflowConfig(),
        token_secret="test-secret",
    )


def seed_manuscript(store: InMemoryEntityStore, status: str = "with_editor", **overrides: Any) -> dict[str, Any]:
    row = {
        "id": MANUSCRIPT_ID,
        "title": "Sparse attention for long documents",
        "status": status,
        "priority": "normal",
        "editor_id": EDITOR,
        "author_ids": [AUTHOR, COAUTHOR],
        "review_round": 1,
        "doi": None,
        "timeline": [],
    }
    row.update(overrides)
    return store.create("manuscripts", row)


def seed_assignment(
    store: InMemoryEntityStore,
    reviewer_id: str,
    status: str = "accepted",
    *,
    manuscript_id: str = MANUSCRIPT_ID,
    review_round: int = 1,
    due_date: str = "2026-02-01T00:00:00+00:00",
) -> dict[str, Any]:
    return store.create(
        "review_assignments",
        {
            "manuscript_id": manuscript_id,
            "reviewer_id": reviewer_id,
            "invitation_id": None,
            "status": status,
            "due_date": due_date,
            "review_round": review_round,
        },
    )


class Workflow:
    """把稿件推进到指定阶段的测试助手（全部走真实服务接口）"""

    def __init__(self, engine: EditorialEngine, clock: FixedClock) -> None:
        self.engine = engine
        self.clock = clock

    def invite(self, *reviewer_ids: str, **options: Any):
        return self.engine.invitations.send_invitations(
            MANUSCRIPT_ID,
            list(reviewer_ids),
            self.clock.now() + timedelta(days=21),
            options=options or None,
            invited_by=EDITOR,
        )

    def accept(self, reviewer_id: str):
        batch = self.invite(reviewer_id)
        invitation_id = batch.results[0].invitation_id
        return self.engine.invitations.respond(
            invitation_id,
            reviewer_id,
            "accept",
            {"availability_confirmed": True},
        )

    def complete_review(self, reviewer_id: str, **payload: Any) -> dict[str, Any]:
        result = self.accept(reviewer_id)
        body = {
            "summary": "The paper proposes a sparse attention scheme and evaluates it on three benchmarks.",
            "strengths": "Clear motivation. The ablation in Section 4 is convincing.",
            "weaknesses": "The comparison omits recent baselines; Table 2 lacks variance.",
            "detailed_comments": (
                "Please consider adding the Longformer baseline. I suggest reporting standard deviations "
                "for Table 2 and clarifying the memory analysis in Section 3.2."
            ),
            "recommendation": "minor_revision",
        }
        body.update(payload)
        return self.engine.assignments.submit_review(result.assignment.id, reviewer_id, body)


@pytest.fixture
def workflow(engine, clock) -> Workflow:
    return Workflow(engine, clock)
