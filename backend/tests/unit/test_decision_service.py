from datetime import timedelta

import pytest

from conftest import AUTHOR, COAUTHOR, EDITOR, MANUSCRIPT_ID, PRODUCTION_EDITOR, REVIEWERS, seed_assignment, seed_manuscript
from editorial_engine.core.config import DecisionActionConfig
from editorial_engine.core.errors import PreconditionNotMet, Unauthorized
from editorial_engine.models.decision import ActionType, DecisionOptions
from editorial_engine.services.decision_service import DecisionService

LETTER = "Dear authors, thank you for your submission."


@pytest.fixture
def reviewed(engine, store, workflow):
    seed_manuscript(store)
    workflow.complete_review(REVIEWERS[0])
    return engine


def test_accept_runs_default_pipeline(reviewed, store, sender):
    outcome = reviewed.decisions.record_decision(MANUSCRIPT_ID, "accepted", LETTER, EDITOR)

    assert outcome.created is True
    assert outcome.manuscript_status == "accepted"
    assert [(a.action_type.value, a.success) for a in outcome.actions] == [
        ("notify_author", True),
        ("notify_reviewers", True),
        ("generate_doi", True),
    ]
    assert sender.templates_for(AUTHOR) == ["decision_author"]
    assert sender.templates_for(COAUTHOR) == ["decision_author"]
    assert "decision_reviewer" in sender.templates_for(REVIEWERS[0])

    manuscript = store.get("manuscripts", MANUSCRIPT_ID)
    assert manuscript["doi"] == "10.5555/scholarflow.2026.ms1"
    assert outcome.decision.sent_at is not None
    assert outcome.decision.review_round == 1


def test_reviewer_notification_failure_does_not_stop_doi(reviewed, store, sender):
    sender.fail_templates.add("decision_reviewer")

    outcome = reviewed.decisions.record_decision(MANUSCRIPT_ID, "accepted", LETTER, EDITOR)

    assert outcome.failed_actions == [ActionType.NOTIFY_REVIEWERS]
    failed = [a for a in outcome.actions if not a.success][0]
    assert failed.error == "reviewer notification failed"
    assert outcome.manuscript_status == "accepted"
    assert store.get("manuscripts", MANUSCRIPT_ID)["doi"]
    assert reviewed.post_decision.action_status(outcome.decision.id) == {
        "notify_author": "succeeded",
        "notify_reviewers": "failed",
        "generate_doi": "succeeded",
    }


def test_retry_reruns_only_failed_actions(reviewed, sender):
    sender.fail_templates.add("decision_reviewer")
    outcome = reviewed.decisions.record_decision(MANUSCRIPT_ID, "accepted", LETTER, EDITOR)
    sender.fail_templates.clear()

    results = reviewed.decisions.retry_failed_actions(outcome.decision.id)

    assert [(r.action_type, r.success) for r in results] == [(ActionType.NOTIFY_REVIEWERS, True)]
    assert sender.count("decision_author") == 2
    assert reviewed.decisions.retry_failed_actions(outcome.decision.id) == []


def test_handler_exception_is_isolated(reviewed, monkeypatch):
    def _boom(data):
        raise RuntimeError("registry unavailable")

    monkeypatch.setitem(reviewed.post_decision._handlers, ActionType.GENERATE_DOI, _boom)

    outcome = reviewed.decisions.record_decision(MANUSCRIPT_ID, "accepted", LETTER, EDITOR)
    assert outcome.failed_actions == [ActionType.GENERATE_DOI]
    assert outcome.actions[-1].error == "registry unavailable"
    assert outcome.manuscript_status == "accepted"


def test_replaying_same_decision_returns_existing_record(reviewed, sender, clock):
    first = reviewed.decisions.record_decision(MANUSCRIPT_ID, "accepted", LETTER, EDITOR)
    clock.advance(minutes=10)

    again = reviewed.decisions.record_decision(MANUSCRIPT_ID, "accepted", "another letter", EDITOR)

    assert again.created is False
    assert again.decision.id == first.decision.id
    assert again.decision.decision_letter == LETTER
    assert [a.success for a in again.actions] == [True, True, True]
    assert sender.count("decision_author") == 2


def test_conflicting_decision_for_same_round_is_rejected(reviewed, store):
    reviewed.decisions.record_decision(MANUSCRIPT_ID, "accepted", LETTER, EDITOR)
    with pytest.raises(PreconditionNotMet):
        reviewed.decisions.record_decision(MANUSCRIPT_ID, "rejected", LETTER, EDITOR)
    assert store.get("manuscripts", MANUSCRIPT_ID)["status"] == "accepted"


def test_unknown_decision_value(reviewed):
    with pytest.raises(PreconditionNotMet):
        reviewed.decisions.record_decision(MANUSCRIPT_ID, "maybe", LETTER, EDITOR)


def test_decision_without_completed_review_records_nothing(engine, store):
    seed_manuscript(store, status="under_review")
    seed_assignment(store, REVIEWERS[0], "accepted")

    with pytest.raises(PreconditionNotMet):
        engine.decisions.record_decision(MANUSCRIPT_ID, "accepted", LETTER, EDITOR)
    assert store.list("editorial_decisions") == []

    rejected = engine.decisions.record_decision(MANUSCRIPT_ID, "rejected", LETTER, EDITOR)
    assert rejected.manuscript_status == "rejected"
    assert [a.action_type.value for a in rejected.actions] == ["notify_author", "notify_reviewers"]


def test_only_editors_decide(reviewed, store):
    with pytest.raises(Unauthorized):
        reviewed.decisions.record_decision(MANUSCRIPT_ID, "accepted", LETTER, REVIEWERS[0])
    assert store.list("editorial_decisions") == []


def test_revision_round_gets_follow_up_and_new_decision(reviewed, store, workflow, clock, sender):
    first = reviewed.decisions.record_decision(MANUSCRIPT_ID, "revisions_requested", LETTER, EDITOR)
    assert first.manuscript_status == "revisions_requested"
    reminder = store.first("follow_up_reminders", decision_id=first.decision.id)
    assert reminder["due_at"] == (clock.now() + timedelta(days=14)).isoformat()

    reviewed.lifecycle.transition(MANUSCRIPT_ID, "under_review", AUTHOR, comment="revision uploaded")
    workflow.complete_review(REVIEWERS[1])
    second = reviewed.decisions.record_decision(MANUSCRIPT_ID, "accepted", LETTER, EDITOR)

    assert second.created is True and second.decision.review_round == 2
    assert [d.decision.value for d in reviewed.decisions.decisions_for(MANUSCRIPT_ID)] == [
        "revisions_requested",
        "accepted",
    ]
    # 第二轮只通知本轮审稿人
    assert sender.templates_for(REVIEWERS[0]).count("decision_reviewer") == 1
    assert sender.templates_for(REVIEWERS[1]).count("decision_reviewer") == 1


def test_original_reviewer_can_review_the_revision(reviewed, store, workflow, sender):
    reviewed.decisions.record_decision(MANUSCRIPT_ID, "revisions_requested", LETTER, EDITOR)
    reviewed.lifecycle.transition(MANUSCRIPT_ID, "under_review", AUTHOR, comment="revision uploaded")

    workflow.complete_review(REVIEWERS[0])
    second = reviewed.decisions.record_decision(MANUSCRIPT_ID, "accepted", LETTER, EDITOR)

    assert second.created is True and second.manuscript_status == "accepted"
    assert second.decision.review_round == 2
    rounds = sorted(a["review_round"] for a in store.list("review_assignments", reviewer_id=REVIEWERS[0]))
    assert rounds == [1, 2]
    assert sender.templates_for(REVIEWERS[0]).count("decision_reviewer") == 2


def test_stale_running_action_is_retried(reviewed, store, clock, sender):
    outcome = reviewed.decisions.record_decision(MANUSCRIPT_ID, "accepted", LETTER, EDITOR)
    row = store.first("decision_actions", decision_id=outcome.decision.id, action_type="notify_reviewers")
    # 模拟执行进程在发送途中退出
    store.update("decision_actions", row["id"], {"status": "running", "started_at": clock.now().isoformat()})

    assert reviewed.decisions.retry_failed_actions(outcome.decision.id) == []

    clock.advance(minutes=31)
    results = reviewed.decisions.retry_failed_actions(outcome.decision.id)

    assert [(r.action_type, r.success) for r in results] == [(ActionType.NOTIFY_REVIEWERS, True)]
    assert store.get("decision_actions", row["id"])["status"] == "succeeded"


def test_explicit_actions_and_options_flow_to_handlers(reviewed, store, sender):
    options = DecisionOptions(
        production_editor_id=PRODUCTION_EDITOR,
        actions=[ActionType.NOTIFY_AUTHOR, ActionType.GENERATE_DOI, ActionType.ASSIGN_PRODUCTION_EDITOR],
    )

    outcome = reviewed.decisions.record_decision(MANUSCRIPT_ID, "accepted", LETTER, EDITOR, options)

    assert all(a.success for a in outcome.actions)
    assert outcome.manuscript_status == "in_production"
    manuscript = store.get("manuscripts", MANUSCRIPT_ID)
    assert manuscript["production_editor_id"] == PRODUCTION_EDITOR
    assert sender.templates_for(PRODUCTION_EDITOR) == ["production_assignment"]
    assert store.get("editorial_decisions", outcome.decision.id)["options"]["production_editor_id"] == PRODUCTION_EDITOR


def test_configured_pipeline_skips_unknown_actions(reviewed):
    config = DecisionActionConfig(pipelines={"accepted": ("notify_author", "print_certificate")})
    service = DecisionService(
        reviewed.store,
        reviewed.lifecycle,
        reviewed.post_decision,
        clock=reviewed.clock,
        config=config,
    )

    outcome = service.record_decision(MANUSCRIPT_ID, "accepted", LETTER, EDITOR)
    assert [a.action_type.value for a in outcome.actions] == ["notify_author"]
