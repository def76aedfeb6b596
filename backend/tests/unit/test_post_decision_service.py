from datetime import timedelta

import pytest

from conftest import AUTHOR, COAUTHOR, EDITOR, MANUSCRIPT_ID, PRODUCTION_EDITOR, REVIEWERS, seed_assignment, seed_manuscript
from editorial_engine.core.errors import PreconditionNotMet
from editorial_engine.models.decision import ActionType


@pytest.fixture
def actions(engine):
    return engine.post_decision


def _decision(store, decision="accepted", **fields):
    row = {
        "manuscript_id": MANUSCRIPT_ID,
        "decision": decision,
        "decision_letter": "Dear authors",
        "editor_id": EDITOR,
        "review_round": 1,
        "sent_at": None,
    }
    row.update(fields)
    return store.create("editorial_decisions", row)


def _data(decision_row, **extra):
    data = {
        "decision_id": decision_row["id"],
        "manuscript_id": MANUSCRIPT_ID,
        "decision": decision_row["decision"],
    }
    data.update(extra)
    return data


def test_unknown_action_returns_false(actions):
    assert actions.execute_action("print_certificate", {"decision_id": "d", "manuscript_id": "m"}) is False


def test_missing_identifiers_are_rejected(actions):
    with pytest.raises(PreconditionNotMet):
        actions.execute_action("notify_author", {"manuscript_id": MANUSCRIPT_ID})


def test_successful_action_is_not_repeated(actions, store, sender):
    seed_manuscript(store, status="accepted")
    decision = _decision(store)

    assert actions.execute_action(ActionType.NOTIFY_AUTHOR, _data(decision)) is True
    assert actions.execute_action("notify_author", _data(decision)) is True

    assert sender.count("decision_author") == 2
    assert len(store.list("decision_action_attempts", decision_id=decision["id"])) == 1
    assert store.get("editorial_decisions", decision["id"])["sent_at"] is not None


def test_action_claimed_elsewhere_is_skipped(actions, store, sender):
    seed_manuscript(store, status="accepted")
    decision = _decision(store)
    store.create(
        "decision_actions",
        {"decision_id": decision["id"], "action_type": "notify_author", "status": "running", "attempts": 1},
    )

    assert actions.execute_action("notify_author", _data(decision)) is False
    assert sender.count("decision_author") == 0


def test_stale_running_claim_is_reclaimed(actions, store, sender, clock):
    seed_manuscript(store, status="accepted")
    decision = _decision(store)
    store.create(
        "decision_actions",
        {
            "decision_id": decision["id"],
            "action_type": "notify_author",
            "status": "running",
            "attempts": 1,
            "started_at": clock.now().isoformat(),
        },
    )

    clock.advance(minutes=29)
    assert actions.execute_action("notify_author", _data(decision)) is False

    clock.advance(minutes=1)
    assert actions.execute_action("notify_author", _data(decision)) is True
    row = store.first("decision_actions", decision_id=decision["id"])
    assert row["status"] == "succeeded" and row["attempts"] == 2
    assert sender.count("decision_author") == 2


def test_failed_action_can_be_rerun(actions, store, sender):
    seed_manuscript(store, status="accepted")
    decision = _decision(store)
    sender.fail_for.add(COAUTHOR)

    assert actions.execute_action("notify_author", _data(decision)) is False
    row = store.first("decision_actions", decision_id=decision["id"])
    assert row["status"] == "failed" and row["result"]["failed_recipients"] == [COAUTHOR]

    sender.fail_for.clear()
    assert actions.execute_action("notify_author", _data(decision)) is True
    row = store.first("decision_actions", decision_id=decision["id"])
    assert row["status"] == "succeeded" and row["attempts"] == 2 and row["last_error"] is None

    attempts = store.list("decision_action_attempts", decision_id=decision["id"])
    assert [a["success"] for a in attempts] == [False, True]


def test_notify_reviewers_targets_completed_reviews_of_current_round(actions, store, sender):
    seed_manuscript(store, status="accepted", review_round=2)
    seed_assignment(store, REVIEWERS[0], "completed", review_round=1)
    seed_assignment(store, REVIEWERS[1], "completed", review_round=2)
    seed_assignment(store, REVIEWERS[2], "accepted", review_round=2)
    decision = _decision(store, review_round=2)

    assert actions.execute_action("notify_reviewers", _data(decision)) is True
    assert [rid for rid, template, _ in sender.sent if template == "decision_reviewer"] == [REVIEWERS[1]]


def test_generate_doi_keeps_existing_value(actions, store):
    seed_manuscript(store, status="accepted", doi="10.1234/existing")
    decision = _decision(store)
    assert actions.execute_action("generate_doi", _data(decision)) is True
    assert store.get("manuscripts", MANUSCRIPT_ID)["doi"] == "10.1234/existing"


def test_assign_production_editor_moves_to_production(actions, store, sender):
    seed_manuscript(store, status="accepted")
    decision = _decision(store)

    assert actions.execute_action("assign_production_editor", _data(decision)) is False
    row = store.first("decision_actions", decision_id=decision["id"])
    assert row["last_error"] == "production_editor_id is required"

    assert actions.execute_action(
        "assign_production_editor",
        _data(decision, production_editor_id=PRODUCTION_EDITOR),
    ) is True
    manuscript = store.get("manuscripts", MANUSCRIPT_ID)
    assert manuscript["status"] == "in_production"
    assert manuscript["production_editor_id"] == PRODUCTION_EDITOR
    assert manuscript["timeline"][-1]["changed_by"] == "system"
    assert sender.templates_for(PRODUCTION_EDITOR) == ["production_assignment"]


def test_state_changing_action_cannot_bypass_lifecycle(actions, store):
    seed_manuscript(store, status="rejected")
    decision = _decision(store, decision="rejected")

    assert actions.execute_action("send_to_production", _data(decision)) is False
    assert store.get("manuscripts", MANUSCRIPT_ID)["status"] == "rejected"
    assert "Invalid transition" in store.first("decision_actions", decision_id=decision["id"])["last_error"]


def test_scheduled_publication_released_by_sweep(actions, store, sender, clock):
    seed_manuscript(store, status="accepted", doi="10.5555/scholarflow.2026.ms1")
    decision = _decision(store)
    publish_at = clock.now() + timedelta(days=10)

    assert actions.execute_action(
        "schedule_publication",
        _data(decision, publication_date=publish_at.isoformat()),
    ) is True
    assert store.get("manuscripts", MANUSCRIPT_ID)["status"] == "in_production"
    assert sender.templates_for(EDITOR) == ["publication_scheduled"]

    assert actions.publish_due() == 0
    clock.advance(days=10)
    assert actions.publish_due() == 1
    assert actions.publish_due() == 0

    assert store.get("manuscripts", MANUSCRIPT_ID)["status"] == "published"
    assert store.first("scheduled_publications", manuscript_id=MANUSCRIPT_ID)["status"] == "published"
    assert sender.templates_for(AUTHOR) == ["manuscript_published"]


def test_publication_without_doi_is_marked_failed(actions, store, clock):
    seed_manuscript(store, status="accepted")
    decision = _decision(store)
    actions.execute_action(
        "schedule_publication",
        _data(decision, publication_date=(clock.now() + timedelta(days=1)).isoformat()),
    )

    clock.advance(days=2)
    assert actions.publish_due() == 0
    row = store.first("scheduled_publications", manuscript_id=MANUSCRIPT_ID)
    assert row["status"] == "failed" and "DOI" in row["last_error"]
    assert store.get("manuscripts", MANUSCRIPT_ID)["status"] == "in_production"


def test_past_publication_date_publishes_immediately(actions, store, clock):
    seed_manuscript(store, status="accepted", doi="10.5555/scholarflow.2026.ms1")
    decision = _decision(store)

    assert actions.execute_action(
        "schedule_publication",
        _data(decision, publication_date=(clock.now() - timedelta(days=1)).isoformat()),
    ) is True
    assert store.get("manuscripts", MANUSCRIPT_ID)["status"] == "published"
    assert store.list("scheduled_publications") == []


def test_follow_up_reminder_only_while_revisions_pending(actions, store, sender, clock):
    seed_manuscript(store, status="revisions_requested")
    decision = _decision(store, decision="revisions_requested")

    assert actions.execute_action("follow_up_reminder", _data(decision, follow_up_days=7)) is True
    row = store.first("follow_up_reminders", decision_id=decision["id"])
    assert row["recipient_ids"] == [AUTHOR, COAUTHOR]

    assert actions.send_due_follow_ups() == 0
    clock.advance(days=7)
    assert actions.send_due_follow_ups() == 1
    assert actions.send_due_follow_ups() == 0
    assert sender.count("revision_follow_up") == 2


def test_follow_up_skipped_after_resubmission(actions, store, sender, clock):
    seed_manuscript(store, status="revisions_requested")
    decision = _decision(store, decision="revisions_requested")
    actions.execute_action("follow_up_reminder", _data(decision))

    store.update("manuscripts", MANUSCRIPT_ID, {"status": "under_review"})
    clock.advance(days=actions.config.follow_up_days)

    assert actions.send_due_follow_ups() == 0
    assert sender.count("revision_follow_up") == 0
    assert store.first("follow_up_reminders", decision_id=decision["id"])["status"] == "sent"


def test_every_action_type_has_a_handler(actions):
    assert set(actions._handlers) == set(ActionType)
