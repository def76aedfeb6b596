import pytest

from conftest import MANUSCRIPT_ID, REVIEWERS, seed_assignment, seed_manuscript
from editorial_engine.core.errors import PreconditionNotMet, Unauthorized


@pytest.fixture
def assignments(engine, store):
    seed_manuscript(store, status="under_review")
    return engine.assignments


def _payload(**overrides):
    body = {
        "summary": "A careful study.",
        "strengths": "Convincing experiments in Section 4.",
        "weaknesses": "Missing recent baselines.",
        "detailed_comments": "Please consider adding variance to Table 2.",
        "recommendation": "minor_revision",
    }
    body.update(overrides)
    return body


def test_start_then_submit_completes_assignment_and_queues_analysis(assignments, engine, store):
    assignment = seed_assignment(store, REVIEWERS[0])

    started = assignments.start_review(assignment["id"], REVIEWERS[0])
    assert started.status.value == "in_progress" and started.started_at is not None
    assert assignments.start_review(assignment["id"], REVIEWERS[0]).status.value == "in_progress"

    result = assignments.submit_review(assignment["id"], REVIEWERS[0], _payload())

    assert result["review"]["manuscript_id"] == MANUSCRIPT_ID
    assert result["review"]["review_round"] == 1
    assert store.get("review_assignments", assignment["id"])["status"] == "completed"
    job = engine.queue.get(result["analysis_job_id"])
    assert job.review_id == result["review"]["id"] and job.status.value == "queued"


def test_submit_requires_recommendation(assignments, store):
    assignment = seed_assignment(store, REVIEWERS[0])
    with pytest.raises(PreconditionNotMet):
        assignments.submit_review(assignment["id"], REVIEWERS[0], _payload(recommendation=""))


def test_submit_twice_is_rejected(assignments, store):
    assignment = seed_assignment(store, REVIEWERS[0])
    assignments.submit_review(assignment["id"], REVIEWERS[0], _payload())
    with pytest.raises(PreconditionNotMet):
        assignments.submit_review(assignment["id"], REVIEWERS[0], _payload())
    assert len(store.list("reviews")) == 1


def test_only_assigned_reviewer_can_act(assignments, store):
    assignment = seed_assignment(store, REVIEWERS[0])
    with pytest.raises(Unauthorized):
        assignments.start_review(assignment["id"], REVIEWERS[1])
    with pytest.raises(Unauthorized):
        assignments.submit_review(assignment["id"], REVIEWERS[1], _payload())


def test_withdrawn_assignment_cannot_start(assignments, store):
    assignment = seed_assignment(store, REVIEWERS[0], "withdrawn")
    with pytest.raises(PreconditionNotMet):
        assignments.start_review(assignment["id"], REVIEWERS[0])


def test_list_for_manuscript(assignments, store):
    seed_assignment(store, REVIEWERS[0], "completed")
    seed_assignment(store, REVIEWERS[1], "accepted")
    assert len(assignments.list_for_manuscript(MANUSCRIPT_ID)) == 2
    completed = assignments.list_for_manuscript(MANUSCRIPT_ID, status="completed")
    assert [a.reviewer_id for a in completed] == [REVIEWERS[0]]
