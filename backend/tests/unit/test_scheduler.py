import asyncio
from datetime import timedelta

import pytest

from conftest import EDITOR, MANUSCRIPT_ID, REVIEWERS, seed_manuscript
from editorial_engine.core.errors import EntityStoreError


@pytest.fixture
def scheduler(engine, store):
    seed_manuscript(store)
    return engine.scheduler()


def test_sweep_runs_every_step(scheduler, engine, clock, sender):
    engine.invitations.send_invitations(
        MANUSCRIPT_ID,
        list(REVIEWERS[:2]),
        clock.now() + timedelta(days=30),
        clock.now() + timedelta(days=5),
        {"staggered": True, "stagger_interval_hours": 24, "reminder_schedule": [3]},
        invited_by=EDITOR,
    )

    clock.advance(days=1)
    report = scheduler.run()
    assert (report.delivered, report.reminders, report.expired) == (1, 0, 0)

    clock.advance(days=2)
    report = scheduler.run()
    assert report.reminders == 1

    clock.advance(days=3)
    report = scheduler.run()
    assert report.expired == 2
    assert report.errors == {}
    assert sender.count("reviewer_invitation") == 2


def test_sweep_is_idempotent(scheduler, engine, clock):
    engine.invitations.send_invitations(
        MANUSCRIPT_ID,
        [REVIEWERS[0]],
        clock.now() + timedelta(days=30),
        clock.now() + timedelta(days=2),
        invited_by=EDITOR,
    )
    clock.advance(days=3)

    first = scheduler.run()
    second = scheduler.run()
    assert first.expired == 1
    assert (second.delivered, second.reminders, second.expired, second.published, second.follow_ups) == (0, 0, 0, 0, 0)


def test_failing_step_does_not_stop_the_others(scheduler, monkeypatch):
    def _broken():
        raise EntityStoreError("database unavailable")

    monkeypatch.setattr(scheduler.invitations, "fire_due_reminders", _broken)

    report = scheduler.run()
    assert report.errors == {"reminders": "database unavailable"}
    assert report.expired == 0 and report.follow_ups == 0


@pytest.mark.asyncio
async def test_start_stop(scheduler):
    scheduler.interval_seconds = 0.01
    task = asyncio.create_task(scheduler.start())
    await asyncio.sleep(0.05)
    scheduler.stop()
    await asyncio.wait_for(task, timeout=2)
    assert scheduler.running is False
