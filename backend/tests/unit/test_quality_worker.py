import asyncio

import pytest

from conftest import MANUSCRIPT_ID, REVIEWERS, seed_manuscript
from editorial_engine.core import quality_worker as worker_module
from editorial_engine.models.quality import QualityJobStatus


@pytest.fixture
def worker(engine, store):
    seed_manuscript(store, status="under_review")
    return engine.quality_worker(worker_id="w-test")


@pytest.fixture
def captured(monkeypatch):
    messages = []
    monkeypatch.setattr(
        worker_module.sentry_sdk,
        "capture_message",
        lambda message, level=None: messages.append((message, level)),
    )
    return messages


def _review(store, review_id):
    return store.create(
        "reviews",
        {
            "id": review_id,
            "manuscript_id": MANUSCRIPT_ID,
            "reviewer_id": REVIEWERS[0],
            "summary": "A careful study of sparse attention on long inputs.",
            "strengths": "Strong ablations and an excellent related work section.",
            "weaknesses": "Missing variance in Table 2.",
            "detailed_comments": "Please consider reporting standard deviations.",
            "recommendation": "minor_revision",
        },
    )


def test_priority_order_is_respected(worker, engine, store, clock):
    _review(store, "rev-low")
    _review(store, "rev-high")
    low = engine.quality.queue_analysis("rev-low", "full_analysis", 3)
    clock.advance(seconds=1)
    high = engine.quality.queue_analysis("rev-high", "full_analysis", 9)

    first = worker.run_once()
    assert first.id == high
    assert first.status == QualityJobStatus.COMPLETED
    assert engine.quality.get_report("rev-high") is not None
    assert engine.quality.get_report("rev-low") is None

    assert worker.run_once().id == low
    assert worker.run_once() is None


def test_drain_processes_everything(worker, engine, store):
    for n in range(3):
        _review(store, f"rev-{n}")
        engine.quality.queue_analysis(f"rev-{n}", "quick_check")
    assert worker.drain() == 3
    assert engine.queue.list(status="completed") != []
    assert engine.queue.list(status="queued") == []


def test_failures_back_off_then_park_and_report(worker, engine, clock, captured):
    # 不存在的 review 会让每次分析都失败
    job = engine.queue.enqueue("ghost-review", "full_analysis", 5, max_attempts=3)

    retried = worker.run_once()
    assert retried.status == QualityJobStatus.QUEUED and retried.attempts == 1
    assert worker.run_once() is None

    clock.advance(minutes=1)
    assert worker.run_once().attempts == 2
    clock.advance(minutes=4)
    assert worker.run_once() is None
    clock.advance(minutes=1)

    parked = worker.run_once()
    assert parked.status == QualityJobStatus.FAILED
    assert parked.attempts == 3
    assert "ghost-review" in parked.last_error
    assert [j.id for j in engine.quality.parked_jobs()] == [job.id]
    assert len(captured) == 1
    assert captured[0][1] == "error" and job.id in captured[0][0]

    clock.advance(hours=1)
    assert worker.run_once() is None


def test_parked_job_can_be_requeued_and_succeed(worker, engine, store, clock, captured):
    job = engine.queue.enqueue("rev-late", "quick_check", 5, max_attempts=1)
    worker.run_once()
    assert engine.queue.get(job.id).status == QualityJobStatus.FAILED

    _review(store, "rev-late")
    engine.quality.requeue_job(job.id, "editor-1")
    assert worker.run_once().status == QualityJobStatus.COMPLETED


@pytest.mark.asyncio
async def test_start_stop_loop(worker, engine, store):
    _review(store, "rev-1")
    engine.quality.queue_analysis("rev-1", "quick_check")
    worker.poll_interval = 0.01

    task = asyncio.create_task(worker.start())
    for _ in range(200):
        if engine.queue.list(status="completed"):
            break
        await asyncio.sleep(0.01)
    worker.stop()
    await asyncio.wait_for(task, timeout=2)

    assert worker.running is False
    assert [j.review_id for j in engine.queue.list(status="completed")] == ["rev-1"]
