from __future__ import annotations

import heapq
import itertools
import logging
import threading
from datetime import datetime
from typing import Any, Optional

from editorial_engine.core.clock import Clock, SystemClock, parse_datetime
from editorial_engine.core.errors import ConcurrentModification, EntityNotFound
from editorial_engine.lib.entity_store import EntityStore
from editorial_engine.models.quality import QualityAnalysisJob, QualityJobStatus

logger = logging.getLogger("editorial_engine.quality_queue")

JOBS_TABLE = "quality_analysis_jobs"


class JobQueue:
    """
    质量分析任务队列（priority 高者先出，同优先级 FIFO）。

    中文注释:
    - dequeue 原子地把任务从 queued 置为 running 并 attempts+1，同一任务只会被一个 worker 拿到。
    - fail(retry_at=...) 重新排队并设置 available_at（退避）；retry_at=None 表示停放为 failed。
    - 只有 queued 状态可以取消；running 的任务跑完为止。
    """

    def enqueue(
        self,
        review_id: str,
        job_type: str,
        priority: int = 5,
        *,
        requested_by: Optional[str] = None,
        max_attempts: int = 3,
    ) -> QualityAnalysisJob:
        raise NotImplementedError

    def dequeue(self, worker_id: str) -> Optional[QualityAnalysisJob]:
        raise NotImplementedError

    def ack(self, job_id: str) -> QualityAnalysisJob:
        raise NotImplementedError

    def fail(self, job_id: str, error: str, *, retry_at: Optional[datetime] = None) -> QualityAnalysisJob:
        raise NotImplementedError

    def cancel(self, job_id: str) -> bool:
        raise NotImplementedError

    def requeue(self, job_id: str) -> QualityAnalysisJob:
        raise NotImplementedError

    def get(self, job_id: str) -> Optional[QualityAnalysisJob]:
        raise NotImplementedError

    def list(self, *, status: Optional[str] = None, review_id: Optional[str] = None) -> list[QualityAnalysisJob]:
        raise NotImplementedError


def _is_available(job: QualityAnalysisJob, now: datetime) -> bool:
    return job.available_at is None or job.available_at <= now


class InMemoryJobQueue(JobQueue):
    """单进程实现：heapq 按 (-priority, seq) 排序。"""

    def __init__(self, *, clock: Clock | None = None) -> None:
        self.clock = clock or SystemClock()
        self._jobs: dict[str, QualityAnalysisJob] = {}
        self._seq_of: dict[str, int] = {}
        self._heap: list[tuple[int, int, str]] = []
        self._counter = itertools.count()
        self._lock = threading.Lock()

    def _push(self, job: QualityAnalysisJob) -> None:
        heapq.heappush(self._heap, (-job.priority, self._seq_of[job.id], job.id))

    def enqueue(self, review_id, job_type, priority=5, *, requested_by=None, max_attempts=3):
        now = self.clock.now()
        with self._lock:
            seq = next(self._counter)
            job = QualityAnalysisJob(
                id=f"job-{seq + 1}",
                review_id=str(review_id),
                job_type=job_type,
                priority=priority,
                requested_by=requested_by,
                max_attempts=max_attempts,
                available_at=now,
                created_at=now,
            )
            self._jobs[job.id] = job
            self._seq_of[job.id] = seq
            self._push(job)
            return job.model_copy()

    def dequeue(self, worker_id):
        now = self.clock.now()
        with self._lock:
            deferred: list[tuple[int, int, str]] = []
            claimed: Optional[QualityAnalysisJob] = None
            while self._heap:
                entry = heapq.heappop(self._heap)
                job = self._jobs.get(entry[2])
                if job is None or job.status != QualityJobStatus.QUEUED:
                    continue
                if not _is_available(job, now):
                    deferred.append(entry)
                    continue
                claimed = job.model_copy(
                    update={
                        "status": QualityJobStatus.RUNNING,
                        "attempts": job.attempts + 1,
                        "locked_by": worker_id,
                        "started_at": now,
                        "version": job.version + 1,
                    }
                )
                self._jobs[job.id] = claimed
                break
            for entry in deferred:
                heapq.heappush(self._heap, entry)
            return claimed.model_copy() if claimed else None

    def _require(self, job_id: str) -> QualityAnalysisJob:
        job = self._jobs.get(job_id)
        if job is None:
            raise EntityNotFound(JOBS_TABLE, job_id)
        return job

    def _replace(self, job: QualityAnalysisJob, **changes: Any) -> QualityAnalysisJob:
        updated = job.model_copy(update={**changes, "version": job.version + 1})
        self._jobs[job.id] = updated
        return updated

    def ack(self, job_id):
        with self._lock:
            job = self._replace(
                self._require(job_id),
                status=QualityJobStatus.COMPLETED,
                completed_at=self.clock.now(),
                locked_by=None,
            )
            return job.model_copy()

    def fail(self, job_id, error, *, retry_at=None):
        with self._lock:
            job = self._require(job_id)
            if retry_at is None:
                job = self._replace(job, status=QualityJobStatus.FAILED, last_error=error, locked_by=None)
            else:
                job = self._replace(
                    job,
                    status=QualityJobStatus.QUEUED,
                    last_error=error,
                    locked_by=None,
                    available_at=retry_at,
                )
                self._push(job)
            return job.model_copy()

    def cancel(self, job_id):
        with self._lock:
            job = self._require(job_id)
            if job.status != QualityJobStatus.QUEUED:
                return False
            self._replace(job, status=QualityJobStatus.CANCELLED)
            return True

    def requeue(self, job_id):
        with self._lock:
            job = self._require(job_id)
            job = self._replace(
                job,
                status=QualityJobStatus.QUEUED,
                attempts=0,
                available_at=self.clock.now(),
                last_error=None,
            )
            self._push(job)
            return job.model_copy()

    def get(self, job_id):
        with self._lock:
            job = self._jobs.get(job_id)
            return job.model_copy() if job else None

    def list(self, *, status=None, review_id=None):
        with self._lock:
            jobs = sorted(self._jobs.values(), key=lambda j: self._seq_of[j.id])
            return [
                j.model_copy()
                for j in jobs
                if (status is None or j.status.value == status) and (review_id is None or j.review_id == review_id)
            ]


class StoreJobQueue(JobQueue):
    """
    基于实体存储的队列（quality_analysis_jobs 表），可被多个无状态 worker 进程共享。

    中文注释: 抢占方式与 DOI worker 一致：先查候选，再带版本条件更新为 running，更新失败就换下一个。
    """

    def __init__(self, store: EntityStore, *, clock: Clock | None = None) -> None:
        self.store = store
        self.clock = clock or SystemClock()

    @staticmethod
    def _to_job(row: dict[str, Any]) -> QualityAnalysisJob:
        return QualityAnalysisJob.model_validate(row)

    def enqueue(self, review_id, job_type, priority=5, *, requested_by=None, max_attempts=3):
        now = self.clock.now().isoformat()
        row = self.store.create(
            JOBS_TABLE,
            {
                "review_id": str(review_id),
                "job_type": str(getattr(job_type, "value", job_type)),
                "priority": int(priority),
                "status": QualityJobStatus.QUEUED.value,
                "attempts": 0,
                "max_attempts": int(max_attempts),
                "available_at": now,
                "requested_by": requested_by,
                "created_at": now,
            },
        )
        return self._to_job(row)

    def dequeue(self, worker_id):
        now = self.clock.now()
        rows = self.store.list(JOBS_TABLE, status=QualityJobStatus.QUEUED.value)
        candidates = [
            r for r in rows if (parse_datetime(r.get("available_at")) or now) <= now
        ]
        # list() 已按 created_at 升序；稳定排序保证同优先级 FIFO
        candidates.sort(key=lambda r: -int(r.get("priority") or 0))
        for row in candidates:
            try:
                claimed = self.store.update(
                    JOBS_TABLE,
                    row["id"],
                    {
                        "status": QualityJobStatus.RUNNING.value,
                        "attempts": int(row.get("attempts") or 0) + 1,
                        "locked_by": worker_id,
                        "started_at": now.isoformat(),
                    },
                    expected_version=int(row["version"]),
                )
            except ConcurrentModification:
                continue
            return self._to_job(claimed)
        return None

    def ack(self, job_id):
        row = self.store.update(
            JOBS_TABLE,
            job_id,
            {
                "status": QualityJobStatus.COMPLETED.value,
                "completed_at": self.clock.now().isoformat(),
                "locked_by": None,
            },
        )
        return self._to_job(row)

    def fail(self, job_id, error, *, retry_at=None):
        patch: dict[str, Any] = {"last_error": error, "locked_by": None}
        if retry_at is None:
            patch["status"] = QualityJobStatus.FAILED.value
        else:
            patch["status"] = QualityJobStatus.QUEUED.value
            patch["available_at"] = retry_at.isoformat()
        return self._to_job(self.store.update(JOBS_TABLE, job_id, patch))

    def cancel(self, job_id):
        row = self.store.require(JOBS_TABLE, job_id)
        if row.get("status") != QualityJobStatus.QUEUED.value:
            return False
        try:
            self.store.update(
                JOBS_TABLE,
                job_id,
                {"status": QualityJobStatus.CANCELLED.value},
                expected_version=int(row["version"]),
            )
        except ConcurrentModification:
            # 被 worker 抢先领取
            return False
        return True

    def requeue(self, job_id):
        row = self.store.update(
            JOBS_TABLE,
            job_id,
            {
                "status": QualityJobStatus.QUEUED.value,
                "attempts": 0,
                "available_at": self.clock.now().isoformat(),
                "last_error": None,
            },
        )
        return self._to_job(row)

    def get(self, job_id):
        row = self.store.get(JOBS_TABLE, job_id)
        return self._to_job(row) if row else None

    def list(self, *, status=None, review_id=None):
        filters: dict[str, Any] = {}
        if status is not None:
            filters["status"] = status
        if review_id is not None:
            filters["review_id"] = review_id
        return [self._to_job(r) for r in self.store.list(JOBS_TABLE, **filters)]
