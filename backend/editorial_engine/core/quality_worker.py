import asyncio
import logging
from datetime import datetime
from typing import Callable, Optional

import sentry_sdk

from editorial_engine.core.clock import Clock, SystemClock
from editorial_engine.core.errors import JobFailedPermanently
from editorial_engine.models.quality import QualityAnalysisJob, QualityJobType, QualityReport
from editorial_engine.services.quality_queue import JobQueue
from editorial_engine.services.quality_service import QualityService

logger = logging.getLogger("editorial_engine.quality_worker")


class QualityWorker:
    """
    审稿质量分析 Worker（无状态，可多实例并行）。

    中文注释:
    - 任务的认领由 JobQueue.dequeue 保证原子性，同一任务不会被两个 worker 同时处理。
    - 失败按 backoff 重新排队；超过 max_attempts 停放为 failed，记日志并上报 Sentry。
    - run_once / drain 是同步入口（测试与一次性运行）；start/stop 是常驻轮询循环。
    """

    def __init__(
        self,
        queue: JobQueue,
        quality: QualityService,
        *,
        clock: Clock | None = None,
        worker_id: Optional[str] = None,
        poll_interval: Optional[float] = None,
    ) -> None:
        self.queue = queue
        self.quality = quality
        self.clock = clock or SystemClock()
        self.worker_id = worker_id or f"quality-worker-{datetime.now().timestamp()}"
        self.poll_interval = poll_interval if poll_interval is not None else quality.config.poll_interval_seconds
        self.running = False
        self._handlers: dict[QualityJobType, Callable[[QualityAnalysisJob], QualityReport]] = {
            QualityJobType.QUICK_CHECK: quality.run_analysis,
            QualityJobType.CONSISTENCY_ANALYSIS: quality.run_analysis,
            QualityJobType.FULL_ANALYSIS: quality.run_analysis,
        }

    def run_once(self) -> Optional[QualityAnalysisJob]:
        """
        认领并处理一个任务；队列为空时返回 None。
        """
        job = self.queue.dequeue(self.worker_id)
        if job is None:
            return None
        logger.info("Processing quality job %s type=%s review=%s", job.id, job.job_type.value, job.review_id)
        try:
            self._handlers[job.job_type](job)
        except Exception as e:
            logger.error("Quality job %s failed (attempt %s): %s", job.id, job.attempts, e)
            return self.handle_failure(job, str(e))
        return self.queue.ack(job.id)

    def drain(self, limit: int = 1000) -> int:
        processed = 0
        while processed < limit:
            if self.run_once() is None:
                break
            processed += 1
        return processed

    def handle_failure(self, job: QualityAnalysisJob, error_msg: str) -> QualityAnalysisJob:
        horizon = None if job.attempts >= job.max_attempts else self.quality.requeue_horizon(job.attempts)
        if horizon is not None:
            return self.queue.fail(job.id, error_msg, retry_at=self.clock.now() + horizon)

        parked = self.queue.fail(job.id, error_msg, retry_at=None)
        failure = JobFailedPermanently(job.id, job.attempts, error_msg)
        logger.error("Quality job %s parked after %s attempts: %s", job.id, job.attempts, error_msg)
        # 停放的任务需要人工介入（QualityService.requeue_job）
        sentry_sdk.capture_message(failure.detail, level="error")
        return parked

    async def start(self) -> None:
        logger.info(f"Quality Worker {self.worker_id} started")
        self.running = True
        while self.running:
            try:
                job = await asyncio.to_thread(self.run_once)
                if job is None:
                    await asyncio.sleep(self.poll_interval)
            except Exception as e:
                logger.error(f"Worker loop error: {e}")
                await asyncio.sleep(self.poll_interval)

    def stop(self) -> None:
        self.running = False


if __name__ == "__main__":
    from dotenv import load_dotenv

    from editorial_engine.core.sentry_init import init_sentry
    from editorial_engine.engine import EditorialEngine

    load_dotenv()
    logging.basicConfig(level=logging.INFO)
    init_sentry()
    engine = EditorialEngine.from_env()
    asyncio.run(engine.quality_worker().start())
