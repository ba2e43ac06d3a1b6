"""FetchDispatcher: queue a fetch if the job queue is up, else run it directly."""

from __future__ import annotations

import asyncio

import structlog

from .errors import MailPipelineError
from .kafka_producer import KafkaProducerWrapper
from .models import DispatchResult, FetchJob
from .orchestrator import FetchOrchestrator

logger = structlog.get_logger()


class FetchDispatcher:
    """Routes fetch requests to the Kafka job queue with a direct fallback.

    :meth:`trigger` is the fire-and-forget variant used by the watch and
    the poll timer; it keeps a reference to each background task until
    it finishes.
    """

    def __init__(
        self,
        producer: KafkaProducerWrapper,
        orchestrator: FetchOrchestrator,
        *,
        normal_limit: int = 10,
        high_priority_limit: int = 5,
    ) -> None:
        self._producer = producer
        self._orchestrator = orchestrator
        self._normal_limit = normal_limit
        self._high_priority_limit = high_priority_limit
        self._tasks: set[asyncio.Task] = set()

    def limit_for(self, job: FetchJob) -> int:
        if job.limit is not None:
            return job.limit
        return self._high_priority_limit if job.priority == "high" else self._normal_limit

    async def dispatch(self, account_id: str, priority: str = "normal") -> DispatchResult:
        job = FetchJob(account_id=account_id, priority=priority)

        try:
            if await self._producer.enqueue_fetch(job):
                return DispatchResult(account_id=account_id, queued=True, method="kafka")
        except Exception as exc:
            logger.warning("fetch_enqueue_failed", account_id=account_id, error=str(exc))

        logger.info("fetch_dispatched_direct", account_id=account_id, priority=priority)
        stored = await self._orchestrator.fetch_recent(account_id, self.limit_for(job))
        return DispatchResult(account_id=account_id, queued=False, method="direct", fetched=len(stored))

    def trigger(self, account_id: str, priority: str = "normal") -> asyncio.Task:
        task = asyncio.create_task(self._dispatch_logged(account_id, priority))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait for every outstanding triggered dispatch."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    async def _dispatch_logged(self, account_id: str, priority: str) -> None:
        try:
            await self.dispatch(account_id, priority)
        except MailPipelineError as exc:
            logger.error("triggered_fetch_failed", account_id=account_id, error=str(exc))
        except Exception:
            logger.exception("triggered_fetch_crashed", account_id=account_id)
