"""FetchJobWorker: consume queued fetch jobs and run them."""

from __future__ import annotations

import asyncio

import structlog
from aiokafka import AIOKafkaConsumer
from pydantic import ValidationError

from .config import KafkaConfig
from .dispatch import FetchDispatcher
from .errors import MailPipelineError
from .models import FetchJob
from .orchestrator import FetchOrchestrator

logger = structlog.get_logger()


class FetchJobWorker:
    """Kafka consumer for the fetch-jobs topic.

    Offsets are committed manually after each job, failed or not: a job
    that keeps failing would otherwise block the partition, and the next
    poll or push signal covers the same mailbox anyway.
    """

    def __init__(
        self,
        config: KafkaConfig,
        orchestrator: FetchOrchestrator,
        dispatcher: FetchDispatcher,
        shutdown_event: asyncio.Event,
    ) -> None:
        self._config = config
        self._orchestrator = orchestrator
        self._dispatcher = dispatcher
        self._shutdown_event = shutdown_event
        self._consumer: AIOKafkaConsumer | None = None

        self.jobs_processed: int = 0
        self.jobs_failed: int = 0

    async def run(self) -> None:
        self._consumer = AIOKafkaConsumer(
            self._config.fetch_jobs_topic,
            bootstrap_servers=self._config.bootstrap_servers,
            group_id=self._config.consumer_group,
            enable_auto_commit=False,
            auto_offset_reset=self._config.auto_offset_reset,
        )
        await self._consumer.start()
        logger.info("fetch_worker_started", topic=self._config.fetch_jobs_topic)
        try:
            await self._consume_loop()
        finally:
            await self._consumer.stop()
            logger.info("fetch_worker_stopped")

    async def _consume_loop(self) -> None:
        assert self._consumer is not None

        async for record in self._consumer:
            if self._shutdown_event.is_set():
                break

            try:
                job = FetchJob.model_validate_json(record.value)
            except (ValidationError, UnicodeDecodeError):
                logger.warning("fetch_job_invalid", offset=record.offset)
                await self._consumer.commit()
                continue

            await self.handle(job)
            await self._consumer.commit()

    async def handle(self, job: FetchJob) -> None:
        limit = self._dispatcher.limit_for(job)
        try:
            stored = await self._orchestrator.fetch_recent(job.account_id, limit)
        except MailPipelineError as exc:
            self.jobs_failed += 1
            logger.error("fetch_job_failed", account_id=job.account_id, error=str(exc))
            return
        except Exception:
            self.jobs_failed += 1
            logger.exception("fetch_job_crashed", account_id=job.account_id)
            return

        self.jobs_processed += 1
        logger.info(
            "fetch_job_completed",
            account_id=job.account_id,
            priority=job.priority,
            stored=len(stored),
        )
