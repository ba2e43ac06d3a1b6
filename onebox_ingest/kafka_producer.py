"""Typed async Kafka producer for live updates and fetch jobs."""

from __future__ import annotations

import structlog
from aiokafka import AIOKafkaProducer

from .config import KafkaConfig
from .models import FetchJob, MessageUpdate

logger = structlog.get_logger()


class KafkaProducerWrapper:
    """Thin async wrapper around :class:`AIOKafkaProducer`.

    Both topics are keyed by account id, so every consumer of one
    account sees its events in order.  With no bootstrap servers
    configured the wrapper stays disabled: updates are dropped and
    :meth:`enqueue_fetch` reports that nothing was queued.
    """

    def __init__(self, config: KafkaConfig) -> None:
        self._config = config
        self._producer: AIOKafkaProducer | None = None

    @property
    def enabled(self) -> bool:
        return self._producer is not None

    async def start(self) -> None:
        if not self._config.enabled:
            logger.info("kafka_producer_disabled", reason="no_bootstrap_servers")
            return
        self._producer = AIOKafkaProducer(
            bootstrap_servers=self._config.bootstrap_servers,
            acks=self._config.producer_acks,
            compression_type=self._config.producer_compression,
        )
        await self._producer.start()
        logger.info("kafka_producer_started", servers=self._config.bootstrap_servers)

    async def stop(self) -> None:
        if self._producer is not None:
            await self._producer.stop()
            self._producer = None
            logger.info("kafka_producer_stopped")

    async def publish_update(self, update: MessageUpdate) -> None:
        """Publish a new-email event to the live-updates topic (fire and forget)."""
        if self._producer is None:
            logger.debug("live_update_dropped", message_id=update.message_id)
            return
        await self._producer.send(
            self._config.live_updates_topic,
            value=update.model_dump_json().encode("utf-8"),
            key=update.account_id.encode("utf-8"),
        )
        logger.debug(
            "live_update_published",
            topic=self._config.live_updates_topic,
            account_id=update.account_id,
            message_id=update.message_id,
        )

    async def enqueue_fetch(self, job: FetchJob) -> bool:
        """Queue a fetch job; return ``False`` when the queue is unavailable."""
        if self._producer is None:
            return False
        await self._producer.send_and_wait(
            self._config.fetch_jobs_topic,
            value=job.model_dump_json().encode("utf-8"),
            key=job.account_id.encode("utf-8"),
        )
        logger.info(
            "fetch_job_queued",
            topic=self._config.fetch_jobs_topic,
            account_id=job.account_id,
            priority=job.priority,
        )
        return True
