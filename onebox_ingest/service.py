"""IngestionService: wires the pipeline together and runs it until shutdown."""

from __future__ import annotations

import asyncio
import signal
import time
from typing import Any

import structlog
import uvicorn

from .classifier import Classifier
from .config import ServiceConfig
from .dedup import MessageIngestor
from .dispatch import FetchDispatcher
from .health import create_health_app
from .kafka_producer import KafkaProducerWrapper
from .logging import setup_logging
from .models import Classification, MailMessage, ServiceStatus, WatchInfo
from .notifier import NotificationFanout, WebhookNotifier
from .orchestrator import FetchOrchestrator
from .store import MessageStore
from .watch import WatchSupervisor
from .worker import FetchJobWorker

logger = structlog.get_logger()


class IngestionService:
    """Owns every pipeline component and exposes the operations collaborators call.

    ``run()`` starts the following concurrently via
    :class:`asyncio.TaskGroup`:

    * the poll timer (fixed-interval fallback fetch for active accounts)
    * the fetch-job worker (only when Kafka is configured)
    * the FastAPI health server

    and registers a watch for every active account.
    """

    def __init__(self, config: ServiceConfig, *, store: MessageStore | None = None) -> None:
        self.config = config
        self.status: ServiceStatus = ServiceStatus.STARTING
        self.start_time: float = time.monotonic()

        self.store = store or MessageStore(config.database)
        self.classifier = Classifier(config.classifier)
        self.producer = KafkaProducerWrapper(config.kafka)
        self.notifier = WebhookNotifier(config.webhook)

        self.fanout = NotificationFanout(self.producer, self.notifier, self.store, config.webhook)
        self.orchestrator = FetchOrchestrator(
            store=self.store,
            ingestor=MessageIngestor(self.store, self.classifier),
            fanout=self.fanout,
            imap_config=config.imap,
            retry_config=config.retry,
            default_account=config.default_account,
        )
        self.dispatcher = FetchDispatcher(
            self.producer,
            self.orchestrator,
            normal_limit=config.fetch_limit,
            high_priority_limit=config.watch_fetch_limit,
        )
        self.watches = WatchSupervisor(
            store=self.store,
            config=config.watch,
            imap_config=config.imap,
            on_new_mail=lambda account_id: self.dispatcher.trigger(account_id, "high"),
        )
        self._shutdown_event = asyncio.Event()

    # ------------------------------------------------------------------
    # Operations exposed to collaborators
    # ------------------------------------------------------------------

    async def fetch_recent(self, account_ref: str | None = None, limit: int | None = None) -> list[MailMessage]:
        return await self.orchestrator.fetch_recent(
            account_ref, limit if limit is not None else self.config.fetch_limit
        )

    async def start_watch(self, account_id: str) -> WatchInfo:
        return await self.watches.start(account_id)

    async def stop_watch(self, account_id: str) -> bool:
        return await self.watches.stop(account_id)

    async def stop_all_watches(self) -> None:
        await self.watches.stop_all()

    def watched_accounts(self) -> list[WatchInfo]:
        return self.watches.watching()

    async def classify(self, subject: str, body: str, sender: str = "") -> Classification:
        return await self.classifier.classify(subject, body, sender)

    async def health_details(self) -> dict[str, Any]:
        return {
            "stats": await self.store.stats(),
            "accounts": await self.store.count_accounts(),
            "last_fetch_at": (
                self.orchestrator.last_fetch_at.isoformat()
                if self.orchestrator.last_fetch_at
                else None
            ),
            "fetch_in_progress": sorted(self.orchestrator.in_flight),
            "watches": [w.model_dump(mode="json") for w in self.watched_accounts()],
            "classifier_model_enabled": self.classifier.model_enabled,
            "kafka_enabled": self.producer.enabled,
            "webhook_enabled": self.notifier.enabled,
        }

    # ------------------------------------------------------------------
    # Background loops
    # ------------------------------------------------------------------

    async def _run_poll_timer(self) -> None:
        interval = self.config.poll_interval_seconds
        if interval <= 0:
            logger.info("poll_timer_disabled")
            return
        while not self._shutdown_event.is_set():
            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=interval)
                return
            except TimeoutError:
                pass
            try:
                await self.poll_once()
            except Exception:
                logger.exception("poll_tick_failed")

    async def poll_once(self) -> int:
        """Dispatch one fetch per active account; return how many were dispatched."""
        accounts = await self.store.active_accounts()
        logger.info("poll_tick", accounts=len(accounts))
        for account in accounts:
            self.dispatcher.trigger(account.id)
        return len(accounts)

    async def _start_watches(self) -> None:
        if not self.config.watch.enabled:
            logger.info("watches_disabled")
            return
        for account in await self.store.active_accounts():
            await self.watches.start(account.id)

    async def _run_worker(self) -> None:
        if not self.producer.enabled:
            return
        worker = FetchJobWorker(
            self.config.kafka, self.orchestrator, self.dispatcher, self._shutdown_event
        )
        worker_task = asyncio.create_task(worker.run())
        await self._shutdown_event.wait()
        worker_task.cancel()
        try:
            await worker_task
        except asyncio.CancelledError:
            pass

    async def _run_health_server(self) -> None:
        app = create_health_app(self)
        server = uvicorn.Server(
            uvicorn.Config(
                app,
                host="0.0.0.0",
                port=self.config.health_port,
                log_level="warning",
            )
        )

        # Run until the shutdown event fires
        serve_task = asyncio.create_task(server.serve())
        await self._shutdown_event.wait()
        server.should_exit = True
        await serve_task

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()

        def _handle(sig: signal.Signals) -> None:
            logger.info("shutdown_signal_received", signal=sig.name)
            self._shutdown_event.set()

        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, _handle, sig)

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Start all subsystems and run until SIGTERM / SIGINT."""
        setup_logging(json=self.config.log_json, level=self.config.log_level)
        self._install_signal_handlers()
        self.start_time = time.monotonic()
        logger.info("service_starting", service=self.config.name)

        await self.store.create_schema()
        await self.producer.start()
        await self.notifier.start()

        try:
            await self._start_watches()
            self.status = ServiceStatus.RUNNING
            async with asyncio.TaskGroup() as tg:
                tg.create_task(self._run_poll_timer())
                tg.create_task(self._run_worker())
                tg.create_task(self._run_health_server())
        except* Exception:
            logger.exception("service_task_group_error", service=self.config.name)
        finally:
            self.status = ServiceStatus.STOPPING
            await self.watches.stop_all()
            await self.dispatcher.drain()
            await self.notifier.stop()
            await self.producer.stop()
            await self.store.close()
            self.status = ServiceStatus.STOPPED
            logger.info("service_stopped", service=self.config.name)

    def request_shutdown(self) -> None:
        self._shutdown_event.set()
