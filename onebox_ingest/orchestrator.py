"""FetchOrchestrator: the single writer path for "fetch the N most recent messages".

Every trigger (on-demand call, watch push signal, poll timer, queued job)
ends up in :meth:`FetchOrchestrator.fetch_recent`.  Per account, at most
one run is in flight; a concurrent call is turned away with an empty
result instead of queueing behind it.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime

import structlog

from .config import DefaultAccountConfig, ImapConfig, RetryConfig
from .dedup import MessageIngestor
from .errors import AccountNotFoundError, FetchTimeoutError, MailFetchError
from .imap_client import AsyncImapClient, FetchBatch
from .models import MailAccount, MailMessage
from .notifier import NotificationFanout
from .retry import with_retry
from .store import MessageStore

logger = structlog.get_logger()

ClientFactory = Callable[[MailAccount], AsyncImapClient]


class FetchOrchestrator:
    """Resolve the account, fetch with retry and timeout, persist, fan out."""

    def __init__(
        self,
        *,
        store: MessageStore,
        ingestor: MessageIngestor,
        fanout: NotificationFanout,
        imap_config: ImapConfig,
        retry_config: RetryConfig,
        default_account: DefaultAccountConfig | None = None,
        client_factory: ClientFactory | None = None,
    ) -> None:
        self._store = store
        self._ingestor = ingestor
        self._fanout = fanout
        self._imap_config = imap_config
        self._retry_config = retry_config
        self._default_account = default_account or DefaultAccountConfig()
        self._client_factory = client_factory or (lambda account: AsyncImapClient(imap_config, account))

        self._in_flight: set[str] = set()
        self.last_fetch_at: datetime | None = None

    # ------------------------------------------------------------------
    # Public properties (used by health checks)
    # ------------------------------------------------------------------

    @property
    def in_flight(self) -> frozenset[str]:
        return frozenset(self._in_flight)

    def is_fetching(self, scope: str) -> bool:
        return scope in self._in_flight

    # ------------------------------------------------------------------
    # FetchRecent
    # ------------------------------------------------------------------

    async def fetch_recent(
        self,
        account_ref: str | None = None,
        limit: int = 10,
        *,
        force_notify: bool = False,
    ) -> list[MailMessage]:
        """Fetch, persist and fan out the *limit* most recent messages.

        *account_ref* may be an account id, a mailbox address, or ``None``
        for the default active account.  Returns every stored record of
        the batch (old and new), newest first.  Raises
        :class:`MailFetchError` once all attempts are exhausted.
        """
        scope = account_ref or "default"
        # Check-and-set with no await in between: atomic on the event loop.
        if scope in self._in_flight:
            logger.info("fetch_skipped_in_progress", scope=scope)
            return []
        self._in_flight.add(scope)
        claimed = {scope}

        try:
            account = await self.resolve_account(account_ref)
            # "default", an address and an id can all name the same account
            if account.id not in claimed:
                if account.id in self._in_flight:
                    logger.info("fetch_skipped_in_progress", scope=scope, account_id=account.id)
                    return []
                self._in_flight.add(account.id)
                claimed.add(account.id)
            return await self._run(account, limit, force_notify=force_notify)
        finally:
            self._in_flight.difference_update(claimed)

    async def resolve_account(self, account_ref: str | None) -> MailAccount:
        """Explicit id, else address, else the sole active account, else bootstrap."""
        account: MailAccount | None = None
        if account_ref and account_ref != "default":
            account = await self._store.get_account(account_ref)
            if account is None:
                account = await self._store.find_account_by_address(account_ref)
            if account is None:
                raise AccountNotFoundError(f"No account matches {account_ref!r}")
            return account

        account = await self._store.find_active_account()
        if account is not None:
            return account

        if not self._default_account.configured:
            raise AccountNotFoundError("No active account and no default credentials configured")

        assert self._default_account.address is not None
        assert self._default_account.password is not None
        logger.warning("creating_bootstrap_account", address=self._default_account.address)
        return await self._store.create_account(
            self._default_account.address,
            self._default_account.password.get_secret_value(),
            provider=self._imap_config.provider,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _run(self, account: MailAccount, limit: int, *, force_notify: bool) -> list[MailMessage]:
        log = logger.bind(account_id=account.id, address=account.address)
        log.info("fetch_started", limit=limit)

        try:
            batch = await self._fetch_with_retry(account, limit)
        except MailFetchError:
            log.error("fetch_failed", attempts=self._retry_config.max_attempts)
            raise

        await self._store.mark_synced(account.id)
        self.last_fetch_at = datetime.now(UTC)

        parsed = sorted(batch.messages, key=lambda m: m.received_at, reverse=True)
        result = await self._ingestor.save_batch(parsed)
        if result.created:
            await self._fanout.dispatch(result.created, force=force_notify)

        log.info(
            "fetch_completed",
            mailbox_total=batch.total,
            fetched=len(parsed),
            skipped=batch.skipped,
            stored=len(result.stored),
            created=len(result.created),
        )
        return result.stored

    async def _fetch_with_retry(self, account: MailAccount, limit: int) -> FetchBatch:
        @with_retry(self._retry_config, retryable_exceptions=(MailFetchError,))
        async def _attempt() -> FetchBatch:
            return await self._fetch_once(account, limit)

        return await _attempt()

    async def _fetch_once(self, account: MailAccount, limit: int) -> FetchBatch:
        client = self._client_factory(account)
        try:
            async with asyncio.timeout(self._imap_config.operation_timeout_seconds):
                return await client.fetch_recent(limit)
        except TimeoutError as exc:
            client.abort()
            raise FetchTimeoutError(
                f"Fetch for {account.address} exceeded "
                f"{self._imap_config.operation_timeout_seconds}s",
                account_id=account.id,
            ) from exc
