"""Real-time watch: one supervised IMAP IDLE session per account.

Each watched account gets one asyncio task that owns its state machine::

    Disconnected -> Connecting -> Watching -> Disconnected -> (backoff) -> Connecting ...

The blocking IDLE calls run in worker threads.  A push signal never
writes anything itself; it hands the account id to ``on_new_mail``
(normally :meth:`FetchDispatcher.trigger`), keeping the orchestrator the
single writer.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime

import structlog
from imapclient import IMAPClient
from imapclient.exceptions import LoginError

from .config import ImapConfig, WatchConfig
from .errors import AccountNotFoundError, MailConnectionError
from .models import MailAccount, WatchInfo, WatchState
from .store import MessageStore

logger = structlog.get_logger()


class IdleSession:
    """Blocking IDLE session for one account.  Every method except
    :meth:`abort` must run in a worker thread."""

    def __init__(self, config: ImapConfig, account: MailAccount) -> None:
        self._config = config
        self._account = account
        self._client: IMAPClient | None = None
        self._idle_since: float = 0.0

    def open(self) -> None:
        """Connect, login, select the mailbox read-only and enter IDLE."""
        self._client = IMAPClient(
            self._config.host,
            port=self._config.port,
            ssl=self._config.use_ssl,
            timeout=self._config.connect_timeout_seconds,
        )
        self._client.login(self._account.address, self._account.secret)
        self._client.select_folder(self._config.mailbox, readonly=True)
        self._client.idle()
        self._idle_since = time.monotonic()

    def wait(self, timeout: float, renew_after: float) -> int:
        """Block up to *timeout* seconds; return how many new-mail signals arrived."""
        if self._client is None:
            raise MailConnectionError("IDLE session is not open", account_id=self._account.id)

        responses = self._client.idle_check(timeout=timeout)
        new_mail = 0
        for response in responses:
            if len(response) >= 2 and response[1] == b"EXISTS":
                new_mail += 1
            elif response and response[0] == b"BYE":
                raise MailConnectionError("Server closed the IDLE session", account_id=self._account.id)

        if time.monotonic() - self._idle_since >= renew_after:
            self._client.idle_done()
            self._client.idle()
            self._idle_since = time.monotonic()

        return new_mail

    def abort(self) -> None:
        """Close the socket immediately; a blocked :meth:`wait` then fails fast."""
        client, self._client = self._client, None
        if client is None:
            return
        try:
            client.shutdown()
        except OSError:
            pass


SessionFactory = Callable[[MailAccount], IdleSession]


@dataclass
class _Watch:
    account: MailAccount
    state: WatchState = WatchState.DISCONNECTED
    task: asyncio.Task | None = None
    session: IdleSession | None = None
    connected_since: datetime | None = None
    reconnects: int = 0

    def info(self) -> WatchInfo:
        return WatchInfo(
            account_id=self.account.id,
            address=self.account.address,
            state=self.state,
            connected_since=self.connected_since,
            reconnects=self.reconnects,
        )


class WatchSupervisor:
    """Owns the registry of active watches (account id -> watch)."""

    def __init__(
        self,
        *,
        store: MessageStore,
        config: WatchConfig,
        imap_config: ImapConfig,
        on_new_mail: Callable[[str], object],
        session_factory: SessionFactory | None = None,
    ) -> None:
        self._store = store
        self._config = config
        self._on_new_mail = on_new_mail
        self._session_factory = session_factory or (lambda account: IdleSession(imap_config, account))
        self._watches: dict[str, _Watch] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def start(self, account_id: str) -> WatchInfo:
        """Start watching *account_id*; a no-op when it is already watched."""
        existing = self._watches.get(account_id)
        if existing is not None:
            logger.info("watch_already_active", account_id=account_id)
            return existing.info()

        account = await self._store.get_account(account_id)
        if account is None:
            raise AccountNotFoundError(f"No account with id {account_id!r}")

        # Re-check: another start() may have registered it while we awaited the store
        existing = self._watches.get(account_id)
        if existing is not None:
            return existing.info()

        watch = _Watch(account=account)
        self._watches[account_id] = watch
        watch.task = asyncio.create_task(self._supervise(watch), name=f"watch-{account_id}")
        logger.info("watch_registered", account_id=account_id, address=account.address)
        return watch.info()

    async def stop(self, account_id: str) -> bool:
        """Stop watching *account_id*.  Returns ``False`` if it was not watched."""
        watch = self._watches.pop(account_id, None)
        if watch is None:
            logger.info("watch_stop_noop", account_id=account_id)
            return False
        await self._teardown(watch)
        logger.info("watch_stopped", account_id=account_id)
        return True

    async def stop_all(self) -> None:
        """Stop every watch; individual failures are logged, never raised."""
        account_ids = list(self._watches)
        results = await asyncio.gather(
            *(self.stop(account_id) for account_id in account_ids),
            return_exceptions=True,
        )
        for account_id, result in zip(account_ids, results):
            if isinstance(result, BaseException):
                logger.error("watch_stop_failed", account_id=account_id, error=str(result))
        logger.info("all_watches_stopped", count=len(account_ids))

    def watching(self) -> list[WatchInfo]:
        return [watch.info() for watch in list(self._watches.values())]

    def state_of(self, account_id: str) -> WatchState:
        watch = self._watches.get(account_id)
        return watch.state if watch is not None else WatchState.DISCONNECTED

    # ------------------------------------------------------------------
    # Supervision
    # ------------------------------------------------------------------

    async def _supervise(self, watch: _Watch) -> None:
        log = logger.bind(account_id=watch.account.id, address=watch.account.address)
        while True:
            try:
                await self._watch_once(watch)
                log.info("watch_session_ended")
            except asyncio.CancelledError:
                raise
            except LoginError as exc:
                log.error("watch_login_rejected", error=str(exc))
                await self._deactivate(watch)
                return
            except Exception as exc:
                log.warning("watch_session_error", error=str(exc))
            finally:
                self._close_session(watch)

            # Stays registered as DISCONNECTED: start() is a no-op and stop() cancels this wait
            watch.reconnects += 1
            log.info("watch_reconnect_scheduled", delay=self._config.reconnect_delay_seconds)
            await asyncio.sleep(self._config.reconnect_delay_seconds)

    async def _watch_once(self, watch: _Watch) -> None:
        session = self._session_factory(watch.account)
        watch.session = session
        watch.state = WatchState.CONNECTING
        await asyncio.to_thread(session.open)

        watch.state = WatchState.WATCHING
        watch.connected_since = datetime.now(UTC)
        logger.info("watch_idle_started", account_id=watch.account.id)

        while True:
            signals = await asyncio.to_thread(
                session.wait,
                self._config.idle_check_seconds,
                self._config.idle_renew_seconds,
            )
            if signals:
                logger.info("new_mail_signal", account_id=watch.account.id, signals=signals)
                self._notify(watch.account.id)

    def _notify(self, account_id: str) -> None:
        try:
            self._on_new_mail(account_id)
        except Exception:
            logger.exception("new_mail_trigger_failed", account_id=account_id)

    def _close_session(self, watch: _Watch) -> None:
        session, watch.session = watch.session, None
        if session is not None:
            session.abort()
        watch.state = WatchState.DISCONNECTED
        watch.connected_since = None

    async def _teardown(self, watch: _Watch) -> None:
        # Close the socket first so the worker thread unblocks, then cancel.
        self._close_session(watch)
        task = watch.task
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _deactivate(self, watch: _Watch) -> None:
        if self._watches.get(watch.account.id) is watch:
            del self._watches[watch.account.id]
        try:
            await self._store.set_active(watch.account.id, False)
        except Exception:
            logger.exception("account_deactivate_failed", account_id=watch.account.id)
