"""Async IMAP client wrapping stdlib imaplib with asyncio.to_thread.

One :class:`AsyncImapClient` owns one session for one account.  A fetch
opens the session, reads the most recent messages by sequence number,
parses them, and always tears the session down before returning.
"""

from __future__ import annotations

import asyncio
import imaplib
from dataclasses import dataclass, field
from datetime import UTC, datetime

import structlog

from .config import ImapConfig
from .errors import MailAuthenticationError, MailConnectionError
from .models import MailAccount, ParsedMessage
from .parser import FetchContext, MimeParser

logger = structlog.get_logger()


@dataclass
class FetchBatch:
    """Result of one fetch session."""

    total: int
    messages: list[ParsedMessage] = field(default_factory=list)
    skipped: int = 0


class AsyncImapClient:
    """Async-friendly, single-account IMAP client.

    All blocking ``imaplib`` operations run in a worker thread via
    ``asyncio.to_thread()``.  :meth:`abort` may be called from the event
    loop while a fetch is in flight; it closes the socket so the worker
    thread fails fast instead of running to completion.
    """

    def __init__(
        self,
        config: ImapConfig,
        account: MailAccount,
        parser: MimeParser | None = None,
    ) -> None:
        self._config = config
        self._account = account
        self._parser = parser or MimeParser()
        self._conn: imaplib.IMAP4_SSL | imaplib.IMAP4 | None = None

    @property
    def connected(self) -> bool:
        return self._conn is not None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def fetch_recent(self, limit: int) -> FetchBatch:
        """Fetch and parse the *limit* most recent messages of the mailbox."""
        return await asyncio.to_thread(self._fetch_recent_sync, limit)

    def abort(self) -> None:
        """Forcibly destroy the session without a protocol-level logout."""
        conn = self._conn
        if conn is None:
            return
        try:
            conn.shutdown()
        except OSError:
            pass
        logger.warning("imap_session_aborted", account_id=self._account.id)

    # ------------------------------------------------------------------
    # Synchronous helpers (run in thread)
    # ------------------------------------------------------------------

    def _fetch_recent_sync(self, limit: int) -> FetchBatch:
        context = FetchContext(
            account_id=self._account.id,
            account_address=self._account.address,
            folder=self._config.mailbox,
            session_started_at=datetime.now(UTC),
        )
        try:
            total = self._open_sync()
            logger.info("imap_mailbox_selected", account_id=self._account.id, total=total)
            if total == 0 or limit <= 0:
                return FetchBatch(total=total)

            start = max(1, total - limit + 1)
            return self._fetch_range_sync(start, total, context)
        except (imaplib.IMAP4.error, OSError) as exc:
            raise MailConnectionError(
                f"IMAP fetch failed for {self._account.address}: {exc}",
                account_id=self._account.id,
            ) from exc
        finally:
            self._teardown_sync()

    def _open_sync(self) -> int:
        """Connect, login, select the mailbox read-only; return the message count."""
        timeout = self._config.connect_timeout_seconds
        if self._config.use_ssl:
            self._conn = imaplib.IMAP4_SSL(self._config.host, self._config.port, timeout=timeout)
        else:
            self._conn = imaplib.IMAP4(self._config.host, self._config.port, timeout=timeout)

        try:
            self._conn.login(self._account.address, self._account.secret)
        except imaplib.IMAP4.error as exc:
            raise MailAuthenticationError(
                f"Login rejected for {self._account.address}: {exc}",
                account_id=self._account.id,
            ) from exc

        status, data = self._conn.select(self._config.mailbox, readonly=True)
        if status != "OK":
            raise MailConnectionError(
                f"Cannot select {self._config.mailbox}: {data!r}",
                account_id=self._account.id,
            )
        if not data or not data[0]:
            return 0
        try:
            return int(data[0])
        except (TypeError, ValueError) as exc:
            raise MailConnectionError(
                f"Unexpected SELECT response for {self._config.mailbox}: {data!r}",
                account_id=self._account.id,
            ) from exc

    def _fetch_range_sync(self, start: int, end: int, context: FetchContext) -> FetchBatch:
        assert self._conn is not None
        logger.debug("imap_fetch_range", account_id=self._account.id, start=start, end=end)

        status, data = self._conn.fetch(f"{start}:{end}", "(RFC822)")
        if status != "OK":
            raise MailConnectionError(
                f"FETCH {start}:{end} returned {status}",
                account_id=self._account.id,
            )

        batch = FetchBatch(total=end)
        for item in data:
            # imaplib interleaves (envelope, body) tuples with b")" terminators
            if not isinstance(item, tuple) or len(item) < 2:
                continue
            envelope, raw_bytes = item[0], item[1]
            try:
                sequence = int(envelope.split(None, 1)[0])
                batch.messages.append(self._parser.parse(raw_bytes, sequence, context))
            except Exception as exc:
                batch.skipped += 1
                logger.warning(
                    "message_parse_failed",
                    account_id=self._account.id,
                    envelope=envelope[:64],
                    error=str(exc),
                )

        logger.debug(
            "imap_fetch_complete",
            account_id=self._account.id,
            parsed=len(batch.messages),
            skipped=batch.skipped,
        )
        return batch

    def _teardown_sync(self) -> None:
        conn, self._conn = self._conn, None
        if conn is None:
            return
        try:
            conn.close()
        except (imaplib.IMAP4.error, OSError):
            pass
        try:
            conn.logout()
        except (imaplib.IMAP4.error, OSError):
            pass
