"""Tests for onebox_ingest.orchestrator."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from onebox_ingest.classifier import Classifier
from onebox_ingest.config import ClassifierConfig, DefaultAccountConfig, ImapConfig, RetryConfig
from onebox_ingest.dedup import MessageIngestor
from onebox_ingest.errors import (
    AccountNotFoundError,
    FetchTimeoutError,
    MailAuthenticationError,
    MailConnectionError,
)
from onebox_ingest.imap_client import AsyncImapClient, FetchBatch
from onebox_ingest.models import Category, MailAccount, ParsedMessage
from onebox_ingest.orchestrator import FetchOrchestrator
from onebox_ingest.store import MessageStore
from tests.conftest import make_parsed

BASE_TIME = datetime(2025, 6, 1, 12, 0, tzinfo=UTC)


def _batch(account_id: str, count: int) -> FetchBatch:
    messages: list[ParsedMessage] = [
        make_parsed(
            account_id,
            message_id=f"<{i}@x>",
            received_at=BASE_TIME + timedelta(minutes=i),
        )
        for i in range(count)
    ]
    return FetchBatch(total=count, messages=messages)


class FakeClient:
    """Stands in for AsyncImapClient; behaviour is programmed per attempt."""

    def __init__(self, outcomes: list, gate: asyncio.Event | None = None) -> None:
        self._outcomes = outcomes
        self._gate = gate
        self.calls = 0
        self.aborted = 0

    async def fetch_recent(self, limit: int) -> FetchBatch:
        self.calls += 1
        if self._gate is not None:
            await self._gate.wait()
        outcome = self._outcomes[min(self.calls, len(self._outcomes)) - 1]
        if isinstance(outcome, BaseException):
            raise outcome
        if outcome == "hang":
            await asyncio.sleep(3600)
        return outcome

    def abort(self) -> None:
        self.aborted += 1


@pytest.fixture
def fanout() -> AsyncMock:
    return AsyncMock()


def _orchestrator(
    store: MessageStore,
    fanout: AsyncMock,
    client: FakeClient,
    *,
    imap_config: ImapConfig | None = None,
    default_account: DefaultAccountConfig | None = None,
) -> FetchOrchestrator:
    return FetchOrchestrator(
        store=store,
        ingestor=MessageIngestor(store, Classifier(ClassifierConfig(api_key=None))),
        fanout=fanout,
        imap_config=imap_config or ImapConfig(operation_timeout_seconds=1.0),
        retry_config=RetryConfig(max_attempts=2, wait_seconds=0.01),
        default_account=default_account or DefaultAccountConfig(),
        client_factory=lambda account: client,
    )


class TestFetchRecent:
    @pytest.mark.asyncio
    async def test_stores_and_fans_out_new(
        self, store: MessageStore, account: MailAccount, fanout: AsyncMock
    ):
        client = FakeClient([_batch(account.id, 3)])
        orch = _orchestrator(store, fanout, client)

        stored = await orch.fetch_recent(account.id, limit=3)

        assert len(stored) == 3
        assert await store.count_messages() == 3
        fanout.dispatch.assert_awaited_once()
        assert len(fanout.dispatch.await_args.args[0]) == 3
        assert orch.last_fetch_at is not None
        synced = await store.get_account(account.id)
        assert synced is not None and synced.last_sync_at is not None

    @pytest.mark.asyncio
    async def test_newest_first(self, store: MessageStore, account: MailAccount, fanout: AsyncMock):
        orch = _orchestrator(store, fanout, FakeClient([_batch(account.id, 3)]))
        stored = await orch.fetch_recent(account.id, limit=3)
        assert [m.message_id for m in stored] == ["<2@x>", "<1@x>", "<0@x>"]

    @pytest.mark.asyncio
    async def test_repeat_fetch_creates_nothing(
        self, store: MessageStore, account: MailAccount, fanout: AsyncMock
    ):
        orch = _orchestrator(store, fanout, FakeClient([_batch(account.id, 2)]))
        await orch.fetch_recent(account.id)
        fanout.dispatch.reset_mock()

        stored = await orch.fetch_recent(account.id)

        assert len(stored) == 2
        fanout.dispatch.assert_not_awaited()
        assert await store.count_messages() == 2

    @pytest.mark.asyncio
    async def test_force_notify_passed_through(
        self, store: MessageStore, account: MailAccount, fanout: AsyncMock
    ):
        orch = _orchestrator(store, fanout, FakeClient([_batch(account.id, 1)]))
        await orch.fetch_recent(account.id, force_notify=True)
        assert fanout.dispatch.await_args.kwargs["force"] is True

    @pytest.mark.asyncio
    async def test_stored_category(self, store: MessageStore, account: MailAccount, fanout: AsyncMock):
        batch = FetchBatch(
            total=1,
            messages=[make_parsed(account.id, subject="Out of Office", body="I am on vacation.")],
        )
        orch = _orchestrator(store, fanout, FakeClient([batch]))
        stored = await orch.fetch_recent(account.id)
        assert stored[0].category is Category.OUT_OF_OFFICE


class TestSingleFlight:
    @pytest.mark.asyncio
    async def test_concurrent_call_returns_empty(
        self, store: MessageStore, account: MailAccount, fanout: AsyncMock
    ):
        gate = asyncio.Event()
        client = FakeClient([_batch(account.id, 2)], gate=gate)
        orch = _orchestrator(store, fanout, client)

        first = asyncio.create_task(orch.fetch_recent(account.id))
        while client.calls == 0:
            await asyncio.sleep(0)
        assert orch.is_fetching(account.id)

        second = await orch.fetch_recent(account.id)
        assert second == []

        gate.set()
        assert len(await first) == 2
        assert client.calls == 1
        assert orch.in_flight == frozenset()

    @pytest.mark.asyncio
    async def test_default_and_explicit_id_share_guard(
        self, store: MessageStore, account: MailAccount, fanout: AsyncMock
    ):
        gate = asyncio.Event()
        client = FakeClient([_batch(account.id, 1)], gate=gate)
        orch = _orchestrator(store, fanout, client)

        first = asyncio.create_task(orch.fetch_recent(None))
        while client.calls == 0:
            await asyncio.sleep(0)

        assert await orch.fetch_recent(account.id) == []
        assert await orch.fetch_recent(account.address) == []

        gate.set()
        await first
        assert client.calls == 1

    @pytest.mark.asyncio
    async def test_guard_released_after_failure(
        self, store: MessageStore, account: MailAccount, fanout: AsyncMock
    ):
        client = FakeClient([MailConnectionError("down"), MailConnectionError("down"), _batch(account.id, 1)])
        orch = _orchestrator(store, fanout, client)

        with pytest.raises(MailConnectionError):
            await orch.fetch_recent(account.id)
        assert not orch.is_fetching(account.id)

        assert len(await orch.fetch_recent(account.id)) == 1


class TestRetryAndTimeout:
    @pytest.mark.asyncio
    async def test_retry_then_success(self, store: MessageStore, account: MailAccount, fanout: AsyncMock):
        client = FakeClient([MailConnectionError("blip"), _batch(account.id, 2)])
        orch = _orchestrator(store, fanout, client)
        stored = await orch.fetch_recent(account.id)
        assert client.calls == 2
        assert len(stored) == 2

    @pytest.mark.asyncio
    async def test_exhausted_attempts_raise_and_write_nothing(
        self, store: MessageStore, account: MailAccount, fanout: AsyncMock
    ):
        client = FakeClient([MailAuthenticationError("bad password", account_id=account.id)])
        orch = _orchestrator(store, fanout, client)

        with pytest.raises(MailAuthenticationError):
            await orch.fetch_recent(account.id)

        assert client.calls == 2
        assert await store.count_messages() == 0
        fanout.dispatch.assert_not_awaited()
        synced = await store.get_account(account.id)
        assert synced is not None and synced.last_sync_at is None

    @pytest.mark.asyncio
    async def test_timeout_aborts_session(self, store: MessageStore, account: MailAccount, fanout: AsyncMock):
        client = FakeClient(["hang"])
        orch = _orchestrator(
            store, fanout, client, imap_config=ImapConfig(operation_timeout_seconds=0.05)
        )

        with pytest.raises(FetchTimeoutError):
            await orch.fetch_recent(account.id)

        assert client.calls == 2
        assert client.aborted == 2

    @pytest.mark.asyncio
    async def test_non_fetch_error_not_retried(
        self, store: MessageStore, account: MailAccount, fanout: AsyncMock
    ):
        client = FakeClient([RuntimeError("bug")])
        orch = _orchestrator(store, fanout, client)
        with pytest.raises(RuntimeError):
            await orch.fetch_recent(account.id)
        assert client.calls == 1


class TestResolveAccount:
    @pytest.mark.asyncio
    async def test_by_id_and_address(self, store: MessageStore, account: MailAccount, fanout: AsyncMock):
        orch = _orchestrator(store, fanout, FakeClient([]))
        assert (await orch.resolve_account(account.id)).id == account.id
        assert (await orch.resolve_account("owner@example.com")).id == account.id

    @pytest.mark.asyncio
    async def test_unknown_ref(self, store: MessageStore, account: MailAccount, fanout: AsyncMock):
        orch = _orchestrator(store, fanout, FakeClient([]))
        with pytest.raises(AccountNotFoundError):
            await orch.resolve_account("nobody@example.com")

    @pytest.mark.asyncio
    async def test_default_uses_active_account(
        self, store: MessageStore, account: MailAccount, fanout: AsyncMock
    ):
        orch = _orchestrator(store, fanout, FakeClient([]))
        assert (await orch.resolve_account(None)).id == account.id
        assert (await orch.resolve_account("default")).id == account.id

    @pytest.mark.asyncio
    async def test_bootstrap_from_default_credentials(self, store: MessageStore, fanout: AsyncMock):
        orch = _orchestrator(
            store,
            fanout,
            FakeClient([]),
            default_account=DefaultAccountConfig(address="boot@example.com", password="pw"),
        )
        created = await orch.resolve_account(None)
        assert created.address == "boot@example.com"
        assert await store.count_accounts() == 1
        # Second call finds it instead of creating another
        assert (await orch.resolve_account(None)).id == created.id
        assert await store.count_accounts() == 1

    @pytest.mark.asyncio
    async def test_no_account_no_credentials(self, store: MessageStore, fanout: AsyncMock):
        client = FakeClient([])
        orch = _orchestrator(store, fanout, client)
        with pytest.raises(AccountNotFoundError):
            await orch.fetch_recent(None)
        assert client.calls == 0
        assert orch.in_flight == frozenset()


class TestClientFactory:
    def test_default_factory_builds_imap_client(self):
        orch = FetchOrchestrator(
            store=MagicMock(),
            ingestor=MagicMock(),
            fanout=MagicMock(),
            imap_config=ImapConfig(),
            retry_config=RetryConfig(),
        )
        account = MailAccount(id="a", address="a@example.com", secret="pw")
        assert isinstance(orch._client_factory(account), AsyncImapClient)
