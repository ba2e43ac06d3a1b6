"""Shared test fixtures for the ingestion pipeline test suite."""

from __future__ import annotations

from datetime import UTC, datetime
from email import encoders
from email.mime.base import MIMEBase
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from pathlib import Path

import pytest

from onebox_ingest.classifier import Classifier
from onebox_ingest.config import (
    ClassifierConfig,
    DatabaseConfig,
    ImapConfig,
    RetryConfig,
    WatchConfig,
    WebhookConfig,
)
from onebox_ingest.models import Category, MailAccount, MailMessage, ParsedMessage
from onebox_ingest.store import MessageStore


@pytest.fixture
def imap_config() -> ImapConfig:
    return ImapConfig(
        host="imap.test.com",
        port=993,
        use_ssl=True,
        mailbox="INBOX",
        connect_timeout_seconds=5.0,
        operation_timeout_seconds=1.0,
    )


@pytest.fixture
def retry_config() -> RetryConfig:
    return RetryConfig(max_attempts=2, wait_seconds=0.01)


@pytest.fixture
def webhook_config() -> WebhookConfig:
    return WebhookConfig(url="https://hooks.test/services/T000", timeout_seconds=5.0, send_delay_seconds=0)


@pytest.fixture
def watch_config() -> WatchConfig:
    return WatchConfig(reconnect_delay_seconds=0.01, idle_check_seconds=0.01, idle_renew_seconds=300)


@pytest.fixture
def rules_classifier() -> Classifier:
    """Classifier with the model path disabled."""
    return Classifier(ClassifierConfig(api_key=None))


@pytest.fixture
async def store(tmp_path: Path):
    s = MessageStore(DatabaseConfig(url=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}"))
    await s.create_schema()
    yield s
    await s.close()


@pytest.fixture
async def account(store: MessageStore) -> MailAccount:
    return await store.create_account("owner@example.com", "app-password")


@pytest.fixture
def account_model() -> MailAccount:
    return MailAccount(id="acc-1", address="owner@example.com", secret="app-password")


# ------------------------------------------------------------------
# Record builders
# ------------------------------------------------------------------


def make_parsed(
    account_id: str = "acc-1",
    *,
    message_id: str = "<m-1@example.com>",
    subject: str = "Partnership inquiry",
    body: str = "We are interested in your product and would like to discuss next steps.",
    sender: str = "Lead <lead@example.com>",
    received_at: datetime | None = None,
) -> ParsedMessage:
    return ParsedMessage(
        message_id=message_id,
        account_id=account_id,
        sender=sender,
        recipients="owner@example.com",
        subject=subject,
        body_text=body,
        received_at=received_at or datetime(2025, 6, 1, 12, 0, tzinfo=UTC),
    )


def make_message(
    *,
    id: int = 1,
    category: Category = Category.INTERESTED,
    subject: str = "Partnership inquiry",
    account_id: str = "acc-1",
) -> MailMessage:
    return MailMessage(
        id=id,
        message_id=f"<m-{id}@example.com>",
        account_id=account_id,
        sender="lead@example.com",
        recipients="owner@example.com",
        subject=subject,
        body_text="Let's talk.",
        received_at=datetime(2025, 6, 1, 12, 0, tzinfo=UTC),
        category=category,
        confidence=0.8,
    )


# ------------------------------------------------------------------
# Sample EML builders
# ------------------------------------------------------------------


def build_plain_email(
    *,
    subject: str | None = "Test Subject",
    from_addr: str | None = "sender@example.com",
    to_addr: str | None = "recipient@example.com",
    body: str = "Hello, World!",
    message_id: str | None = "<test-001@example.com>",
    date: str | None = "Sun, 01 Jun 2025 12:00:00 +0000",
    in_reply_to: str | None = None,
    references: str | None = None,
    subtype: str = "plain",
) -> bytes:
    """Build a simple single-part text email as raw bytes."""
    msg = MIMEText(body, subtype)
    if subject is not None:
        msg["Subject"] = subject
    if from_addr is not None:
        msg["From"] = from_addr
    if to_addr is not None:
        msg["To"] = to_addr
    if message_id is not None:
        msg["Message-ID"] = message_id
    if date is not None:
        msg["Date"] = date
    if in_reply_to:
        msg["In-Reply-To"] = in_reply_to
    if references:
        msg["References"] = references
    return msg.as_bytes()


def build_multipart_email(
    *,
    body_text: str = "Plain body",
    body_html: str = "<p>HTML body</p>",
    attachments: list[tuple[str, str, bytes]] | None = None,
) -> bytes:
    """Build a multipart email with text, HTML, and optional attachments."""
    msg = MIMEMultipart("mixed")
    msg["Subject"] = "Multipart Email"
    msg["From"] = "sender@example.com"
    msg["To"] = "recipient@example.com"
    msg["Message-ID"] = "<multi-001@example.com>"
    msg["Date"] = "Sun, 01 Jun 2025 12:00:00 +0000"

    alt = MIMEMultipart("alternative")
    alt.attach(MIMEText(body_text, "plain"))
    alt.attach(MIMEText(body_html, "html"))
    msg.attach(alt)

    for filename, content_type, payload in attachments or []:
        maintype, subtype = content_type.split("/", 1)
        part = MIMEBase(maintype, subtype)
        part.set_payload(payload)
        encoders.encode_base64(part)
        part.add_header("Content-Disposition", "attachment", filename=filename)
        msg.attach(part)

    return msg.as_bytes()


@pytest.fixture
def plain_eml_bytes() -> bytes:
    return build_plain_email()


@pytest.fixture
def multipart_eml_bytes() -> bytes:
    return build_multipart_email(
        attachments=[("report.pdf", "application/pdf", b"%PDF-1.4 fake pdf content")],
    )
