"""Data models for the mail ingestion pipeline."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class Category(str, Enum):
    """Closed set of labels a stored message can carry."""

    INTERESTED = "Interested"
    MEETING_BOOKED = "Meeting Booked"
    NOT_INTERESTED = "Not Interested"
    OUT_OF_OFFICE = "Out of Office"
    SPAM = "Spam"

    @classmethod
    def parse(cls, token: str) -> Category | None:
        """Match a free-form token against the category names, case-insensitively."""
        cleaned = token.strip().strip("\"'`.").strip().lower()
        for category in cls:
            if category.value.lower() == cleaned:
                return category
        return None


# Categories that warrant an external notification.
ACTIONABLE_CATEGORIES: frozenset[Category] = frozenset(
    {Category.INTERESTED, Category.MEETING_BOOKED}
)


class ServiceStatus(str, Enum):
    """Runtime status of the ingestion service."""

    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


class WatchState(str, Enum):
    """Per-account state of a real-time watch."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    WATCHING = "watching"


class MailAccount(BaseModel):
    """A remote mailbox the pipeline ingests from."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    address: str
    secret: str = Field(repr=False, description="IMAP password / app token")
    provider: str = "gmail"
    active: bool = True
    last_sync_at: datetime | None = None


class ParsedMessage(BaseModel):
    """A message as fetched and parsed from the mailbox, before persistence."""

    message_id: str = Field(description="Idempotency key (server-provided or synthesized)")
    account_id: str
    sender: str
    recipients: str
    cc: str = ""
    bcc: str = ""
    subject: str
    body_text: str = ""
    body_html: str = ""
    received_at: datetime
    thread_id: str | None = None
    has_attachments: bool = False
    folder: str = "INBOX"
    sequence: int | None = Field(default=None, description="IMAP sequence number at fetch time")


class MailMessage(BaseModel):
    """The stored, classified record."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    message_id: str
    account_id: str
    sender: str
    recipients: str
    cc: str = ""
    bcc: str = ""
    subject: str
    body_text: str = ""
    body_html: str = ""
    received_at: datetime
    thread_id: str | None = None
    has_attachments: bool = False
    folder: str = "INBOX"
    category: Category
    confidence: float = Field(ge=0.0, le=1.0)
    is_read: bool = False
    is_starred: bool = False
    notified: bool = False
    created_at: datetime | None = None


class Classification(BaseModel):
    """Output of the classification engine."""

    category: Category
    confidence: float = Field(ge=0.0, le=1.0)
    source: str = Field(default="rules", description="'model' or 'rules'")


class MessageUpdate(BaseModel):
    """Event published to the live-update channel for a newly stored message."""

    event: str = "new-email"
    account_id: str
    id: int
    message_id: str
    sender: str
    subject: str
    category: Category
    confidence: float
    received_at: datetime
    is_read: bool
    body_text: str = ""

    @classmethod
    def from_message(cls, message: MailMessage) -> MessageUpdate:
        return cls(
            account_id=message.account_id,
            id=message.id,
            message_id=message.message_id,
            sender=message.sender,
            subject=message.subject,
            category=message.category,
            confidence=message.confidence,
            received_at=message.received_at,
            is_read=message.is_read,
            body_text=message.body_text,
        )


class FetchJob(BaseModel):
    """A queued request to run ``FetchRecent`` for one account."""

    account_id: str
    priority: str = Field(default="normal", description="'normal' or 'high'")
    limit: int | None = None
    requested_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class DispatchResult(BaseModel):
    """How a fetch request was handled by the dispatcher."""

    account_id: str
    queued: bool
    method: str = Field(description="'kafka' or 'direct'")
    fetched: int | None = None


class WatchInfo(BaseModel):
    """Read-only view of one registered watch."""

    account_id: str
    address: str
    state: WatchState
    connected_since: datetime | None = None
    reconnects: int = 0


class HealthStatus(BaseModel):
    """Response model for the /health endpoint."""

    service: str
    status: ServiceStatus
    uptime_seconds: float
    details: dict[str, Any] = Field(default_factory=dict)
