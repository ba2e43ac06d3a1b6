"""Notification fan-out: live-update channel plus the external webhook sink."""

from __future__ import annotations

import asyncio
from collections import Counter
from datetime import UTC, datetime

import httpx
import structlog

from .config import WebhookConfig
from .kafka_producer import KafkaProducerWrapper
from .models import ACTIONABLE_CATEGORIES, Category, MailMessage, MessageUpdate
from .store import MessageStore

logger = structlog.get_logger()

FOOTER = "OneBox Email Aggregator"


def build_message_payload(message: MailMessage) -> dict:
    """Slack block-kit payload describing one classified message."""
    preview = (message.body_text or "")[:200]
    return {
        "text": f"New {message.category.value} Email Received",
        "blocks": [
            {
                "type": "header",
                "text": {"type": "plain_text", "text": f"New {message.category.value} Email"},
            },
            {
                "type": "section",
                "fields": [
                    {"type": "mrkdwn", "text": f"*From:*\n{message.sender}"},
                    {"type": "mrkdwn", "text": f"*Category:*\n{message.category.value}"},
                    {"type": "mrkdwn", "text": f"*Subject:*\n{message.subject}"},
                    {"type": "mrkdwn", "text": f"*AI Confidence:*\n{round(message.confidence * 100)}%"},
                ],
            },
            {
                "type": "section",
                "text": {"type": "mrkdwn", "text": f"*Preview:*\n{preview}..."},
            },
            {
                "type": "context",
                "elements": [
                    {
                        "type": "mrkdwn",
                        "text": f"{message.received_at.isoformat()} | {FOOTER}",
                    }
                ],
            },
        ],
    }


def build_digest_payload(messages: list[MailMessage]) -> dict:
    """One payload summarising a batch of messages by category."""
    counts = Counter(m.category.value for m in messages)
    blocks: list[dict] = [
        {"type": "header", "text": {"type": "plain_text", "text": "Email Batch Update"}},
        {
            "type": "section",
            "text": {"type": "mrkdwn", "text": f"Processed *{len(messages)}* new emails:"},
        },
    ]
    for category, count in sorted(counts.items()):
        blocks.append(
            {"type": "section", "text": {"type": "mrkdwn", "text": f"*{category}:* {count} emails"}}
        )
    blocks.append(
        {
            "type": "context",
            "elements": [
                {"type": "mrkdwn", "text": f"{datetime.now(UTC).isoformat()} | {FOOTER}"}
            ],
        }
    )
    return {"text": f"Email Batch Update - {len(messages)} New Emails", "blocks": blocks}


class WebhookNotifier:
    """Posts structured messages to an incoming-webhook URL.

    An empty URL disables the notifier; :meth:`send` then returns ``False``.
    """

    def __init__(self, config: WebhookConfig) -> None:
        self._config = config
        self._client: httpx.AsyncClient | None = None
        self._started = False

    @property
    def enabled(self) -> bool:
        return self._client is not None

    async def start(self) -> None:
        self._started = True
        if not self._config.url:
            logger.info("webhook_notifier_disabled", reason="empty_url")
            return
        self._client = httpx.AsyncClient(timeout=httpx.Timeout(self._config.timeout_seconds))
        logger.info("webhook_notifier_started")

    async def stop(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.info("webhook_notifier_stopped")

    async def send(self, message: MailMessage) -> bool:
        """POST one message; ``True`` on 2xx, ``httpx.HTTPStatusError`` otherwise."""
        return await self._post(build_message_payload(message))

    async def send_digest(self, messages: list[MailMessage]) -> bool:
        if not messages:
            return False
        return await self._post(build_digest_payload(messages))

    async def send_test(self) -> bool:
        """Send a synthetic message to verify the integration end to end."""
        sample = MailMessage(
            id=0,
            message_id="<integration-test@onebox.local>",
            account_id="test",
            sender="test@example.com",
            recipients="",
            subject="Test Email - Webhook Integration",
            body_text="This is a test email to verify that notifications are working correctly.",
            received_at=datetime.now(UTC),
            category=Category.INTERESTED,
            confidence=0.92,
        )
        return await self.send(sample)

    async def _post(self, payload: dict) -> bool:
        if not self._started:
            raise AssertionError("Notifier not started")
        if self._client is None:
            return False
        response = await self._client.post(self._config.url, json=payload)
        response.raise_for_status()
        return True


class NotificationFanout:
    """Pushes newly created messages to the live channel and, selectively, the webhook."""

    def __init__(
        self,
        producer: KafkaProducerWrapper,
        notifier: WebhookNotifier,
        store: MessageStore,
        config: WebhookConfig,
        *,
        actionable: frozenset[Category] = ACTIONABLE_CATEGORIES,
    ) -> None:
        self._producer = producer
        self._notifier = notifier
        self._store = store
        self._config = config
        self._actionable = actionable

    def should_notify(self, message: MailMessage, *, force: bool = False) -> bool:
        return force or message.category in self._actionable

    async def dispatch(self, created: list[MailMessage], *, force: bool = False) -> int:
        """Fan out *created* messages; return how many webhook sends succeeded.

        Never raises: every failure is logged and the next message proceeds.
        """
        for message in created:
            await self._publish_live(message)

        to_notify = [m for m in created if self.should_notify(m, force=force)]
        if not to_notify:
            logger.debug("no_actionable_messages", created=len(created))
            return 0
        if not self._notifier.enabled:
            logger.debug("webhook_disabled_skip", actionable=len(to_notify))
            return 0

        sent = 0
        for index, message in enumerate(to_notify):
            # Spacing applies between webhook calls only
            if index and self._config.send_delay_seconds > 0:
                await asyncio.sleep(self._config.send_delay_seconds)
            if await self._notify(message):
                sent += 1

        logger.info("notifications_sent", attempted=len(to_notify), sent=sent)
        return sent

    async def _publish_live(self, message: MailMessage) -> None:
        try:
            await self._producer.publish_update(MessageUpdate.from_message(message))
        except Exception as exc:
            logger.warning(
                "live_update_failed",
                account_id=message.account_id,
                message_id=message.message_id,
                error=str(exc),
            )

    async def _notify(self, message: MailMessage) -> bool:
        try:
            delivered = await self._notifier.send(message)
        except Exception as exc:
            logger.warning(
                "webhook_notification_failed",
                message_id=message.message_id,
                error=str(exc),
            )
            return False
        if not delivered:
            return False

        try:
            await self._store.mark_notified(message.id)
        except Exception:
            logger.exception("mark_notified_failed", message_id=message.message_id)
        logger.info("webhook_notification_sent", message_id=message.message_id)
        return True
