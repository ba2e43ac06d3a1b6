"""Save-once persistence: look up by idempotency key, classify, insert."""

from __future__ import annotations

from dataclasses import dataclass, field

import structlog

from .classifier import Classifier
from .models import MailMessage, ParsedMessage
from .store import MessageStore

logger = structlog.get_logger()


@dataclass
class SaveResult:
    """Outcome of :meth:`MessageIngestor.save_batch`.

    ``created`` is the strict subset of ``stored`` that did not exist
    before this call; notifications are driven off it alone.
    """

    stored: list[MailMessage] = field(default_factory=list)
    created: list[MailMessage] = field(default_factory=list)
    failed: int = 0

    @property
    def unchanged(self) -> int:
        return len(self.stored) - len(self.created)


class MessageIngestor:
    """Persist parsed messages exactly once per ``(account_id, message_id)``."""

    def __init__(self, store: MessageStore, classifier: Classifier) -> None:
        self._store = store
        self._classifier = classifier

    async def save_batch(self, messages: list[ParsedMessage]) -> SaveResult:
        result = SaveResult()

        for parsed in messages:
            try:
                stored, is_new = await self._save_one(parsed)
            except Exception:
                result.failed += 1
                logger.exception(
                    "message_save_failed",
                    account_id=parsed.account_id,
                    message_id=parsed.message_id,
                )
                continue

            result.stored.append(stored)
            if is_new:
                result.created.append(stored)

        logger.info(
            "batch_saved",
            total=len(messages),
            stored=len(result.stored),
            created=len(result.created),
            unchanged=result.unchanged,
            failed=result.failed,
        )
        return result

    async def _save_one(self, parsed: ParsedMessage) -> tuple[MailMessage, bool]:
        existing = await self._store.find_message(parsed.account_id, parsed.message_id)
        if existing is not None:
            logger.debug("message_exists", message_id=parsed.message_id)
            return existing, False

        classification = await self._classifier.classify(
            parsed.subject, parsed.body_text, parsed.sender
        )
        inserted = await self._store.insert_message(parsed, classification)
        if inserted is None:
            # Lost an insert race; the winner's row is the record of truth.
            existing = await self._store.find_message(parsed.account_id, parsed.message_id)
            if existing is None:
                raise RuntimeError(f"message {parsed.message_id} vanished after conflict")
            return existing, False

        logger.info(
            "message_saved",
            message_id=parsed.message_id,
            category=inserted.category.value,
            confidence=inserted.confidence,
            source=classification.source,
        )
        return inserted, True
