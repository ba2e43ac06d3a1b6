"""MIME parser: raw RFC 822 bytes -> :class:`ParsedMessage`.

Walks the whole message for the plain and HTML bodies and notes whether
any attachment part is present.  When there is no text/plain part, the
plain body is derived from the HTML one.  Missing headers get the same defaults
the rest of the pipeline relies on (``"No Subject"``, ``"Unknown Sender"``).
"""

from __future__ import annotations

import email
import email.message
import email.policy
import email.utils
import hashlib
from dataclasses import dataclass
from datetime import UTC, datetime

from bs4 import BeautifulSoup

from .models import ParsedMessage

_NON_CONTENT_TAGS = ["script", "style", "head", "meta", "link"]


@dataclass(frozen=True)
class FetchContext:
    """Where a raw message came from; used for defaults and synthesized ids."""

    account_id: str
    account_address: str
    folder: str
    session_started_at: datetime


def synthesize_message_id(account_id: str, sequence: int, session_started_at: datetime) -> str:
    """Build a deterministic id for a message that carries no ``Message-ID``.

    Stable for the same (account, sequence, session) triple, so retries
    inside one fetch session collide on the same key.
    """
    seed = f"{account_id}:{sequence}:{session_started_at.isoformat()}"
    digest = hashlib.sha256(seed.encode("utf-8")).hexdigest()[:16]
    return f"<generated-{digest}-{sequence}@onebox.local>"


def html_to_text(html: str) -> str:
    """Flatten an HTML body to whitespace-normalized plain text."""
    if not html.strip():
        return ""
    soup = BeautifulSoup(html, "html.parser")
    for el in soup(_NON_CONTENT_TAGS):
        el.decompose()
    return soup.get_text(separator=" ", strip=True)


class MimeParser:
    """Stateless parser; one instance can be shared across sessions."""

    def parse(self, raw_bytes: bytes, sequence: int, context: FetchContext) -> ParsedMessage:
        msg = email.message_from_bytes(raw_bytes, policy=email.policy.default)

        body_text, body_html = self._extract_bodies(msg)
        # HTML-only mail still needs text for classification and previews
        if body_text is None and body_html:
            body_text = html_to_text(body_html)
        message_id = str(msg.get("Message-ID", "") or "").strip()
        if not message_id:
            message_id = synthesize_message_id(
                context.account_id, sequence, context.session_started_at
            )

        recipients = self._header(msg, "To")
        return ParsedMessage(
            message_id=message_id,
            account_id=context.account_id,
            sender=self._header(msg, "From") or "Unknown Sender",
            recipients=recipients or context.account_address,
            cc=self._header(msg, "Cc"),
            bcc=self._header(msg, "Bcc"),
            subject=self._header(msg, "Subject") or "No Subject",
            body_text=body_text or "",
            body_html=body_html or "",
            received_at=self._parse_date(msg.get("Date"), context.session_started_at),
            thread_id=self._thread_id(msg),
            has_attachments=self._has_attachments(msg),
            folder=context.folder,
            sequence=sequence,
        )

    def _header(self, msg: email.message.Message, name: str) -> str:
        value = msg.get(name)
        return str(value).strip() if value is not None else ""

    def _extract_bodies(self, msg: email.message.Message) -> tuple[str | None, str | None]:
        """Walk MIME parts and return (plain_text, html_text)."""
        body_text: str | None = None
        body_html: str | None = None

        for part in msg.walk():
            # Multipart containers have no content of their own
            if part.get_content_maintype() == "multipart":
                continue
            if "attachment" in str(part.get("Content-Disposition", "")):
                continue

            content_type = part.get_content_type()
            if content_type not in ("text/plain", "text/html"):
                continue
            payload = part.get_content()
            if not isinstance(payload, str):
                continue
            if content_type == "text/plain" and body_text is None:
                body_text = payload
            elif content_type == "text/html" and body_html is None:
                body_html = payload

        return body_text, body_html

    def _has_attachments(self, msg: email.message.Message) -> bool:
        for part in msg.walk():
            if part.get_content_maintype() == "multipart":
                continue
            if "attachment" in str(part.get("Content-Disposition", "")) or part.get_filename():
                return True
        return False

    def _thread_id(self, msg: email.message.Message) -> str | None:
        in_reply_to = self._header(msg, "In-Reply-To")
        if in_reply_to:
            return in_reply_to
        references = self._header(msg, "References").split()
        return references[0] if references else None

    def _parse_date(self, value: object, default: datetime) -> datetime:
        if not value:
            return default
        try:
            parsed = email.utils.parsedate_to_datetime(str(value))
        except (TypeError, ValueError):
            return default
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=UTC)
        return parsed
