"""Two-tier message classifier.

The primary path asks an OpenAI chat model for a single category token.
Whenever that path is disabled, slow, failing, or answers with something
outside :class:`Category`, the deterministic keyword rules decide.
:meth:`Classifier.classify` never raises.
"""

from __future__ import annotations

import re

import structlog
from openai import (
    APIConnectionError,
    APITimeoutError,
    AsyncOpenAI,
    AuthenticationError,
    OpenAIError,
    RateLimitError,
)

from .config import ClassifierConfig
from .models import Category, Classification

logger = structlog.get_logger()

PROMPT_TEMPLATE = """Analyze this email and categorize it into one of these categories:
- Interested: Business inquiries, collaboration requests, positive responses
- Not Interested: Rejections, declines, "not interested" responses
- Meeting Booked: Meeting confirmations, calendar invites, scheduled appointments
- Spam: Promotional emails, advertisements, suspicious content
- Out of Office: Auto-replies, vacation messages, away notifications

Email Subject: {subject}
Email Body: {body}

Respond with just the category name."""


def _phrases(*words: str) -> re.Pattern[str]:
    return re.compile(r"\b(?:" + "|".join(re.escape(w) for w in words) + r")\b")


# Evaluated top to bottom; the first match wins.  Templated auto-replies
# and refusals must be recognised before the generic interest phrases they
# tend to contain.
FALLBACK_RULES: tuple[tuple[Category, re.Pattern[str]], ...] = (
    (
        Category.OUT_OF_OFFICE,
        _phrases("out of office", "out of the office", "auto-reply", "autoreply",
                 "automatic reply", "vacation", "on leave", "away"),
    ),
    (
        Category.NOT_INTERESTED,
        _phrases("not interested", "no thanks", "no thank you", "decline", "declined",
                 "reject", "rejected", "unfortunately", "remove me"),
    ),
    (
        Category.MEETING_BOOKED,
        _phrases("meeting", "schedule", "scheduled", "calendar", "appointment", "invite",
                 "invitation", "booked"),
    ),
    (
        Category.SPAM,
        _phrases("unsubscribe", "promotion", "promo", "deal", "offer", "discount",
                 "winner", "limited time"),
    ),
    (
        Category.INTERESTED,
        _phrases("interested", "inquiry", "collaboration", "proposal", "discuss",
                 "partnership", "learn more"),
    ),
)

DEFAULT_CATEGORY = Category.INTERESTED

BASE_CONFIDENCE = 0.6
CONFIDENCE_CEILING = 0.95

# (pattern over "subject body", increment)
CATEGORY_SIGNALS: dict[Category, tuple[re.Pattern[str], float]] = {
    Category.MEETING_BOOKED: (_phrases("meeting", "calendar"), 0.15),
    Category.INTERESTED: (_phrases("interested", "discuss", "inquiry"), 0.15),
    Category.NOT_INTERESTED: (_phrases("not interested", "decline"), 0.1),
    Category.OUT_OF_OFFICE: (_phrases("out of office", "vacation", "auto-reply"), 0.2),
    Category.SPAM: (_phrases("offer", "unsubscribe"), 0.2),
}

_NO_REPLY = re.compile(r"no[-_.]?reply", re.IGNORECASE)


def fallback_category(subject: str, body: str) -> Category:
    """Deterministic keyword classification."""
    text = f"{subject} {body}".lower()
    for category, pattern in FALLBACK_RULES:
        if pattern.search(text):
            return category
    return DEFAULT_CATEGORY


def estimate_confidence(category: Category, subject: str, body: str, sender: str = "") -> float:
    """Score how well the content supports *category*; always in [0, 0.95]."""
    confidence = BASE_CONFIDENCE
    if len(subject) > 10:
        confidence += 0.1
    if len(body) > 50:
        confidence += 0.1
    if sender and not _NO_REPLY.search(sender):
        confidence += 0.1

    pattern, increment = CATEGORY_SIGNALS[category]
    text = f"{subject} {body}".lower()
    if pattern.search(text) or (category is Category.SPAM and _NO_REPLY.search(sender)):
        confidence += increment

    return round(min(max(confidence, 0.0), CONFIDENCE_CEILING), 4)


class Classifier:
    """Label a message with a :class:`Category` and a confidence score."""

    def __init__(self, config: ClassifierConfig, client: AsyncOpenAI | None = None) -> None:
        self._config = config
        self._client = client
        if self._client is None and config.api_key is not None:
            self._client = AsyncOpenAI(
                api_key=config.api_key.get_secret_value(),
                base_url=config.base_url,
                timeout=config.timeout_seconds,
                max_retries=0,
            )
        if self._client is None:
            logger.info("classifier_model_disabled", reason="no_api_key")

    @property
    def model_enabled(self) -> bool:
        return self._client is not None

    async def classify(self, subject: str, body: str, sender: str = "") -> Classification:
        subject = subject or ""
        body = body or ""

        category = await self._classify_with_model(subject, body)
        source = "model"
        if category is None:
            category = fallback_category(subject, body)
            source = "rules"

        return Classification(
            category=category,
            confidence=estimate_confidence(category, subject, body, sender),
            source=source,
        )

    async def _classify_with_model(self, subject: str, body: str) -> Category | None:
        if self._client is None:
            return None

        prompt = PROMPT_TEMPLATE.format(
            subject=subject,
            body=body[: self._config.body_excerpt_chars],
        )
        try:
            completion = await self._client.chat.completions.create(
                model=self._config.model,
                messages=[{"role": "user", "content": prompt}],
                max_tokens=self._config.max_tokens,
                temperature=self._config.temperature,
            )
            token = completion.choices[0].message.content or ""
        except RateLimitError:
            logger.warning("classifier_rate_limited", model=self._config.model)
            return None
        except AuthenticationError:
            logger.error("classifier_auth_failed", model=self._config.model)
            return None
        except (APITimeoutError, APIConnectionError) as exc:
            logger.warning("classifier_unavailable", error=str(exc))
            return None
        except OpenAIError as exc:
            logger.warning("classifier_error", error=str(exc))
            return None
        except Exception:
            logger.exception("classifier_unexpected_error")
            return None

        category = Category.parse(token)
        if category is None:
            logger.warning("classifier_invalid_token", token=token[:50])
        return category
