"""OneBox mail ingestion pipeline.

Fetches messages from IMAP mailboxes, persists each one exactly once,
classifies it, and fans the new ones out to live consumers and an
external webhook.  Public API re-exported here for convenience::

    from onebox_ingest import IngestionService, ServiceConfig
"""

from .classifier import Classifier
from .config import ServiceConfig
from .dedup import MessageIngestor, SaveResult
from .errors import (
    AccountNotFoundError,
    FetchTimeoutError,
    MailAuthenticationError,
    MailConnectionError,
    MailFetchError,
    MailPipelineError,
)
from .imap_client import AsyncImapClient, FetchBatch
from .models import Category, Classification, MailAccount, MailMessage, ParsedMessage
from .notifier import NotificationFanout, WebhookNotifier
from .orchestrator import FetchOrchestrator
from .service import IngestionService
from .store import MessageStore
from .watch import WatchSupervisor

__all__ = [
    "AccountNotFoundError",
    "AsyncImapClient",
    "Category",
    "Classification",
    "Classifier",
    "FetchBatch",
    "FetchOrchestrator",
    "FetchTimeoutError",
    "IngestionService",
    "MailAccount",
    "MailAuthenticationError",
    "MailConnectionError",
    "MailFetchError",
    "MailMessage",
    "MailPipelineError",
    "MessageIngestor",
    "MessageStore",
    "NotificationFanout",
    "ParsedMessage",
    "SaveResult",
    "ServiceConfig",
    "WatchSupervisor",
    "WebhookNotifier",
]
