"""Service configuration loaded from environment variables.

Uses pydantic-settings so every field can be overridden via env vars.
Each concern has its own prefix; the root :class:`ServiceConfig` nests
them with ``default_factory`` so they are populated independently.
"""

from __future__ import annotations

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings


class ImapConfig(BaseSettings):
    """IMAP server settings shared by every mailbox account."""

    model_config = {"env_prefix": "IMAP_"}

    host: str = Field(default="imap.gmail.com", description="IMAP server hostname")
    port: int = Field(default=993, description="IMAP server port")
    use_ssl: bool = Field(default=True, description="Use SSL/TLS connection")
    mailbox: str = Field(default="INBOX", description="IMAP mailbox/folder to read")
    provider: str = Field(default="gmail", description="Provider tag stored on new accounts")
    connect_timeout_seconds: float = Field(
        default=20.0,
        description="Socket timeout for connect, login and individual commands",
    )
    operation_timeout_seconds: float = Field(
        default=30.0,
        description="Hard wall-clock bound on one complete fetch attempt",
    )


class RetryConfig(BaseSettings):
    """Fixed-delay retry settings for fetch attempts, driven by Tenacity."""

    model_config = {"env_prefix": "RETRY_"}

    max_attempts: int = Field(default=2, description="Maximum fetch attempts per call")
    wait_seconds: float = Field(default=3.0, description="Fixed delay between attempts")


class ClassifierConfig(BaseSettings):
    """Model-backed classifier settings.

    Leaving ``api_key`` unset disables the primary path; every message is
    then classified by the keyword rules.
    """

    model_config = {"env_prefix": "CLASSIFIER_"}

    api_key: SecretStr | None = Field(default=None, description="OpenAI API key")
    base_url: str | None = Field(default=None, description="Override for the OpenAI API base URL")
    model: str = Field(default="gpt-3.5-turbo", description="Chat completion model")
    timeout_seconds: float = Field(default=10.0, description="Request timeout")
    body_excerpt_chars: int = Field(default=500, description="Body characters sent to the model")
    max_tokens: int = Field(default=50, description="Completion token limit")
    temperature: float = Field(default=0.3, description="Sampling temperature")


class KafkaConfig(BaseSettings):
    """Kafka settings for the live-update channel and the fetch-job queue."""

    model_config = {"env_prefix": "KAFKA_"}

    bootstrap_servers: str = Field(
        default="",
        description="Comma-separated Kafka bootstrap servers (empty disables Kafka)",
    )
    live_updates_topic: str = Field(
        default="mail-updates",
        description="Topic receiving new-email events, keyed by account id",
    )
    fetch_jobs_topic: str = Field(
        default="mail-fetch-jobs",
        description="Topic used as the at-least-once fetch dispatch queue",
    )
    consumer_group: str = Field(default="onebox-fetch-worker", description="Fetch worker group ID")
    auto_offset_reset: str = Field(default="latest", description="Offset reset policy")
    producer_acks: str = Field(default="all", description="Producer acknowledgement level")
    producer_compression: str = Field(default="gzip", description="Compression codec")

    @property
    def enabled(self) -> bool:
        return bool(self.bootstrap_servers.strip())


class WebhookConfig(BaseSettings):
    """External notification sink (Slack incoming webhook)."""

    model_config = {"env_prefix": "WEBHOOK_"}

    url: str = Field(default="", description="Webhook URL (empty disables notifications)")
    timeout_seconds: float = Field(default=10.0, description="HTTP request timeout")
    send_delay_seconds: float = Field(
        default=1.0,
        description="Pause between consecutive sends in one burst",
    )


class WatchConfig(BaseSettings):
    """IMAP IDLE watch supervision settings."""

    model_config = {"env_prefix": "WATCH_"}

    enabled: bool = Field(default=True, description="Start watches for active accounts on boot")
    reconnect_delay_seconds: float = Field(default=30.0, description="Backoff before reconnecting")
    idle_check_seconds: float = Field(
        default=30.0,
        description="Length of one blocking IDLE wait before the loop re-checks",
    )
    idle_renew_seconds: float = Field(
        default=300.0,
        description="Re-issue IDLE after this long (servers drop stale IDLE sessions)",
    )


class DatabaseConfig(BaseSettings):
    """Document store connection settings."""

    model_config = {"env_prefix": "DATABASE_"}

    url: str = Field(
        default="sqlite+aiosqlite:///onebox.db",
        description="Async SQLAlchemy URL",
    )
    echo: bool = Field(default=False, description="Log emitted SQL")


class DefaultAccountConfig(BaseSettings):
    """Credentials for the bootstrap account created when none exists."""

    model_config = {"env_prefix": "DEFAULT_ACCOUNT_"}

    address: str | None = Field(default=None, description="Mailbox address")
    password: SecretStr | None = Field(default=None, description="IMAP app password")

    @property
    def configured(self) -> bool:
        return bool(self.address and self.password)


class ServiceConfig(BaseSettings):
    """Root configuration for the ingestion service.

    Nested configs are populated from their own env-var prefixes.
    """

    model_config = {"env_prefix": "ONEBOX_"}

    name: str = Field(default="onebox-ingest", description="Service name used in logs and health")
    fetch_limit: int = Field(default=10, description="Messages fetched per on-demand run")
    watch_fetch_limit: int = Field(default=5, description="Messages fetched per push signal")
    poll_interval_seconds: float = Field(
        default=120.0,
        description="Fixed-interval poll fallback (0 disables the timer)",
    )
    health_port: int = Field(default=8080, description="Port for health probe endpoints")
    log_level: str = Field(default="INFO", description="Root log level")
    log_json: bool = Field(default=True, description="JSON log output (False for console)")

    imap: ImapConfig = Field(default_factory=ImapConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    classifier: ClassifierConfig = Field(default_factory=ClassifierConfig)
    kafka: KafkaConfig = Field(default_factory=KafkaConfig)
    webhook: WebhookConfig = Field(default_factory=WebhookConfig)
    watch: WatchConfig = Field(default_factory=WatchConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    default_account: DefaultAccountConfig = Field(default_factory=DefaultAccountConfig)
