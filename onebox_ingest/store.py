"""Document store for accounts and messages on async SQLAlchemy.

Rows never leave this module: every method returns pydantic models
(:class:`MailAccount`, :class:`MailMessage`) so callers stay independent
of the ORM session lifecycle.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Any

import structlog
from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from .config import DatabaseConfig
from .models import Classification, MailAccount, MailMessage, ParsedMessage

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    pass


class AccountRow(Base):
    __tablename__ = "mail_accounts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    address: Mapped[str] = mapped_column(String(320), nullable=False, index=True)
    secret: Mapped[str] = mapped_column(Text, nullable=False)
    provider: Mapped[str] = mapped_column(String(32), nullable=False, default="gmail")
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    last_sync_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class MessageRow(Base):
    __tablename__ = "mail_messages"
    __table_args__ = (UniqueConstraint("account_id", "message_id", name="uq_account_message"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("mail_accounts.id", ondelete="CASCADE"), nullable=False
    )
    message_id: Mapped[str] = mapped_column(String(998), nullable=False)
    sender: Mapped[str] = mapped_column(Text, nullable=False)
    recipients: Mapped[str] = mapped_column(Text, nullable=False, default="")
    cc: Mapped[str] = mapped_column(Text, nullable=False, default="")
    bcc: Mapped[str] = mapped_column(Text, nullable=False, default="")
    subject: Mapped[str] = mapped_column(Text, nullable=False, default="")
    body_text: Mapped[str] = mapped_column(Text, nullable=False, default="")
    body_html: Mapped[str] = mapped_column(Text, nullable=False, default="")
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    thread_id: Mapped[str | None] = mapped_column(Text)
    has_attachments: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    folder: Mapped[str] = mapped_column(String(255), nullable=False, default="INBOX")
    category: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    confidence: Mapped[float] = mapped_column(Float, nullable=False)
    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_starred: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    notified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class MessageStore:
    """Find / insert / update / count / aggregate over accounts and messages."""

    def __init__(self, config: DatabaseConfig) -> None:
        self._engine = create_async_engine(config.url, echo=config.echo)
        self._session = async_sessionmaker(self._engine, class_=AsyncSession, expire_on_commit=False)

    async def create_schema(self) -> None:
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("store_schema_ready")

    async def close(self) -> None:
        await self._engine.dispose()

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    async def get_account(self, account_id: str) -> MailAccount | None:
        async with self._session() as session:
            row = await session.get(AccountRow, account_id)
            return MailAccount.model_validate(row) if row else None

    async def find_account_by_address(self, address: str) -> MailAccount | None:
        stmt = select(AccountRow).where(AccountRow.address == address.strip().lower())
        async with self._session() as session:
            row = (await session.execute(stmt)).scalars().first()
            return MailAccount.model_validate(row) if row else None

    async def find_active_account(self) -> MailAccount | None:
        """Return the implicit default account: the oldest active one."""
        accounts = await self.active_accounts()
        if len(accounts) > 1:
            logger.warning(
                "multiple_active_accounts",
                count=len(accounts),
                chosen=accounts[0].id,
            )
        return accounts[0] if accounts else None

    async def active_accounts(self) -> list[MailAccount]:
        stmt = select(AccountRow).where(AccountRow.active.is_(True)).order_by(AccountRow.created_at)
        async with self._session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [MailAccount.model_validate(row) for row in rows]

    async def create_account(
        self,
        address: str,
        secret: str,
        *,
        provider: str = "gmail",
        active: bool = True,
    ) -> MailAccount:
        row = AccountRow(
            id=str(uuid.uuid4()),
            address=address.strip().lower(),
            secret=secret,
            provider=provider,
            active=active,
            created_at=_utcnow(),
        )
        async with self._session() as session:
            session.add(row)
            await session.commit()
        logger.info("account_created", account_id=row.id, address=row.address)
        return MailAccount.model_validate(row)

    async def mark_synced(self, account_id: str, at: datetime | None = None) -> None:
        await self._update_account(account_id, last_sync_at=at or _utcnow())

    async def set_active(self, account_id: str, active: bool) -> None:
        await self._update_account(account_id, active=active)

    async def _update_account(self, account_id: str, **values: Any) -> None:
        stmt = update(AccountRow).where(AccountRow.id == account_id).values(**values)
        async with self._session() as session:
            await session.execute(stmt)
            await session.commit()

    async def count_accounts(self) -> int:
        async with self._session() as session:
            return (await session.execute(select(func.count(AccountRow.id)))).scalar_one()

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def find_message(self, account_id: str, message_id: str) -> MailMessage | None:
        stmt = select(MessageRow).where(
            MessageRow.account_id == account_id,
            MessageRow.message_id == message_id,
        )
        async with self._session() as session:
            row = (await session.execute(stmt)).scalars().first()
            return MailMessage.model_validate(row) if row else None

    async def insert_message(
        self,
        parsed: ParsedMessage,
        classification: Classification,
    ) -> MailMessage | None:
        """Insert a classified message.

        Returns ``None`` when the unique key already exists (a concurrent
        writer got there first).
        """
        row = MessageRow(
            **parsed.model_dump(exclude={"sequence"}),
            category=classification.category.value,
            confidence=classification.confidence,
            created_at=_utcnow(),
        )
        async with self._session() as session:
            session.add(row)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.info(
                    "message_insert_conflict",
                    account_id=parsed.account_id,
                    message_id=parsed.message_id,
                )
                return None
        return MailMessage.model_validate(row)

    async def mark_notified(self, message_pk: int, notified: bool = True) -> None:
        stmt = update(MessageRow).where(MessageRow.id == message_pk).values(notified=notified)
        async with self._session() as session:
            await session.execute(stmt)
            await session.commit()

    async def count_messages(self, **filters: Any) -> int:
        """Count messages, optionally filtered by column equality (e.g. ``is_read=False``)."""
        stmt = select(func.count(MessageRow.id))
        for column, value in filters.items():
            stmt = stmt.where(getattr(MessageRow, column) == value)
        async with self._session() as session:
            return (await session.execute(stmt)).scalar_one()

    async def category_counts(self) -> dict[str, int]:
        stmt = select(MessageRow.category, func.count(MessageRow.id)).group_by(MessageRow.category)
        async with self._session() as session:
            rows = (await session.execute(stmt)).all()
        return {str(category or "Uncategorized"): count for category, count in rows}

    async def stats(self) -> dict[str, Any]:
        return {
            "total": await self.count_messages(),
            "unread": await self.count_messages(is_read=False),
            "starred": await self.count_messages(is_starred=True),
            "categories": await self.category_counts(),
        }
