"""
SQLAlchemy ORM models — Cross-database compatible.

Supports: PostgreSQL, MySQL 8+, SQLite.

Key design decisions:
  - JSON type instead of PostgreSQL-specific JSONB — on PG the dialect maps
    JSON to jsonb automatically; on MySQL it uses native JSON; on SQLite
    it serializes to TEXT.
  - Sessions are keyed by the channel-qualified user id (one row per identity).
  - At most one open ticket per user is enforced by a partial unique index
    on PostgreSQL and SQLite; MySQL relies on the distribution transaction.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    Boolean, DateTime, Index, Integer, JSON, String, Text, UniqueConstraint, text,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


# ──────────────────────────────────────────────────────────────
#  Sessions
# ──────────────────────────────────────────────────────────────

class SessionRow(Base):
    __tablename__ = "sessions"

    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    current_block: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    last_flow_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    vars: Mapped[Any] = mapped_column(JSON, default=dict)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


# ──────────────────────────────────────────────────────────────
#  Flows
# ──────────────────────────────────────────────────────────────

class FlowRow(Base):
    __tablename__ = "flows"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(256), default="")
    data: Mapped[Any] = mapped_column(JSON, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


# ──────────────────────────────────────────────────────────────
#  Support: tickets, agents, settings, business hours
# ──────────────────────────────────────────────────────────────

class TicketRow(Base):
    __tablename__ = "tickets"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    ticket_number: Mapped[int] = mapped_column(Integer, nullable=False, unique=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    fila: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[str] = mapped_column(String(16), default="open")
    assigned_to: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index(
            "uq_tickets_open_user", "user_id", unique=True,
            postgresql_where=text("status = 'open'"),
            sqlite_where=text("status = 'open'"),
        ),
        Index("ix_tickets_status_assigned", "status", "assigned_to"),
    )


class AgentRow(Base):
    __tablename__ = "agents"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(256), default="")
    status: Mapped[str] = mapped_column(String(16), default="offline")
    queues: Mapped[Any] = mapped_column(JSON, default=list)


class SettingRow(Base):
    __tablename__ = "settings"

    key: Mapped[str] = mapped_column(String(128), primary_key=True)
    value: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class QueueHoursRow(Base):
    __tablename__ = "queue_business_hours"

    queue_name: Mapped[str] = mapped_column(String(128), primary_key=True)
    timezone: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    hours: Mapped[Any] = mapped_column(JSON, default=dict)
    holidays: Mapped[Any] = mapped_column(JSON, default=list)
    exceptions: Mapped[Any] = mapped_column(JSON, default=dict)
    pre_human: Mapped[Any] = mapped_column(JSON, nullable=True)
    off_hours: Mapped[Any] = mapped_column(JSON, nullable=True)


# ──────────────────────────────────────────────────────────────
#  Messages: outbound delivery records and inbound dedup log
# ──────────────────────────────────────────────────────────────

class MessageRow(Base):
    __tablename__ = "messages"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    direction: Mapped[str] = mapped_column(String(16), nullable=False)     # inbound | outbound
    channel: Mapped[str] = mapped_column(String(32), nullable=False)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    message_id: Mapped[str] = mapped_column(String(256), nullable=False)   # provider id or temp id
    recipient: Mapped[str] = mapped_column(String(128), default="")
    type: Mapped[str] = mapped_column(String(32), default="text")
    content: Mapped[Any] = mapped_column(JSON, nullable=True)
    status: Mapped[str] = mapped_column(String(16), default="pending")
    provider_message_id: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        UniqueConstraint("channel", "message_id", "user_id", name="uq_messages_channel_msg_user"),
    )
