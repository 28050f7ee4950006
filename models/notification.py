"""Downstream records written by alert actions (notifications, tickets, unified alerts)."""

from __future__ import annotations

import uuid

from sqlalchemy import Column, DateTime, Float, String, Text, Uuid
from sqlalchemy.sql import func

from database import Base, JSONType


class Notification(Base):
    """In-app notification addressed to a single user."""

    __tablename__ = "notifications"
    __table_args__ = {"extend_existing": True}

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(String(64), nullable=False, index=True)
    user_id = Column(String(64), nullable=True, index=True)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    type = Column(String(32), nullable=False, default="alert")
    link = Column(Text, nullable=True)
    extra = Column("metadata", JSONType, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class Ticket(Base):
    """Support ticket opened from a social listening alert."""

    __tablename__ = "tickets"
    __table_args__ = {"extend_existing": True}

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(String(64), nullable=False, index=True)
    ticket_code = Column(String(32), nullable=False, unique=True)
    subject = Column(String(255), nullable=False)
    description = Column(Text, nullable=False)
    priority = Column(String(16), nullable=False, default="medium")
    status = Column(String(16), nullable=False, default="new")
    channel = Column(String(32), nullable=False, default="social")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class UnifiedAlert(Base):
    """Severity-ranked alert shared with the close-the-loop inbox."""

    __tablename__ = "ctl_alerts"
    __table_args__ = {"extend_existing": True}

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(String(64), nullable=False, index=True)
    alert_level = Column(String(16), nullable=False)
    score_value = Column(Float, nullable=True)
    score_type = Column(String(32), nullable=False, default="sentiment")
    sentiment = Column(String(16), nullable=True)
    mention_id = Column(Uuid, nullable=True, index=True)
    source_channel = Column(String(32), nullable=True)
    status = Column(String(16), nullable=False, default="new")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
