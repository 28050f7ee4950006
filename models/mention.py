"""Inbound social mentions evaluated against alert rules."""

from __future__ import annotations

import uuid

from sqlalchemy import Boolean, Column, DateTime, Float, Integer, String, Text, Uuid
from sqlalchemy.sql import func

from database import Base


class Mention(Base):
    """A single social mention captured by the ingestion path."""

    __tablename__ = "sl_mentions"
    __table_args__ = {"extend_existing": True}

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(String(64), nullable=False, index=True)
    platform = Column(String(32), nullable=False, index=True)
    content = Column(Text, nullable=True)
    content_url = Column(Text, nullable=True)
    author_name = Column(String(200), nullable=True)
    author_handle = Column(String(200), nullable=True)
    author_followers = Column(Integer, nullable=False, default=0)
    author_verified = Column(Boolean, nullable=False, default=False)
    sentiment = Column(String(16), nullable=True)
    sentiment_score = Column(Float, nullable=True)
    published_at = Column(DateTime(timezone=True), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
