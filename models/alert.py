"""Database models for social listening alert rules and triggered events."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Uuid,
)
from sqlalchemy.sql import func

from core.clock import as_utc
from database import Base, JSONType

ALERT_RULE_TYPES = (
    "sentiment_threshold",
    "volume_spike",
    "keyword_match",
    "influencer_mention",
    "competitor_spike",
)

ALERT_EVENT_STATUSES = ("pending", "actioned", "dismissed")

ALERT_EVENT_STATUS = Enum(
    *ALERT_EVENT_STATUSES,
    name="sl_alert_event_status",
)


class AlertRule(Base):
    """Alert configuration persisted per tenant."""

    __tablename__ = "sl_alerts"
    __table_args__ = {"extend_existing": True}

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(String(64), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    rule_type = Column(String(32), nullable=False, index=True)
    conditions = Column(JSONType, nullable=False, default=dict)
    actions = Column(JSONType, nullable=False, default=list)
    platforms = Column(JSONType, nullable=False, default=list)
    is_active = Column(Boolean, nullable=False, default=True, index=True)
    cooldown_minutes = Column(Integer, nullable=False, default=60)
    last_triggered_at = Column(DateTime(timezone=True), nullable=True)
    trigger_count = Column(Integer, nullable=False, default=0)
    created_by = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    # ------------------------------------------------------------------
    # Derived helpers
    # ------------------------------------------------------------------

    @property
    def platform_list(self) -> List[str]:
        payload = self.platforms or []
        if not isinstance(payload, list):
            return []
        return [str(item) for item in payload if item]

    @property
    def action_list(self) -> List[Dict[str, Any]]:
        payload = self.actions or []
        if not isinstance(payload, list):
            return []
        return [item for item in payload if isinstance(item, dict)]

    def remaining_cooldown(self, now: datetime) -> timedelta:
        """Time left before the rule may trigger again (zero when eligible)."""
        if self.last_triggered_at is None:
            return timedelta(0)
        last = as_utc(self.last_triggered_at)
        now = as_utc(now)
        unlock_at = last + timedelta(minutes=max(self.cooldown_minutes or 0, 0))
        if unlock_at <= now:
            return timedelta(0)
        return unlock_at - now

    def is_cooling_down(self, now: datetime) -> bool:
        return self.remaining_cooldown(now) > timedelta(0)


class AlertEvent(Base):
    """Record created whenever an alert rule triggers."""

    __tablename__ = "sl_alert_events"
    __table_args__ = {"extend_existing": True}

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(String(64), nullable=False, index=True)
    alert_id = Column(Uuid, ForeignKey("sl_alerts.id", ondelete="CASCADE"), nullable=False, index=True)
    mention_id = Column(Uuid, nullable=True, index=True)
    event_type = Column(String(32), nullable=False)
    event_data = Column(JSONType, nullable=False, default=dict)
    status = Column(ALERT_EVENT_STATUS, nullable=False, default="pending", index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    actioned_by = Column(String(64), nullable=True)
    actioned_at = Column(DateTime(timezone=True), nullable=True)
