"""Form quota definitions, submissions and their per-period counters."""

from __future__ import annotations

import uuid

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

from database import Base, JSONType

RESET_PERIODS = ("never", "daily", "weekly", "monthly")

QUOTA_RESET_PERIOD = Enum(
    *RESET_PERIODS,
    name="quota_reset_period",
)


class Quota(Base):
    """Submission limit attached to a form."""

    __tablename__ = "form_quotas"
    __table_args__ = {"extend_existing": True}

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(String(64), nullable=False, index=True)
    form_id = Column(String(64), nullable=False, index=True)
    label = Column(String(200), nullable=False)
    limit_count = Column(Integer, nullable=False, default=0)
    current_count = Column(Integer, nullable=False, default=0)
    # Object, legacy list or raw JSON text; see alerts.criteria.
    criteria = Column(JSONType, nullable=True)
    action = Column(String(32), nullable=False, default="end_survey")
    action_data = Column(JSONType, nullable=False, default=dict)
    reset_period = Column(QUOTA_RESET_PERIOD, nullable=False, default="never")
    is_active = Column(Boolean, nullable=False, default=True)
    start_date = Column(DateTime(timezone=True), nullable=True)
    end_date = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class QuotaPeriodCounter(Base):
    """Live submission count for one quota within one period bucket."""

    __tablename__ = "quota_period_counters"
    __table_args__ = {"extend_existing": True}

    quota_id = Column(Uuid, ForeignKey("form_quotas.id", ondelete="CASCADE"), primary_key=True)
    period_key = Column(String(32), primary_key=True)
    count = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class FormSubmission(Base):
    """Stored answers of a single form submission."""

    __tablename__ = "form_submissions"
    __table_args__ = {"extend_existing": True}

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(String(64), nullable=False, index=True)
    form_id = Column(String(64), nullable=False, index=True)
    data = Column(JSONType, nullable=False, default=dict)
    status = Column(String(32), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False, index=True)
