"""Schemas for form quota API contracts."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field, StrictInt, field_validator, model_validator

ResetPeriod = Literal["never", "daily", "weekly", "monthly"]


class QuotaCreateRequest(BaseModel):
    form_id: str = Field(..., min_length=1, description="Form the quota applies to.")
    label: str = Field(..., min_length=1, max_length=200)
    limit_count: StrictInt = Field(..., ge=0, description="Maximum number of matching submissions.")
    criteria: Any = Field(default=None, description="Object, legacy list or JSON text of conditions.")
    action: str = Field(default="end_survey", description="What the form does once the quota is full.")
    action_data: Dict[str, Any] = Field(default_factory=dict)
    reset_period: ResetPeriod = Field(default="never")
    is_active: bool = True
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None

    @field_validator("form_id", mode="before")
    def _coerce_form_id(cls, value: Any) -> Any:
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value

    @field_validator("reset_period", mode="before")
    def _default_reset_period(cls, value: Any) -> Any:
        return value or "never"

    @model_validator(mode="after")
    def _ensure_window_order(self) -> "QuotaCreateRequest":
        if self.start_date and self.end_date and self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self


class QuotaUpdateRequest(BaseModel):
    label: Optional[str] = Field(default=None, min_length=1, max_length=200)
    limit_count: Optional[StrictInt] = Field(default=None, ge=0)
    criteria: Any = None
    action: Optional[str] = None
    action_data: Optional[Dict[str, Any]] = None
    reset_period: Optional[ResetPeriod] = None
    is_active: Optional[bool] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None


__all__ = ["QuotaCreateRequest", "QuotaUpdateRequest", "ResetPeriod"]
