"""Schemas for social listening alert rule API contracts."""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

AlertRuleType = Literal[
    "sentiment_threshold",
    "volume_spike",
    "keyword_match",
    "influencer_mention",
    "competitor_spike",
]
AlertEventStatus = Literal["pending", "actioned", "dismissed"]


def _clean_platforms(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        stripped = value.strip().lower()
        return [stripped] if stripped else []
    if isinstance(value, (list, tuple, set)):
        cleaned: List[str] = []
        for item in value:
            if not isinstance(item, str):
                continue
            stripped = item.strip().lower()
            if stripped and stripped not in cleaned:
                cleaned.append(stripped)
        return cleaned
    return []


class AlertActionSchema(BaseModel):
    type: str = Field(..., description="Action kind (notification, email, ctl_alert, ticket, webhook).")
    config: Dict[str, Any] = Field(default_factory=dict, description="Kind-specific configuration.")

    @field_validator("type", mode="before")
    def _normalize_type(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("config", mode="before")
    def _ensure_config_dict(cls, value: Any) -> Dict[str, Any]:
        if isinstance(value, dict):
            return value
        return {}


class AlertRuleCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200, description="Alert rule title.")
    ruleType: AlertRuleType = Field(..., description="Which matcher evaluates the rule.")
    conditions: Dict[str, Any] = Field(..., description="Rule-type specific condition payload.")
    actions: List[AlertActionSchema] = Field(default_factory=list, description="Ordered side effects on trigger.")
    platforms: List[str] = Field(default_factory=list, description="Optional platform whitelist.")
    cooldownMinutes: Optional[int] = Field(default=None, ge=0, le=7 * 24 * 60, description="Minimum minutes between triggers.")

    @field_validator("name", mode="before")
    def _strip_name(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip()
        return value

    @field_validator("platforms", mode="before")
    def _normalize_platforms(cls, value: Any) -> List[str]:
        return _clean_platforms(value)


class AlertRuleUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    conditions: Optional[Dict[str, Any]] = None
    actions: Optional[List[AlertActionSchema]] = None
    platforms: Optional[List[str]] = None
    isActive: Optional[bool] = None
    cooldownMinutes: Optional[int] = Field(default=None, ge=0, le=7 * 24 * 60)

    @field_validator("name", mode="before")
    def _strip_name(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip()
        return value

    @field_validator("platforms", mode="before")
    def _normalize_platforms(cls, value: Any) -> Optional[List[str]]:
        if value is None:
            return None
        return _clean_platforms(value)


class AlertEventStatusUpdateRequest(BaseModel):
    status: AlertEventStatus


__all__ = [
    "AlertActionSchema",
    "AlertEventStatus",
    "AlertEventStatusUpdateRequest",
    "AlertRuleCreateRequest",
    "AlertRuleType",
    "AlertRuleUpdateRequest",
]
