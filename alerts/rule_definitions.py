"""Typed views over the JSON ``conditions`` and ``actions`` columns of alert rules."""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Literal, Mapping, Optional, Sequence, Type, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from core.logging import get_logger

logger = get_logger(__name__)


class RuleValidationError(ValueError):
    """Raised when a rule definition is rejected; ``field`` names the culprit."""

    def __init__(self, field: str, message: str) -> None:
        super().__init__(message)
        self.field = field
        self.message = message


class ActionKind(str, Enum):
    NOTIFICATION = "notification"
    EMAIL = "email"
    CTL_ALERT = "ctl_alert"
    TICKET = "ticket"
    WEBHOOK = "webhook"


def _require_number(value: Any) -> Any:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError("must be a number")
    return value


class _Conditions(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)


class SentimentThresholdConditions(_Conditions):
    threshold: float
    sentimentType: Literal["negative", "any"]

    @field_validator("threshold", mode="before")
    def _numeric_threshold(cls, value: Any) -> Any:
        return _require_number(value)

    @field_validator("threshold")
    def _threshold_range(cls, value: float) -> float:
        if value < -1 or value > 1:
            raise ValueError("must be between -1.0 and 1.0")
        return value


class KeywordMatchConditions(_Conditions):
    keywords: List[str] = Field(..., min_length=1)
    matchType: Literal["any", "all"]

    @field_validator("keywords")
    def _clean_keywords(cls, value: List[str]) -> List[str]:
        cleaned = [item.strip() for item in value if item and item.strip()]
        if not cleaned:
            raise ValueError("must contain at least one non-blank keyword")
        return cleaned


class InfluencerMentionConditions(_Conditions):
    minFollowers: float
    requireVerified: bool = False

    @field_validator("minFollowers", mode="before")
    def _numeric_followers(cls, value: Any) -> Any:
        return _require_number(value)


class VolumeSpikeConditions(_Conditions):
    timeWindow: float
    increasePercentage: float
    minMentions: float

    @field_validator("timeWindow", "increasePercentage", "minMentions", mode="before")
    def _numeric(cls, value: Any) -> Any:
        return _require_number(value)

    @field_validator("timeWindow")
    def _positive_window(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be a positive number of minutes")
        return value


class CompetitorSpikeConditions(_Conditions):
    competitorId: Union[str, int]

    @field_validator("competitorId")
    def _non_blank(cls, value: Union[str, int]) -> Union[str, int]:
        if isinstance(value, str) and not value.strip():
            raise ValueError("must not be blank")
        return value


RuleConditions = Union[
    SentimentThresholdConditions,
    KeywordMatchConditions,
    InfluencerMentionConditions,
    VolumeSpikeConditions,
    CompetitorSpikeConditions,
]

CONDITION_MODELS: Dict[str, Type[_Conditions]] = {
    "sentiment_threshold": SentimentThresholdConditions,
    "volume_spike": VolumeSpikeConditions,
    "keyword_match": KeywordMatchConditions,
    "influencer_mention": InfluencerMentionConditions,
    "competitor_spike": CompetitorSpikeConditions,
}


class RuleAction(BaseModel):
    """One configured side effect; ``kind`` is None for unrecognised types."""

    model_config = ConfigDict(frozen=True)

    type: str
    config: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("config", mode="before")
    def _config_dict(cls, value: Any) -> Dict[str, Any]:
        return value if isinstance(value, dict) else {}

    @property
    def kind(self) -> Optional[ActionKind]:
        try:
            return ActionKind(self.type)
        except ValueError:
            return None


def _first_error(exc: ValidationError, prefix: str = "") -> RuleValidationError:
    error = exc.errors()[0]
    location = ".".join(str(part) for part in error.get("loc", ()))
    field = f"{prefix}{location}" if location else (prefix.rstrip(".") or "conditions")
    message = str(error.get("msg", "is invalid"))
    if message.startswith("Value error, "):
        message = message[len("Value error, "):]
    return RuleValidationError(field, f"{field} {message}")


def parse_rule_conditions(rule_type: str, payload: Any) -> RuleConditions:
    """Validate ``payload`` for ``rule_type`` and return its typed variant."""

    model = CONDITION_MODELS.get(rule_type)
    if model is None:
        raise RuleValidationError(
            "rule_type",
            f"Invalid rule type. Must be one of: {', '.join(CONDITION_MODELS)}",
        )
    if not isinstance(payload, Mapping):
        raise RuleValidationError("conditions", "conditions must be an object")
    try:
        return model.model_validate(dict(payload))  # type: ignore[return-value]
    except ValidationError as exc:
        raise _first_error(exc) from exc


def parse_rule_actions(payload: Any, *, strict: bool = False) -> List[RuleAction]:
    """Decode the stored action list.

    With ``strict`` (definition writes) unknown kinds and malformed entries
    are rejected; otherwise they are dropped or kept as kind-less actions so
    dispatch can log and skip them.
    """

    if payload is None:
        return []
    if not isinstance(payload, Sequence) or isinstance(payload, (str, bytes)):
        if strict:
            raise RuleValidationError("actions", "actions must be a list")
        logger.warning("Ignoring non-list actions payload: %r", payload)
        return []
    actions: List[RuleAction] = []
    for index, item in enumerate(payload):
        try:
            action = RuleAction.model_validate(item)
        except ValidationError as exc:
            if strict:
                raise _first_error(exc, prefix=f"actions[{index}].") from exc
            logger.warning("Ignoring malformed action #%d: %r", index, item)
            continue
        if strict and action.kind is None:
            raise RuleValidationError(
                f"actions[{index}].type",
                f"Unsupported action type '{action.type}'. Must be one of: "
                + ", ".join(kind.value for kind in ActionKind),
            )
        actions.append(action)
    return actions


__all__ = [
    "ActionKind",
    "CONDITION_MODELS",
    "CompetitorSpikeConditions",
    "InfluencerMentionConditions",
    "KeywordMatchConditions",
    "RuleAction",
    "RuleConditions",
    "RuleValidationError",
    "SentimentThresholdConditions",
    "VolumeSpikeConditions",
    "parse_rule_actions",
    "parse_rule_conditions",
]
