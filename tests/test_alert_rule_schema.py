from __future__ import annotations

import pytest
from pydantic import ValidationError

from alerts.rule_definitions import (
    ActionKind,
    InfluencerMentionConditions,
    KeywordMatchConditions,
    RuleValidationError,
    SentimentThresholdConditions,
    VolumeSpikeConditions,
    parse_rule_actions,
    parse_rule_conditions,
)
from schemas.api.alerts import AlertRuleCreateRequest, AlertRuleUpdateRequest


def test_create_request_normalizes_platforms_and_actions() -> None:
    payload = AlertRuleCreateRequest(
        name="  Brand crisis  ",
        ruleType="sentiment_threshold",
        conditions={"threshold": -0.3, "sentimentType": "negative"},
        actions=[{"type": " Email ", "config": {"recipients": ["ops@example.com"]}}, {"type": "ticket"}],
        platforms=["Twitter", "twitter", " reddit "],
    )
    assert payload.name == "Brand crisis"
    assert payload.platforms == ["twitter", "reddit"]
    assert [action.type for action in payload.actions] == ["email", "ticket"]
    assert payload.actions[1].config == {}
    assert payload.cooldownMinutes is None


def test_create_request_rejects_unknown_rule_type() -> None:
    with pytest.raises(ValidationError):
        AlertRuleCreateRequest(name="x", ruleType="weather", conditions={})


def test_create_request_rejects_negative_cooldown() -> None:
    with pytest.raises(ValidationError):
        AlertRuleCreateRequest(
            name="x",
            ruleType="keyword_match",
            conditions={"keywords": ["a"], "matchType": "any"},
            cooldownMinutes=-1,
        )


def test_update_request_tracks_only_sent_fields() -> None:
    update = AlertRuleUpdateRequest(isActive=False)
    assert update.model_dump(exclude_unset=True) == {"isActive": False}


def test_parse_sentiment_conditions() -> None:
    conditions = parse_rule_conditions("sentiment_threshold", {"threshold": -0.3, "sentimentType": "negative"})
    assert isinstance(conditions, SentimentThresholdConditions)
    assert conditions.threshold == -0.3


@pytest.mark.parametrize(
    ("payload", "field"),
    [
        ({"sentimentType": "negative"}, "threshold"),
        ({"threshold": 1.5, "sentimentType": "negative"}, "threshold"),
        ({"threshold": "low", "sentimentType": "negative"}, "threshold"),
        ({"threshold": True, "sentimentType": "negative"}, "threshold"),
        ({"threshold": -0.3, "sentimentType": "positive"}, "sentimentType"),
    ],
)
def test_sentiment_conditions_errors_name_the_field(payload, field) -> None:
    with pytest.raises(RuleValidationError) as excinfo:
        parse_rule_conditions("sentiment_threshold", payload)
    assert excinfo.value.field == field
    assert field in excinfo.value.message


def test_keyword_conditions_require_keywords() -> None:
    conditions = parse_rule_conditions("keyword_match", {"keywords": [" bad ", "terrible"], "matchType": "all"})
    assert isinstance(conditions, KeywordMatchConditions)
    assert conditions.keywords == ["bad", "terrible"]

    with pytest.raises(RuleValidationError) as excinfo:
        parse_rule_conditions("keyword_match", {"keywords": [], "matchType": "any"})
    assert excinfo.value.field == "keywords"

    with pytest.raises(RuleValidationError) as excinfo:
        parse_rule_conditions("keyword_match", {"keywords": ["a"], "matchType": "some"})
    assert excinfo.value.field == "matchType"


def test_influencer_conditions_default_require_verified() -> None:
    conditions = parse_rule_conditions("influencer_mention", {"minFollowers": 10000})
    assert isinstance(conditions, InfluencerMentionConditions)
    assert conditions.requireVerified is False

    with pytest.raises(RuleValidationError) as excinfo:
        parse_rule_conditions("influencer_mention", {})
    assert excinfo.value.field == "minFollowers"


def test_volume_spike_conditions() -> None:
    conditions = parse_rule_conditions(
        "volume_spike",
        {"timeWindow": 60, "increasePercentage": 50, "minMentions": 10},
    )
    assert isinstance(conditions, VolumeSpikeConditions)

    with pytest.raises(RuleValidationError) as excinfo:
        parse_rule_conditions("volume_spike", {"timeWindow": 60, "increasePercentage": 50})
    assert excinfo.value.field == "minMentions"


def test_competitor_conditions_require_identifier() -> None:
    parse_rule_conditions("competitor_spike", {"competitorId": "c-1"})
    with pytest.raises(RuleValidationError) as excinfo:
        parse_rule_conditions("competitor_spike", {})
    assert excinfo.value.field == "competitorId"


def test_unknown_rule_type_and_non_object_conditions() -> None:
    with pytest.raises(RuleValidationError) as excinfo:
        parse_rule_conditions("weather", {})
    assert excinfo.value.field == "rule_type"

    with pytest.raises(RuleValidationError) as excinfo:
        parse_rule_conditions("keyword_match", ["bad"])
    assert excinfo.value.field == "conditions"


def test_strict_actions_reject_unknown_kinds() -> None:
    with pytest.raises(RuleValidationError) as excinfo:
        parse_rule_actions([{"type": "email"}, {"type": "sms"}], strict=True)
    assert excinfo.value.field == "actions[1].type"


def test_lenient_actions_keep_unknown_kinds_without_kind() -> None:
    actions = parse_rule_actions([{"type": "webhook", "config": {"url": "https://hooks.test"}}, {"type": "sms"}, "junk"])
    assert [action.type for action in actions] == ["webhook", "sms"]
    assert actions[0].kind is ActionKind.WEBHOOK
    assert actions[1].kind is None
    assert parse_rule_actions(None) == []
