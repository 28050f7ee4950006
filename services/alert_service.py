"""Business logic for social listening alert rules, triggers and events."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from pydantic import ValidationError
from sqlalchemy import func
from sqlalchemy.orm import Session

from alerts.rule_definitions import (
    InfluencerMentionConditions,
    KeywordMatchConditions,
    RuleConditions,
    RuleValidationError,
    SentimentThresholdConditions,
    parse_rule_actions,
    parse_rule_conditions,
)
from core.clock import as_utc, now_utc
from core.env import env_int
from core.logging import get_logger
from models.alert import ALERT_EVENT_STATUSES, ALERT_RULE_TYPES, AlertEvent, AlertRule
from models.mention import Mention
from schemas.api.alerts import AlertEventStatusUpdateRequest, AlertRuleCreateRequest, AlertRuleUpdateRequest
from services.alert_actions import ActionDispatcher

logger = get_logger(__name__)

DEFAULT_COOLDOWN_MINUTES = env_int("SOCIAL_ALERT_DEFAULT_COOLDOWN_MINUTES", 60, minimum=0)
DEFAULT_EVENT_PAGE_SIZE = 50
MAX_EVENT_PAGE_SIZE = 200
TOP_RULES_LIMIT = 5

# Rule types evaluated per mention; the rest are swept elsewhere.
PER_MENTION_RULE_TYPES = ("sentiment_threshold", "keyword_match", "influencer_mention")


class AlertRuleNotFoundError(LookupError):
    """Raised when a rule does not exist for the requesting tenant."""


class AlertEventNotFoundError(LookupError):
    """Raised when an alert event does not exist for the requesting tenant."""


class MentionNotFoundError(LookupError):
    """Raised when the tenant has no mention to evaluate a rule against."""


# ---------------------------------------------------------------------------
# Rule definitions
# ---------------------------------------------------------------------------


def _validated_conditions(rule_type: str, payload: Any) -> Dict[str, Any]:
    parse_rule_conditions(rule_type, payload)
    return dict(payload)


def _validated_actions(actions: Any) -> List[Dict[str, Any]]:
    return [action.model_dump() for action in parse_rule_actions(actions, strict=True)]


def list_alert_rules(db: Session, *, tenant_id: str, is_active: Optional[bool] = None) -> List[AlertRule]:
    query = db.query(AlertRule).filter(AlertRule.tenant_id == tenant_id)
    if is_active is not None:
        query = query.filter(AlertRule.is_active.is_(is_active))
    return list(query.order_by(AlertRule.created_at.desc()).all())


def get_alert_rule(db: Session, *, tenant_id: str, rule_id: uuid.UUID) -> AlertRule:
    rule = db.query(AlertRule).filter(AlertRule.id == rule_id, AlertRule.tenant_id == tenant_id).first()
    if rule is None:
        raise AlertRuleNotFoundError(f"Alert rule {rule_id} not found")
    return rule


def create_alert_rule(
    db: Session,
    *,
    tenant_id: str,
    created_by: Optional[str],
    request: AlertRuleCreateRequest,
) -> AlertRule:
    """Validate and store a new rule; condition errors name the offending field."""

    conditions = _validated_conditions(request.ruleType, request.conditions)
    actions = _validated_actions([action.model_dump() for action in request.actions])
    cooldown = request.cooldownMinutes if request.cooldownMinutes is not None else DEFAULT_COOLDOWN_MINUTES
    rule = AlertRule(
        id=uuid.uuid4(),
        tenant_id=tenant_id,
        name=request.name,
        rule_type=request.ruleType,
        conditions=conditions,
        actions=actions,
        platforms=list(request.platforms),
        is_active=True,
        cooldown_minutes=cooldown,
        trigger_count=0,
        created_by=created_by,
    )
    db.add(rule)
    db.flush()
    logger.info(
        "Alert rule created",
        extra={"rule_id": str(rule.id), "tenant_id": tenant_id, "rule_type": rule.rule_type},
    )
    return rule


def update_alert_rule(
    db: Session,
    *,
    tenant_id: str,
    rule_id: uuid.UUID,
    request: AlertRuleUpdateRequest,
) -> AlertRule:
    changes = request.model_dump(exclude_unset=True)
    if not changes:
        raise RuleValidationError("body", "No fields to update")
    rule = get_alert_rule(db, tenant_id=tenant_id, rule_id=rule_id)

    if changes.get("name") is not None:
        rule.name = changes["name"]
    if changes.get("conditions") is not None:
        rule.conditions = _validated_conditions(rule.rule_type, changes["conditions"])
    if changes.get("actions") is not None:
        rule.actions = _validated_actions(changes["actions"])
    if changes.get("platforms") is not None:
        rule.platforms = list(changes["platforms"])
    if changes.get("isActive") is not None:
        rule.is_active = bool(changes["isActive"])
    if changes.get("cooldownMinutes") is not None:
        rule.cooldown_minutes = int(changes["cooldownMinutes"])
    db.flush()
    return rule


def delete_alert_rule(db: Session, *, tenant_id: str, rule_id: uuid.UUID) -> None:
    rule = get_alert_rule(db, tenant_id=tenant_id, rule_id=rule_id)
    db.query(AlertEvent).filter(AlertEvent.alert_id == rule.id).delete(synchronize_session=False)
    db.delete(rule)
    db.flush()
    logger.info("Alert rule deleted", extra={"rule_id": str(rule_id), "tenant_id": tenant_id})


# ---------------------------------------------------------------------------
# Per-mention evaluation
# ---------------------------------------------------------------------------


def get_matched_keywords(content: Optional[str], keywords: List[str]) -> List[str]:
    haystack = (content or "").lower()
    return [keyword for keyword in keywords if keyword.lower() in haystack]


def _match_sentiment(conditions: SentimentThresholdConditions, mention: Mention) -> bool:
    score = mention.sentiment_score
    if score is None:
        return False
    if conditions.sentimentType == "negative":
        return score < conditions.threshold
    return abs(score) > abs(conditions.threshold)


def _match_keywords(conditions: KeywordMatchConditions, mention: Mention) -> bool:
    matched = get_matched_keywords(mention.content, conditions.keywords)
    if conditions.matchType == "all":
        return len(matched) == len(conditions.keywords)
    return bool(matched)


def _match_influencer(conditions: InfluencerMentionConditions, mention: Mention) -> bool:
    followers = mention.author_followers or 0
    if followers < conditions.minFollowers:
        return False
    if conditions.requireVerified and not mention.author_verified:
        return False
    return True


def _rule_matches(conditions: RuleConditions, mention: Mention) -> bool:
    if isinstance(conditions, SentimentThresholdConditions):
        return _match_sentiment(conditions, mention)
    if isinstance(conditions, KeywordMatchConditions):
        return _match_keywords(conditions, mention)
    if isinstance(conditions, InfluencerMentionConditions):
        return _match_influencer(conditions, mention)
    return False


def _platform_allowed(rule: AlertRule, mention: Mention) -> bool:
    platforms = {platform.strip().lower() for platform in rule.platform_list}
    if not platforms:
        return True
    return (mention.platform or "").strip().lower() in platforms


def _event_snapshot(rule: AlertRule, conditions: RuleConditions, mention: Mention) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "ruleName": rule.name,
        "ruleType": rule.rule_type,
        "platform": mention.platform,
        "authorName": mention.author_name,
        "authorHandle": mention.author_handle,
        "followers": mention.author_followers,
        "sentiment": mention.sentiment,
        "sentimentScore": mention.sentiment_score,
        "content": (mention.content or "")[:500],
    }
    if isinstance(conditions, KeywordMatchConditions):
        data["matchedKeywords"] = get_matched_keywords(mention.content, conditions.keywords)
    return data


def record_trigger(
    db: Session,
    rule: AlertRule,
    *,
    event_type: str,
    event_data: Dict[str, Any],
    now: datetime,
    mention_id: Optional[uuid.UUID] = None,
) -> AlertEvent:
    """Persist a pending event and advance the rule's trigger bookkeeping."""

    event = AlertEvent(
        id=uuid.uuid4(),
        tenant_id=rule.tenant_id,
        alert_id=rule.id,
        mention_id=mention_id,
        event_type=event_type,
        event_data=event_data,
        status="pending",
        created_at=now,
    )
    db.add(event)
    rule.trigger_count = int(rule.trigger_count or 0) + 1
    previous = as_utc(rule.last_triggered_at)
    rule.last_triggered_at = now if previous is None or now > previous else previous
    db.flush()
    logger.info(
        "Alert rule triggered",
        extra={"rule_id": str(rule.id), "event_id": str(event.id), "event_type": event_type},
    )
    return event


def check_mention_against_rules(
    db: Session,
    mention: Mention,
    *,
    now: Optional[datetime] = None,
    dispatcher: Optional[ActionDispatcher] = None,
) -> List[AlertEvent]:
    """Evaluate ``mention`` against the tenant's active rules and fire the matches.

    Storage errors while loading rules or writing events propagate; action
    failures are contained by the dispatcher.
    """

    now = as_utc(now) or now_utc()
    dispatcher = dispatcher or ActionDispatcher(db)
    rules = (
        db.query(AlertRule)
        .filter(AlertRule.tenant_id == mention.tenant_id, AlertRule.is_active.is_(True))
        .order_by(AlertRule.created_at.asc())
        .all()
    )
    triggered: List[AlertEvent] = []
    for rule in rules:
        if not _platform_allowed(rule, mention):
            continue
        if rule.is_cooling_down(now):
            logger.debug("Rule %s cooling down for %s", rule.id, rule.remaining_cooldown(now))
            continue
        if rule.rule_type not in PER_MENTION_RULE_TYPES:
            continue
        try:
            conditions = parse_rule_conditions(rule.rule_type, rule.conditions)
        except RuleValidationError as exc:
            logger.warning("Skipping rule %s with invalid stored conditions: %s", rule.id, exc.message)
            continue
        if not _rule_matches(conditions, mention):
            continue

        event = record_trigger(
            db,
            rule,
            event_type=rule.rule_type,
            event_data=_event_snapshot(rule, conditions, mention),
            now=now,
            mention_id=mention.id,
        )
        dispatcher.dispatch(rule, event, mention)
        triggered.append(event)
    return triggered


def test_alert_rule(
    db: Session,
    *,
    tenant_id: str,
    rule_id: uuid.UUID,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Evaluate a rule against the tenant's most recent mention without side effects.

    Nothing is persisted and no actions run. Cooldown is reported separately
    and does not affect ``triggered``.
    """

    rule = get_alert_rule(db, tenant_id=tenant_id, rule_id=rule_id)
    if rule.rule_type not in PER_MENTION_RULE_TYPES:
        raise RuleValidationError("ruleType", f"{rule.rule_type} rules are evaluated by the periodic sweep")
    mention = (
        db.query(Mention)
        .filter(Mention.tenant_id == tenant_id)
        .order_by(Mention.published_at.desc())
        .first()
    )
    if mention is None:
        raise MentionNotFoundError("No mentions found to test against")

    conditions = parse_rule_conditions(rule.rule_type, rule.conditions)
    triggered = _platform_allowed(rule, mention) and _rule_matches(conditions, mention)
    return {
        "triggered": triggered,
        "message": "Rule would trigger for this mention" if triggered else "Rule would not trigger for this mention",
        "coolingDown": rule.is_cooling_down(as_utc(now) or now_utc()),
        "testMention": {
            "id": str(mention.id),
            "content": mention.content,
            "platform": mention.platform,
            "sentiment": mention.sentiment,
            "authorHandle": mention.author_handle,
        },
    }


# Service function, not a pytest test.
test_alert_rule.__test__ = False  # type: ignore[attr-defined]


# ---------------------------------------------------------------------------
# Events and statistics
# ---------------------------------------------------------------------------


def list_alert_events(
    db: Session,
    *,
    tenant_id: str,
    status: Optional[str] = None,
    alert_id: Optional[uuid.UUID] = None,
    page: int = 1,
    limit: int = DEFAULT_EVENT_PAGE_SIZE,
) -> Dict[str, Any]:
    page = max(int(page or 1), 1)
    limit = min(max(int(limit or DEFAULT_EVENT_PAGE_SIZE), 1), MAX_EVENT_PAGE_SIZE)
    query = db.query(AlertEvent).filter(AlertEvent.tenant_id == tenant_id)
    if status:
        query = query.filter(AlertEvent.status == status)
    if alert_id:
        query = query.filter(AlertEvent.alert_id == alert_id)
    total = query.count()
    events = (
        query.order_by(AlertEvent.created_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return {
        "events": events,
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "totalPages": (total + limit - 1) // limit,
        },
    }


def update_alert_event_status(
    db: Session,
    *,
    tenant_id: str,
    event_id: uuid.UUID,
    status: str,
    actor_id: Optional[str],
    now: Optional[datetime] = None,
) -> AlertEvent:
    try:
        status = AlertEventStatusUpdateRequest(status=status).status
    except ValidationError as exc:
        raise RuleValidationError(
            "status", f"Invalid status. Must be one of: {', '.join(ALERT_EVENT_STATUSES)}"
        ) from exc
    event = db.query(AlertEvent).filter(AlertEvent.id == event_id, AlertEvent.tenant_id == tenant_id).first()
    if event is None:
        raise AlertEventNotFoundError(f"Alert event {event_id} not found")
    event.status = status
    event.actioned_by = actor_id
    event.actioned_at = now or now_utc()
    db.flush()
    return event


def get_alert_stats(db: Session, *, tenant_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or now_utc()
    rules_by_type: Dict[str, Dict[str, int]] = {rule_type: {"total": 0, "active": 0} for rule_type in ALERT_RULE_TYPES}
    rows = (
        db.query(AlertRule.rule_type, AlertRule.is_active, func.count(AlertRule.id))
        .filter(AlertRule.tenant_id == tenant_id)
        .group_by(AlertRule.rule_type, AlertRule.is_active)
        .all()
    )
    for rule_type, is_active, count in rows:
        bucket = rules_by_type.setdefault(rule_type, {"total": 0, "active": 0})
        bucket["total"] += int(count)
        if is_active:
            bucket["active"] += int(count)

    events_by_status: Dict[str, int] = {status: 0 for status in ALERT_EVENT_STATUSES}
    for status, count in (
        db.query(AlertEvent.status, func.count(AlertEvent.id))
        .filter(AlertEvent.tenant_id == tenant_id)
        .group_by(AlertEvent.status)
        .all()
    ):
        events_by_status[status] = int(count)

    recent = (
        db.query(func.count(AlertEvent.id))
        .filter(AlertEvent.tenant_id == tenant_id, AlertEvent.created_at >= now - timedelta(hours=24))
        .scalar()
    )
    top_rules = (
        db.query(AlertRule)
        .filter(AlertRule.tenant_id == tenant_id, AlertRule.trigger_count > 0)
        .order_by(AlertRule.trigger_count.desc(), AlertRule.name.asc())
        .limit(TOP_RULES_LIMIT)
        .all()
    )
    return {
        "rulesByType": rules_by_type,
        "eventsByStatus": events_by_status,
        "eventsLast24h": int(recent or 0),
        "topRules": [
            {"id": str(rule.id), "name": rule.name, "ruleType": rule.rule_type, "triggerCount": rule.trigger_count}
            for rule in top_rules
        ],
    }


__all__ = [
    "AlertEventNotFoundError",
    "AlertRuleNotFoundError",
    "DEFAULT_COOLDOWN_MINUTES",
    "MentionNotFoundError",
    "check_mention_against_rules",
    "create_alert_rule",
    "delete_alert_rule",
    "get_alert_rule",
    "get_alert_stats",
    "get_matched_keywords",
    "list_alert_events",
    "list_alert_rules",
    "record_trigger",
    "test_alert_rule",
    "update_alert_event_status",
    "update_alert_rule",
]
