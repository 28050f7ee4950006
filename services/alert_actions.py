"""Execute the side effects configured on a triggered social listening rule."""

from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, FrozenSet, List, Mapping, Optional, Sequence

from jinja2 import Environment, FileSystemLoader, select_autoescape
from sqlalchemy.orm import Session

from alerts.rule_definitions import ActionKind, parse_rule_actions
from core.clock import as_utc, now_utc
from core.env import env_str
from core.logging import get_logger
from models.alert import AlertEvent, AlertRule
from models.mention import Mention
from models.notification import Notification, Ticket, UnifiedAlert
from services import notification_service

logger = get_logger(__name__)

REPO_ROOT = Path(__file__).resolve().parent.parent
EMAIL_TEMPLATE_DIR = REPO_ROOT / "templates" / "email"

BRAND_NAME = env_str("APP_BRAND_NAME") or "Insights"
FRONTEND_BASE_URL = env_str("FRONTEND_BASE_URL") or "http://localhost:3000"
EXCERPT_LENGTH = 100

# Volume spike events carry no mention, so only these kinds are wired up for them.
VOLUME_SPIKE_ACTION_KINDS: FrozenSet[ActionKind] = frozenset({ActionKind.NOTIFICATION, ActionKind.EMAIL})

_ENV: Optional[Environment] = None


class ActionDeliveryError(RuntimeError):
    """Raised by a handler when its downstream transport reports a failure."""


@dataclass
class ActionContext:
    db: Session
    rule: AlertRule
    alert_event: AlertEvent
    mention: Optional[Mention] = None

    @property
    def event_data(self) -> Dict[str, Any]:
        payload = self.alert_event.event_data or {}
        return dict(payload) if isinstance(payload, Mapping) else {}


@dataclass
class DispatchSummary:
    executed: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)


ActionHandler = Callable[[ActionContext, Dict[str, Any]], None]


def _get_env() -> Environment:
    global _ENV  # pylint: disable=global-statement
    if _ENV is None:
        _ENV = Environment(
            loader=FileSystemLoader(EMAIL_TEMPLATE_DIR),
            autoescape=select_autoescape(["html", "xml"]),
            trim_blocks=True,
            lstrip_blocks=True,
        )
    return _ENV


def _frontend_url(path: str) -> str:
    return f"{FRONTEND_BASE_URL.rstrip('/')}/{path.lstrip('/')}"


def _excerpt(content: Optional[str], limit: int = EXCERPT_LENGTH) -> str:
    text = (content or "").strip()
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


def derive_severity(rule_type: str, sentiment: Optional[str], score: Optional[float]) -> str:
    """Map a trigger onto the unified alert severity scale."""
    negative = sentiment == "negative" and score is not None
    if negative and score < -0.7:
        return "critical"
    if (negative and score < -0.4) or rule_type == "influencer_mention":
        return "high"
    return "medium"


def _volume_spike_summary(event_data: Mapping[str, Any]) -> str:
    increase = event_data.get("increasePercent")
    if increase is not None:
        return (
            f"Mentions increased {round(increase)}% "
            f"({event_data.get('previousCount')} -> {event_data.get('currentCount')})"
        )
    return (
        f"Significant activity: {event_data.get('currentCount')} mentions "
        f"in last {event_data.get('timeWindow')} minutes"
    )


def _recipients(config: Mapping[str, Any]) -> List[str]:
    raw = config.get("recipients") or config.get("email")
    if isinstance(raw, str):
        return [raw]
    if isinstance(raw, (list, tuple, set)):
        return [item for item in raw if isinstance(item, str)]
    return []


def _send_notification(ctx: ActionContext, config: Dict[str, Any]) -> None:
    rule, mention = ctx.rule, ctx.mention
    if mention is None:
        title = f"Volume spike detected: {rule.name}"
        message = _volume_spike_summary(ctx.event_data)
        link = "/social-listening"
        metadata: Dict[str, Any] = {
            "alertId": str(rule.id),
            "eventId": str(ctx.alert_event.id),
            "eventData": ctx.event_data,
        }
    else:
        title = f"New social listening alert: {rule.name}"
        message = (
            f"{mention.author_name} (@{mention.author_handle}) on {mention.platform}: "
            f"\"{_excerpt(mention.content)}\""
        )
        link = f"/social-listening?mention={mention.id}"
        metadata = {
            "alertId": str(rule.id),
            "mentionId": str(mention.id),
            "eventId": str(ctx.alert_event.id),
        }
    ctx.db.add(
        Notification(
            tenant_id=rule.tenant_id,
            user_id=config.get("userId") or rule.created_by,
            title=title,
            message=message,
            type="alert",
            link=link,
            extra=metadata,
        )
    )
    ctx.db.flush()


def _send_email(ctx: ActionContext, config: Dict[str, Any]) -> None:
    rule, mention = ctx.rule, ctx.mention
    recipients = _recipients(config)
    if mention is None:
        data = ctx.event_data
        subject = f"Volume Spike Alert: {rule.name}"
        html = _get_env().get_template("volume_spike_alert.html").render(
            rule_name=rule.name,
            time_window=data.get("timeWindow"),
            previous_count=data.get("previousCount"),
            current_count=data.get("currentCount"),
            increase_percent=data.get("increasePercent"),
            deep_link=_frontend_url("social-listening"),
        )
    else:
        subject = f"Social Listening Alert: {rule.name}"
        html = _get_env().get_template("social_listening_alert.html").render(
            brand_name=BRAND_NAME,
            rule_name=rule.name,
            rule_type=rule.rule_type,
            platform=mention.platform,
            author_name=mention.author_name,
            author_handle=mention.author_handle,
            followers=mention.author_followers,
            sentiment=mention.sentiment,
            sentiment_score=mention.sentiment_score,
            excerpt=_excerpt(mention.content, limit=500),
            content_url=mention.content_url,
            deep_link=_frontend_url(f"social-listening?mention={mention.id}"),
        )
    result = notification_service.send_email(recipients, subject, html)
    if not result.ok:
        raise ActionDeliveryError(result.error or "email delivery failed")


def _create_unified_alert(ctx: ActionContext, config: Dict[str, Any]) -> None:
    mention = ctx.mention
    sentiment = mention.sentiment if mention else None
    score = mention.sentiment_score if mention else None
    severity = derive_severity(ctx.rule.rule_type, sentiment, score)
    ctx.db.add(
        UnifiedAlert(
            tenant_id=ctx.rule.tenant_id,
            alert_level=severity,
            score_value=score,
            score_type="sentiment",
            sentiment=sentiment,
            mention_id=mention.id if mention else None,
            source_channel=mention.platform if mention else None,
        )
    )
    ctx.db.flush()
    logger.info("Unified alert created", extra={"rule_id": str(ctx.rule.id), "alert_level": severity})


def _ticket_code() -> str:
    return f"SL-{100000 + secrets.randbelow(900000)}"


def _ticket_description(ctx: ActionContext) -> str:
    mention = ctx.mention
    lines = [f"Alert: {ctx.rule.name}"]
    if mention is None:
        lines.append(_volume_spike_summary(ctx.event_data))
        return "\n".join(lines)
    lines.extend(
        [
            f"Platform: {mention.platform}",
            f"Author: {mention.author_name} (@{mention.author_handle})",
            f"Followers: {mention.author_followers}",
            f"Sentiment: {mention.sentiment} ({mention.sentiment_score})",
            "",
            "Content:",
            mention.content or "",
            "",
            f"URL: {mention.content_url or '-'}",
        ]
    )
    return "\n".join(lines)


def _create_ticket(ctx: ActionContext, config: Dict[str, Any]) -> None:
    ticket = Ticket(
        tenant_id=ctx.rule.tenant_id,
        ticket_code=_ticket_code(),
        subject=config.get("subject") or f"Social Listening: {ctx.rule.name}",
        description=_ticket_description(ctx),
        priority=config.get("priority") or "medium",
        status="new",
        channel="social",
    )
    ctx.db.add(ticket)
    ctx.db.flush()
    logger.info(
        "Ticket created from alert",
        extra={"rule_id": str(ctx.rule.id), "ticket_id": str(ticket.id), "ticket_code": ticket.ticket_code},
    )


def build_webhook_payload(ctx: ActionContext) -> Dict[str, Any]:
    rule, mention = ctx.rule, ctx.mention
    payload: Dict[str, Any] = {
        "alert": {
            "id": str(ctx.alert_event.id),
            "ruleId": str(rule.id),
            "ruleName": rule.name,
            "ruleType": rule.rule_type,
        },
        "timestamp": now_utc().isoformat(),
    }
    if mention is None:
        payload["eventData"] = ctx.event_data
        return payload
    published_at = as_utc(mention.published_at)
    payload["mention"] = {
        "id": str(mention.id),
        "platform": mention.platform,
        "authorName": mention.author_name,
        "authorHandle": mention.author_handle,
        "followers": mention.author_followers,
        "content": mention.content,
        "url": mention.content_url,
        "sentiment": mention.sentiment,
        "sentimentScore": mention.sentiment_score,
        "publishedAt": published_at.isoformat() if published_at else None,
    }
    return payload


def _call_webhook(ctx: ActionContext, config: Dict[str, Any]) -> None:
    headers = config.get("headers") if isinstance(config.get("headers"), dict) else None
    result = notification_service.post_webhook(
        str(config.get("url") or ""),
        build_webhook_payload(ctx),
        headers=headers,
    )
    if not result.ok:
        raise ActionDeliveryError(result.error or "webhook delivery failed")


ACTION_HANDLERS: Dict[ActionKind, ActionHandler] = {
    ActionKind.NOTIFICATION: _send_notification,
    ActionKind.EMAIL: _send_email,
    ActionKind.CTL_ALERT: _create_unified_alert,
    ActionKind.TICKET: _create_ticket,
    ActionKind.WEBHOOK: _call_webhook,
}


class ActionDispatcher:
    """Run a rule's ordered action list, isolating failures per action.

    Each handler runs inside its own SAVEPOINT so a failed write rolls back
    only that action and leaves the alert event committable.
    """

    def __init__(self, db: Session, *, handlers: Optional[Mapping[ActionKind, ActionHandler]] = None) -> None:
        self.db = db
        self.handlers: Dict[ActionKind, ActionHandler] = dict(handlers or ACTION_HANDLERS)

    def dispatch(
        self,
        rule: AlertRule,
        alert_event: AlertEvent,
        mention: Optional[Mention] = None,
        *,
        allowed_kinds: Optional[Sequence[ActionKind]] = None,
    ) -> DispatchSummary:
        summary = DispatchSummary()
        context = ActionContext(db=self.db, rule=rule, alert_event=alert_event, mention=mention)
        permitted = frozenset(allowed_kinds) if allowed_kinds is not None else None
        rule_id = rule.id
        for action in parse_rule_actions(rule.actions):
            kind = action.kind
            if kind is None:
                logger.warning("Unknown alert action type %s on rule %s; skipping.", action.type, rule_id)
                summary.skipped.append(action.type)
                continue
            if permitted is not None and kind not in permitted:
                logger.debug("Action %s not available for %s events; skipping.", kind.value, alert_event.event_type)
                summary.skipped.append(kind.value)
                continue
            handler = self.handlers.get(kind)
            if handler is None:
                logger.warning("No handler registered for action %s; skipping.", kind.value)
                summary.skipped.append(kind.value)
                continue
            try:
                with self.db.begin_nested():
                    handler(context, dict(action.config))
            except Exception as exc:
                logger.error(
                    "Alert action %s failed for rule %s: %s",
                    kind.value,
                    rule_id,
                    exc,
                    exc_info=True,
                )
                summary.failed.append(kind.value)
                continue
            summary.executed.append(kind.value)
        return summary


__all__ = [
    "ACTION_HANDLERS",
    "ActionContext",
    "ActionDeliveryError",
    "ActionDispatcher",
    "DispatchSummary",
    "VOLUME_SPIKE_ACTION_KINDS",
    "build_webhook_payload",
    "derive_severity",
]
