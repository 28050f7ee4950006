"""Periodic detection of mention volume spikes for ``volume_spike`` rules."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from alerts.rule_definitions import RuleValidationError, VolumeSpikeConditions, parse_rule_conditions
from core.clock import as_utc, now_utc
from core.env import env_float
from core.logging import get_logger
from models.alert import AlertRule
from models.mention import Mention
from services.alert_actions import VOLUME_SPIKE_ACTION_KINDS, ActionDispatcher
from services.alert_service import record_trigger

logger = get_logger(__name__)

VOLUME_SPIKE_INTERVAL_SECONDS = env_float("VOLUME_SPIKE_INTERVAL_SECONDS", 300.0, minimum=1.0)


@dataclass(frozen=True)
class SpikeDecision:
    triggered: bool
    current_count: int
    previous_count: int
    increase_percent: Optional[float]

    def event_data(self, time_window: float) -> Dict[str, Any]:
        return {
            "currentCount": self.current_count,
            "previousCount": self.previous_count,
            "increasePercent": self.increase_percent,
            "timeWindow": time_window,
        }


def evaluate_volume_spike(current: int, previous: int, conditions: VolumeSpikeConditions) -> SpikeDecision:
    """Decide whether ``current`` against the ``previous`` window is a spike.

    Volume below ``minMentions`` never triggers. A zero baseline triggers
    on absolute volume alone and carries no percentage.
    """

    if current < conditions.minMentions:
        return SpikeDecision(False, current, previous, None)
    if previous == 0:
        return SpikeDecision(True, current, previous, None)
    increase = (current - previous) / previous * 100
    return SpikeDecision(increase >= conditions.increasePercentage, current, previous, increase)


def _count_mentions(db: Session, tenant_id: str, start: datetime, end: datetime, *, include_end: bool) -> int:
    query = db.query(func.count(Mention.id)).filter(
        Mention.tenant_id == tenant_id,
        Mention.published_at >= start,
    )
    if include_end:
        query = query.filter(Mention.published_at <= end)
    else:
        query = query.filter(Mention.published_at < end)
    return int(query.scalar() or 0)


class VolumeSpikeDetector:
    """Sweeps every active ``volume_spike`` rule once per call."""

    def __init__(self, *, dispatcher_factory: Optional[Callable[[Session], ActionDispatcher]] = None) -> None:
        self.dispatcher_factory = dispatcher_factory or ActionDispatcher

    def window_counts(self, db: Session, rule: AlertRule, window_minutes: float, now: datetime) -> Tuple[int, int]:
        window = timedelta(minutes=window_minutes)
        current = _count_mentions(db, rule.tenant_id, now - window, now, include_end=True)
        previous = _count_mentions(db, rule.tenant_id, now - 2 * window, now - window, include_end=False)
        return current, previous

    def check_rule(self, db: Session, rule: AlertRule, now: datetime) -> bool:
        conditions = parse_rule_conditions(rule.rule_type, rule.conditions)
        current, previous = self.window_counts(db, rule, conditions.timeWindow, now)
        decision = evaluate_volume_spike(current, previous, conditions)
        if not decision.triggered:
            return False

        event = record_trigger(
            db,
            rule,
            event_type="volume_spike",
            event_data=decision.event_data(conditions.timeWindow),
            now=now,
        )
        logger.info(
            "Volume spike detected for rule %s: %d -> %d (%s%%)",
            rule.id,
            previous,
            current,
            "n/a" if decision.increase_percent is None else f"{decision.increase_percent:.1f}",
        )
        self.dispatcher_factory(db).dispatch(rule, event, None, allowed_kinds=VOLUME_SPIKE_ACTION_KINDS)
        return True

    def run_sweep(self, db: Session, *, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = as_utc(now) or now_utc()
        rules = (
            db.query(AlertRule)
            .filter(AlertRule.rule_type == "volume_spike", AlertRule.is_active.is_(True))
            .order_by(AlertRule.created_at.asc())
            .all()
        )
        result: Dict[str, Any] = {"rulesChecked": 0, "triggered": 0, "errors": []}
        for rule in rules:
            rule_id = str(rule.id)
            result["rulesChecked"] += 1
            try:
                # A failed rule rolls back to its own savepoint; earlier triggers stay.
                with db.begin_nested():
                    triggered = self.check_rule(db, rule, now)
            except RuleValidationError as exc:
                logger.warning("Skipping volume spike rule %s with invalid conditions: %s", rule_id, exc.message)
                result["errors"].append({"ruleId": rule_id, "error": exc.message})
                continue
            except Exception as exc:
                logger.error("Volume spike check failed for rule %s: %s", rule_id, exc, exc_info=True)
                result["errors"].append({"ruleId": rule_id, "error": str(exc)})
                continue
            if triggered:
                result["triggered"] += 1
        return result

    def check_volume_spikes(self, db: Session, *, now: Optional[datetime] = None) -> int:
        """Run one sweep and return how many rules triggered."""
        return int(self.run_sweep(db, now=now)["triggered"])


class VolumeSpikeScheduler:
    """Single-process timer around :class:`VolumeSpikeDetector`.

    A tick that fires while the previous sweep is still running is skipped,
    never queued. ``stop`` prevents future ticks and lets an in-flight sweep
    finish.
    """

    def __init__(
        self,
        *,
        detector: Optional[VolumeSpikeDetector] = None,
        session_factory: Optional[Callable[[], Session]] = None,
        interval_seconds: Optional[float] = None,
    ) -> None:
        self.detector = detector or VolumeSpikeDetector()
        self._session_factory = session_factory
        self.interval_seconds = interval_seconds or VOLUME_SPIKE_INTERVAL_SECONDS
        self._busy = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.last_run_at: Optional[datetime] = None
        self.last_run_result: Optional[Dict[str, Any]] = None

    def _new_session(self) -> Session:
        if self._session_factory is None:
            from database import SessionLocal

            self._session_factory = SessionLocal
        return self._session_factory()

    @property
    def active(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def is_running(self) -> bool:
        return self._busy.locked()

    def tick(self, *, now: Optional[datetime] = None) -> bool:
        """Run one sweep; return False when skipped because one is in flight."""

        if not self._busy.acquire(blocking=False):
            logger.warning("Previous volume spike sweep still running; skipping tick.")
            return False
        started_at = now_utc()
        timer_start = time.perf_counter()
        try:
            session = self._new_session()
            try:
                result = self.detector.run_sweep(session, now=now)
                session.commit()
            except Exception as exc:
                session.rollback()
                logger.error("Volume spike sweep failed: %s", exc, exc_info=True)
                result = {"error": str(exc)}
            finally:
                session.close()
            result["durationMs"] = int((time.perf_counter() - timer_start) * 1000)
            self.last_run_at = started_at
            self.last_run_result = result
            logger.info("Volume spike sweep complete", extra={"result": result})
        finally:
            self._busy.release()
        return True

    def _run(self) -> None:
        while not self._stop_event.wait(self.interval_seconds):
            self.tick()

    def start(self) -> None:
        if self.active:
            logger.warning("Volume spike scheduler already started.")
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="volume-spike-scheduler", daemon=True)
        self._thread.start()
        logger.info("Volume spike scheduler started (every %.0f seconds).", self.interval_seconds)

    def stop(self, *, timeout: Optional[float] = None) -> None:
        thread = self._thread
        if thread is None:
            return
        self._stop_event.set()
        thread.join(timeout)
        self._thread = None
        logger.info("Volume spike scheduler stopped.")

    def status(self) -> Dict[str, Any]:
        return {
            "active": self.active,
            "isRunning": self.is_running,
            "lastRunAt": self.last_run_at.isoformat() if self.last_run_at else None,
            "lastRunResult": self.last_run_result,
        }


__all__ = [
    "SpikeDecision",
    "VOLUME_SPIKE_INTERVAL_SECONDS",
    "VolumeSpikeDetector",
    "VolumeSpikeScheduler",
    "evaluate_volume_spike",
]
