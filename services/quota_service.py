"""Form quota counting: recompute from history and overlay live period counters."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import or_
from sqlalchemy.orm import Session

from alerts.criteria import matches_criteria
from alerts.period_keys import get_period_key, is_periodic
from core.clock import as_utc, now_utc
from core.logging import get_logger
from models.quota import FormSubmission, Quota, QuotaPeriodCounter
from schemas.api.quotas import QuotaCreateRequest, QuotaUpdateRequest

logger = get_logger(__name__)

COMPLETED_STATUS = "completed"


class QuotaNotFoundError(LookupError):
    """Raised when a quota does not exist for the requesting tenant."""


@dataclass
class QuotaSnapshot:
    """Display copy of a quota; ``current_count`` reflects the live period."""

    id: uuid.UUID
    form_id: str
    label: str
    limit_count: int
    current_count: int
    reset_period: str
    is_active: bool
    period_key: Optional[str] = None
    criteria: Any = None
    action: Optional[str] = None
    action_data: Dict[str, Any] = field(default_factory=dict)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None

    @property
    def is_full(self) -> bool:
        return self.current_count >= self.limit_count

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "form_id": self.form_id,
            "label": self.label,
            "limit_count": self.limit_count,
            "current_count": self.current_count,
            "reset_period": self.reset_period,
            "period_key": self.period_key,
            "is_active": self.is_active,
            "is_full": self.is_full,
            "criteria": self.criteria,
            "action": self.action,
            "action_data": self.action_data,
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "end_date": self.end_date.isoformat() if self.end_date else None,
        }


def _snapshot(quota: Quota, *, current_count: int, period_key: Optional[str]) -> QuotaSnapshot:
    return QuotaSnapshot(
        id=quota.id,
        form_id=quota.form_id,
        label=quota.label,
        limit_count=int(quota.limit_count or 0),
        current_count=int(current_count or 0),
        reset_period=quota.reset_period or "never",
        is_active=bool(quota.is_active),
        period_key=period_key,
        criteria=quota.criteria,
        action=quota.action,
        action_data=dict(quota.action_data or {}),
        start_date=as_utc(quota.start_date),
        end_date=as_utc(quota.end_date),
    )


def _in_current_period(reset_period: Optional[str], created_at: Optional[datetime], now: datetime) -> bool:
    current_key = get_period_key(reset_period, now)
    if current_key is None:
        return True
    if created_at is None:
        return False
    return get_period_key(reset_period, as_utc(created_at)) == current_key


def count_matching_submissions(
    submissions: Iterable[FormSubmission],
    *,
    criteria: Any,
    reset_period: Optional[str],
    now: datetime,
) -> int:
    """Count submissions inside the current period whose answers satisfy ``criteria``."""

    total = 0
    for submission in submissions:
        if not _in_current_period(reset_period, submission.created_at, now):
            continue
        if matches_criteria(submission.data or {}, criteria):
            total += 1
    return total


def _countable_submissions(db: Session, *, tenant_id: str, form_id: str) -> List[FormSubmission]:
    query = db.query(FormSubmission).filter(
        FormSubmission.tenant_id == tenant_id,
        FormSubmission.form_id == form_id,
        or_(FormSubmission.status == COMPLETED_STATUS, FormSubmission.status.is_(None)),
    )
    return list(query.all())


def recompute_quota_count(db: Session, quota: Quota, *, now: Optional[datetime] = None) -> int:
    """Recount ``quota`` from the stored submissions and persist ``current_count``."""

    now = now or now_utc()
    submissions = _countable_submissions(db, tenant_id=quota.tenant_id, form_id=quota.form_id)
    count = count_matching_submissions(
        submissions,
        criteria=quota.criteria,
        reset_period=quota.reset_period,
        now=now,
    )
    quota.current_count = count
    logger.debug(
        "Recomputed quota %s (%s): %d of %d submissions match.",
        quota.id,
        quota.reset_period,
        count,
        len(submissions),
    )
    return count


def _period_counts(
    db: Session,
    keys: Dict[uuid.UUID, str],
) -> Dict[Tuple[uuid.UUID, str], int]:
    if not keys:
        return {}
    rows = (
        db.query(QuotaPeriodCounter)
        .filter(
            QuotaPeriodCounter.quota_id.in_(list(keys.keys())),
            QuotaPeriodCounter.period_key.in_(sorted(set(keys.values()))),
        )
        .all()
    )
    return {(row.quota_id, row.period_key): int(row.count or 0) for row in rows}


def list_quotas(
    db: Session,
    *,
    tenant_id: str,
    form_id: str,
    now: Optional[datetime] = None,
) -> List[QuotaSnapshot]:
    """Return the form's quotas with periodic counts read from the live counters."""

    now = now or now_utc()
    quotas = (
        db.query(Quota)
        .filter(Quota.tenant_id == tenant_id, Quota.form_id == form_id)
        .order_by(Quota.created_at.asc(), Quota.label.asc())
        .all()
    )
    keys: Dict[uuid.UUID, str] = {}
    for quota in quotas:
        key = get_period_key(quota.reset_period, now)
        if key is not None:
            keys[quota.id] = key
    counters = _period_counts(db, keys)

    snapshots: List[QuotaSnapshot] = []
    for quota in quotas:
        key = keys.get(quota.id)
        if key is None:
            snapshots.append(_snapshot(quota, current_count=quota.current_count, period_key=None))
        else:
            snapshots.append(_snapshot(quota, current_count=counters.get((quota.id, key), 0), period_key=key))
    return snapshots


def get_quota(db: Session, *, tenant_id: str, quota_id: uuid.UUID) -> Quota:
    quota = db.query(Quota).filter(Quota.id == quota_id, Quota.tenant_id == tenant_id).first()
    if quota is None:
        raise QuotaNotFoundError(f"Quota {quota_id} not found")
    return quota


def create_quota(
    db: Session,
    *,
    tenant_id: str,
    request: QuotaCreateRequest,
    now: Optional[datetime] = None,
) -> Quota:
    quota = Quota(
        id=uuid.uuid4(),
        tenant_id=tenant_id,
        form_id=request.form_id,
        label=request.label.strip(),
        limit_count=request.limit_count,
        criteria=request.criteria,
        action=request.action,
        action_data=dict(request.action_data),
        reset_period=request.reset_period,
        is_active=request.is_active,
        start_date=request.start_date,
        end_date=request.end_date,
    )
    recompute_quota_count(db, quota, now=now)
    db.add(quota)
    db.flush()
    logger.info(
        "Quota created",
        extra={"quota_id": str(quota.id), "form_id": quota.form_id, "current_count": quota.current_count},
    )
    return quota


def update_quota(
    db: Session,
    *,
    tenant_id: str,
    quota_id: uuid.UUID,
    request: QuotaUpdateRequest,
    now: Optional[datetime] = None,
) -> Quota:
    quota = get_quota(db, tenant_id=tenant_id, quota_id=quota_id)
    changes = request.model_dump(exclude_unset=True)
    if "label" in changes and changes["label"]:
        quota.label = str(changes["label"]).strip()
    if "limit_count" in changes and changes["limit_count"] is not None:
        quota.limit_count = int(changes["limit_count"])
    if "criteria" in changes:
        quota.criteria = changes["criteria"]
    if "action" in changes and changes["action"]:
        quota.action = changes["action"]
    if "action_data" in changes and changes["action_data"] is not None:
        quota.action_data = dict(changes["action_data"])
    if "reset_period" in changes:
        quota.reset_period = changes["reset_period"] or "never"
    if "is_active" in changes and changes["is_active"] is not None:
        quota.is_active = bool(changes["is_active"])
    if "start_date" in changes:
        quota.start_date = changes["start_date"]
    if "end_date" in changes:
        quota.end_date = changes["end_date"]
    start, end = as_utc(quota.start_date), as_utc(quota.end_date)
    if start and end and end < start:
        raise ValueError("end_date must not be before start_date")
    recompute_quota_count(db, quota, now=now)
    db.flush()
    return quota


def delete_quota(db: Session, *, tenant_id: str, quota_id: uuid.UUID) -> None:
    quota = get_quota(db, tenant_id=tenant_id, quota_id=quota_id)
    db.query(QuotaPeriodCounter).filter(QuotaPeriodCounter.quota_id == quota.id).delete(synchronize_session=False)
    db.delete(quota)
    db.flush()
    logger.info("Quota deleted", extra={"quota_id": str(quota_id), "tenant_id": tenant_id})


def _within_validity(quota: Quota, when: datetime) -> bool:
    start, end = as_utc(quota.start_date), as_utc(quota.end_date)
    if start and when < start:
        return False
    if end and when > end:
        return False
    return True


def _increment_period_counter(db: Session, quota_id: uuid.UUID, period_key: str) -> int:
    counter = db.get(QuotaPeriodCounter, (quota_id, period_key))
    if counter is None:
        counter = QuotaPeriodCounter(quota_id=quota_id, period_key=period_key, count=0)
        db.add(counter)
    counter.count = int(counter.count or 0) + 1
    db.flush()
    return counter.count


def record_submission(
    db: Session,
    submission: FormSubmission,
    *,
    now: Optional[datetime] = None,
) -> List[QuotaSnapshot]:
    """Count a newly stored submission against the form's active quotas.

    Periodic quotas bump their counter for the submission's period, the
    others bump their stored ``current_count``. Returns snapshots of the
    quotas that counted the submission.
    """

    if submission.status not in (None, COMPLETED_STATUS):
        return []
    when = as_utc(submission.created_at) or now or now_utc()
    quotas = (
        db.query(Quota)
        .filter(
            Quota.tenant_id == submission.tenant_id,
            Quota.form_id == submission.form_id,
            Quota.is_active.is_(True),
        )
        .all()
    )
    counted: List[QuotaSnapshot] = []
    for quota in quotas:
        if not _within_validity(quota, when):
            continue
        if not matches_criteria(submission.data or {}, quota.criteria):
            continue
        key = get_period_key(quota.reset_period, when) if is_periodic(quota.reset_period) else None
        if key is None:
            quota.current_count = int(quota.current_count or 0) + 1
            count = quota.current_count
        else:
            count = _increment_period_counter(db, quota.id, key)
        counted.append(_snapshot(quota, current_count=count, period_key=key))
    db.flush()
    return counted


__all__ = [
    "QuotaNotFoundError",
    "QuotaSnapshot",
    "count_matching_submissions",
    "create_quota",
    "delete_quota",
    "get_quota",
    "list_quotas",
    "recompute_quota_count",
    "record_submission",
    "update_quota",
]
