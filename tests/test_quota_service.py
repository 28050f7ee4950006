"""Tests for quota recompute, live period counters and submission counting."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import pytest
from pydantic import ValidationError
from sqlalchemy.orm import Session

from models.quota import FormSubmission, Quota, QuotaPeriodCounter
from schemas.api.quotas import QuotaCreateRequest, QuotaUpdateRequest
from services import quota_service

TENANT = "tenant-1"
FORM = "form-42"
NOW = datetime(2025, 6, 15, 15, 0, tzinfo=timezone.utc)


def _submission(
    db: Session,
    data: Dict[str, Any],
    created_at: datetime,
    *,
    status: Optional[str] = "completed",
    tenant_id: str = TENANT,
    form_id: str = FORM,
) -> FormSubmission:
    submission = FormSubmission(tenant_id=tenant_id, form_id=form_id, data=data, status=status, created_at=created_at)
    db.add(submission)
    db.flush()
    return submission


def _create(db: Session, **overrides: Any) -> Quota:
    payload: Dict[str, Any] = {"form_id": FORM, "label": "Women 18+", "limit_count": 10}
    payload.update(overrides)
    return quota_service.create_quota(db, tenant_id=TENANT, request=QuotaCreateRequest(**payload), now=NOW)


def test_daily_recompute_counts_only_today(db_session: Session) -> None:
    for hour in range(5):
        _submission(db_session, {"gender": "female"}, NOW.replace(hour=hour + 1))
    for hour in range(3):
        _submission(db_session, {"gender": "female"}, NOW - timedelta(days=1, hours=hour))
    _submission(db_session, {"gender": "male"}, NOW.replace(hour=2))

    quota = _create(db_session, criteria={"gender": "female"}, reset_period="daily")

    assert quota.current_count == 5
    assert quota_service.recompute_quota_count(db_session, quota, now=NOW) == 5


def test_recompute_without_period_counts_full_history(db_session: Session) -> None:
    for days in range(4):
        _submission(db_session, {"age": 30}, NOW - timedelta(days=days * 40))
    _submission(db_session, {"age": 12}, NOW)

    quota = _create(db_session, criteria={"age": ">=18"})

    assert quota.current_count == 4


def test_recompute_skips_incomplete_submissions_and_other_forms(db_session: Session) -> None:
    _submission(db_session, {}, NOW, status="completed")
    _submission(db_session, {}, NOW, status=None)
    _submission(db_session, {}, NOW, status="partial")
    _submission(db_session, {}, NOW, form_id="other-form")
    _submission(db_session, {}, NOW, tenant_id="tenant-2")

    quota = _create(db_session)

    assert quota.current_count == 2


def test_weekly_and_monthly_windows(db_session: Session) -> None:
    # NOW is Sunday 2025-06-15, the last day of ISO week 24.
    _submission(db_session, {}, datetime(2025, 6, 9, 8, tzinfo=timezone.utc))
    _submission(db_session, {}, datetime(2025, 6, 8, 8, tzinfo=timezone.utc))
    _submission(db_session, {}, datetime(2025, 6, 1, 8, tzinfo=timezone.utc))
    _submission(db_session, {}, datetime(2025, 5, 31, 8, tzinfo=timezone.utc))

    weekly = _create(db_session, reset_period="weekly")
    monthly = _create(db_session, label="Monthly", reset_period="monthly")

    assert weekly.current_count == 1
    assert monthly.current_count == 3


def test_recompute_is_idempotent(db_session: Session) -> None:
    _submission(db_session, {"q": "a"}, NOW)
    quota = _create(db_session, criteria=[{"question": "q", "answer": "a"}], reset_period="daily")

    first = quota_service.recompute_quota_count(db_session, quota, now=NOW)
    second = quota_service.recompute_quota_count(db_session, quota, now=NOW)

    assert first == second == 1


def test_list_quotas_overlays_live_counters(db_session: Session) -> None:
    _submission(db_session, {}, NOW)
    _submission(db_session, {}, NOW)
    daily = _create(db_session, label="Daily", reset_period="daily")
    weekly = _create(db_session, label="Weekly", reset_period="weekly")
    lifetime = _create(db_session, label="Lifetime")
    db_session.add(QuotaPeriodCounter(quota_id=daily.id, period_key="daily:2025-06-15", count=7))
    db_session.add(QuotaPeriodCounter(quota_id=daily.id, period_key="daily:2025-06-14", count=99))
    db_session.flush()

    snapshots = {item.label: item for item in quota_service.list_quotas(db_session, tenant_id=TENANT, form_id=FORM, now=NOW)}

    assert snapshots["Daily"].current_count == 7
    assert snapshots["Daily"].period_key == "daily:2025-06-15"
    assert snapshots["Weekly"].current_count == 0
    assert snapshots["Lifetime"].current_count == 2
    assert snapshots["Lifetime"].period_key is None
    # Display overlay never touches the stored counts.
    assert daily.current_count == 2
    assert weekly.current_count == 2


def test_list_quotas_is_tenant_scoped(db_session: Session) -> None:
    _create(db_session)
    assert quota_service.list_quotas(db_session, tenant_id="tenant-2", form_id=FORM, now=NOW) == []


def test_update_quota_recomputes(db_session: Session) -> None:
    _submission(db_session, {"gender": "female"}, NOW)
    _submission(db_session, {"gender": "male"}, NOW)
    quota = _create(db_session, criteria={"gender": "female"})
    assert quota.current_count == 1

    updated = quota_service.update_quota(
        db_session,
        tenant_id=TENANT,
        quota_id=quota.id,
        request=QuotaUpdateRequest(criteria=None, limit_count=1),
        now=NOW,
    )

    assert updated.current_count == 2
    assert updated.limit_count == 1


def test_update_rejects_inverted_window(db_session: Session) -> None:
    quota = _create(db_session, start_date=NOW)
    with pytest.raises(ValueError):
        quota_service.update_quota(
            db_session,
            tenant_id=TENANT,
            quota_id=quota.id,
            request=QuotaUpdateRequest(end_date=NOW - timedelta(days=1)),
            now=NOW,
        )


def test_delete_quota_removes_counters(db_session: Session) -> None:
    quota = _create(db_session, reset_period="daily")
    db_session.add(QuotaPeriodCounter(quota_id=quota.id, period_key="daily:2025-06-15", count=3))
    db_session.flush()

    quota_service.delete_quota(db_session, tenant_id=TENANT, quota_id=quota.id)

    assert db_session.query(QuotaPeriodCounter).count() == 0
    with pytest.raises(quota_service.QuotaNotFoundError):
        quota_service.get_quota(db_session, tenant_id=TENANT, quota_id=quota.id)


def test_create_request_validation() -> None:
    with pytest.raises(ValidationError):
        QuotaCreateRequest(form_id=FORM, label="x", limit_count=-1)
    with pytest.raises(ValidationError):
        QuotaCreateRequest(form_id=FORM, label="x", limit_count=5, reset_period="yearly")
    with pytest.raises(ValidationError):
        QuotaCreateRequest(form_id=FORM, label="x", limit_count=5, start_date=NOW, end_date=NOW - timedelta(days=1))
    assert QuotaCreateRequest(form_id=42, label="x", limit_count=5, reset_period=None).reset_period == "never"


def test_record_submission_updates_counters(db_session: Session) -> None:
    daily = _create(db_session, label="Daily", criteria={"gender": "female"}, reset_period="daily", limit_count=2)
    lifetime = _create(db_session, label="Lifetime", limit_count=5)

    first = _submission(db_session, {"gender": "female"}, NOW)
    counted = quota_service.record_submission(db_session, first, now=NOW)
    second = _submission(db_session, {"gender": "female"}, NOW + timedelta(minutes=5))
    counted = quota_service.record_submission(db_session, second, now=NOW)

    by_label = {item.label: item for item in counted}
    assert by_label["Daily"].current_count == 2
    assert by_label["Daily"].is_full is True
    assert by_label["Lifetime"].current_count == 2
    counter = db_session.get(QuotaPeriodCounter, (daily.id, "daily:2025-06-15"))
    assert counter is not None and counter.count == 2
    assert lifetime.current_count == 2


def test_record_submission_respects_filters(db_session: Session) -> None:
    _create(db_session, label="Female", criteria={"gender": "female"})
    _create(db_session, label="Inactive", is_active=False)
    _create(db_session, label="Expired", end_date=NOW - timedelta(days=1))

    male = _submission(db_session, {"gender": "male"}, NOW)
    assert quota_service.record_submission(db_session, male, now=NOW) == []

    partial = _submission(db_session, {"gender": "female"}, NOW, status="partial")
    assert quota_service.record_submission(db_session, partial, now=NOW) == []

    female = _submission(db_session, {"gender": "female"}, NOW)
    assert [item.label for item in quota_service.record_submission(db_session, female, now=NOW)] == ["Female"]


def test_snapshot_as_dict_serializes_dates(db_session: Session) -> None:
    quota = _create(db_session, start_date=NOW)
    snapshot = quota_service.list_quotas(db_session, tenant_id=TENANT, form_id=FORM, now=NOW)[0]
    payload = snapshot.as_dict()
    assert payload["id"] == str(quota.id)
    assert payload["start_date"] == NOW.isoformat()
    assert payload["is_full"] is False
