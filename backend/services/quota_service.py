from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any

from dateutil.relativedelta import relativedelta
from sqlalchemy import update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from config import settings
from db.models import QuotaAuditEvent, QuotaCounter, User
from services.errors import QuotaValidationError, TemporarilyUnavailableError
from utils.datetime_utils import as_naive_utc, utcnow

logger = logging.getLogger(__name__)

RESOURCE_MEAL_SCANS = "meal_scans"
RESOURCE_AI_CHAT_TOKENS = "ai_chat_tokens"
RESOURCE_TYPES = (RESOURCE_MEAL_SCANS, RESOURCE_AI_CHAT_TOKENS)


@dataclass(frozen=True)
class TierLimits:
    name: str
    meal_scans_per_month: int
    chat_tokens_per_month: int | None
    chat_messages_estimate: int | None


TIER_LIMITS: dict[str, TierLimits] = {
    "free": TierLimits(
        name="Free Plan",
        meal_scans_per_month=5,
        chat_tokens_per_month=None,
        chat_messages_estimate=None,
    ),
    "gold": TierLimits(
        name="Gold Plan",
        meal_scans_per_month=100,
        chat_tokens_per_month=None,
        chat_messages_estimate=100,
    ),
    "platinum": TierLimits(
        name="Platinum Plan",
        meal_scans_per_month=50,
        chat_tokens_per_month=1000,
        chat_messages_estimate=20,
    ),
}


@dataclass
class QuotaStatus:
    allowed: bool
    current: int
    limit: int
    remaining: int
    reset_at: datetime
    resource_type: str
    message: str | None = None
    messages_estimate: int | None = None

    def as_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["reset_at"] = self.reset_at.isoformat()
        return payload


def tier_limits(tier: str | None) -> TierLimits:
    return TIER_LIMITS.get(str(tier or "").strip().lower(), TIER_LIMITS["free"])


def resource_limit(tier: str | None, resource_type: str) -> int:
    """Authoritative limit in raw units; chat budgets are always raw tokens."""
    limits = tier_limits(tier)
    if resource_type == RESOURCE_MEAL_SCANS:
        return limits.meal_scans_per_month
    if resource_type == RESOURCE_AI_CHAT_TOKENS:
        if limits.chat_tokens_per_month is not None:
            return limits.chat_tokens_per_month
        if limits.chat_messages_estimate is not None:
            return limits.chat_messages_estimate * int(settings.CHAT_TOKENS_PER_MESSAGE)
        return 0
    raise QuotaValidationError(f"Unknown resource type: {resource_type}")


def next_reset_at(period_start: datetime) -> datetime:
    # relativedelta clamps the day: Jan 31 + 1 month = Feb 28/29
    return period_start + relativedelta(months=1)


def reset_due(period_start: datetime, now: datetime) -> bool:
    return now >= next_reset_at(period_start)


def messages_estimate(resource_type: str, tokens: int) -> int | None:
    if resource_type != RESOURCE_AI_CHAT_TOKENS:
        return None
    return int(tokens) // int(settings.CHAT_TOKENS_PER_MESSAGE)


def _rejection_message(resource_type: str, limit: int) -> str:
    if resource_type == RESOURCE_MEAL_SCANS:
        return f"You have reached your monthly limit of {limit} meal scans. Upgrade your plan for more scans."
    if resource_type == RESOURCE_AI_CHAT_TOKENS:
        return f"You have reached your monthly limit of {limit} AI chat tokens. Your limit will reset next month."
    return f"You have reached your monthly limit of {limit} for {resource_type}."


def _validate_request(resource_type: str, amount, limit) -> None:
    if not str(resource_type or "").strip():
        raise QuotaValidationError("resource_type is required")
    for label, value in (("amount", amount), ("limit", limit)):
        if isinstance(value, bool) or not isinstance(value, int):
            raise QuotaValidationError(f"{label} must be an integer")
        if value < 0:
            raise QuotaValidationError(f"{label} must not be negative")


def _counter_query(db: Session, user_id: int, resource_type: str):
    return (
        db.query(QuotaCounter)
        .filter(QuotaCounter.user_id == user_id, QuotaCounter.resource_type == resource_type)
        .populate_existing()
    )


def _load_counter(db: Session, user_id: int, resource_type: str, now: datetime) -> QuotaCounter:
    row = _counter_query(db, user_id, resource_type).first()
    if row is not None:
        return row
    db.execute(
        sqlite_insert(QuotaCounter)
        .values(user_id=user_id, resource_type=resource_type, count=0, period_start=now, version=0)
        .on_conflict_do_nothing(index_elements=[QuotaCounter.user_id, QuotaCounter.resource_type])
    )
    db.commit()
    return _counter_query(db, user_id, resource_type).one()


def _audit(
    db: Session,
    *,
    user_id: int,
    resource_type: str,
    event_type: str,
    amount: int,
    limit: int,
    count_after: int,
    details: dict | None = None,
) -> None:
    db.add(
        QuotaAuditEvent(
            user_id=user_id,
            resource_type=resource_type,
            event_type=event_type,
            amount=amount,
            limit_value=limit,
            count_after=count_after,
            details_json=json.dumps(details or {}, ensure_ascii=True),
        )
    )


def _record_rejection(db: Session, *, user_id: int, resource_type: str, amount: int, limit: int, count: int) -> None:
    _audit(
        db,
        user_id=user_id,
        resource_type=resource_type,
        event_type="rejected",
        amount=amount,
        limit=limit,
        count_after=count,
    )
    try:
        db.commit()
    except OperationalError as exc:
        db.rollback()
        logger.warning(f"Quota rejection audit write failed: {exc}")


def check_and_consume(
    db: Session,
    user_id: int,
    resource_type: str,
    amount: int,
    limit: int,
    now: datetime | None = None,
) -> QuotaStatus:
    """
    Check a quota and consume ``amount`` from it as one operation.

    The counter row carries a version; the write only lands when the version is
    still the one that was read, so two racing requests cannot both spend the last
    unit. A request that would cross ``limit`` is rejected whole and leaves the
    stored count untouched. A due monthly reset is applied before the consumption.
    """
    _validate_request(resource_type, amount, limit)
    current_time = as_naive_utc(now or utcnow())
    attempts = int(settings.ATOMIC_RETRY_ATTEMPTS)

    for attempt in range(1, attempts + 1):
        try:
            counter = _load_counter(db, user_id, resource_type, current_time)
            seen_version = int(counter.version or 0)
            period_start = counter.period_start
            count = int(counter.count or 0)
            did_reset = reset_due(period_start, current_time)
            if did_reset:
                period_start = current_time
                count = 0

            # amount == 0 is a status read and is never refused
            allowed = amount == 0 or count + amount <= limit
            final_count = count + amount if allowed else count
            status = QuotaStatus(
                allowed=allowed,
                current=final_count,
                limit=limit,
                remaining=max(limit - final_count, 0) if allowed else 0,
                reset_at=next_reset_at(period_start),
                resource_type=resource_type,
                message=None if allowed else _rejection_message(resource_type, limit),
                messages_estimate=messages_estimate(resource_type, final_count),
            )

            if not allowed and not did_reset:
                logger.info(
                    "Quota rejected user=%s resource=%s amount=%s count=%s limit=%s",
                    user_id, resource_type, amount, count, limit,
                )
                _record_rejection(
                    db, user_id=user_id, resource_type=resource_type, amount=amount, limit=limit, count=count
                )
                return status
            if amount == 0 and not did_reset:
                db.rollback()
                return status

            values: dict[str, Any] = {"count": final_count, "version": seen_version + 1}
            if did_reset:
                values["period_start"] = period_start
            result = db.execute(
                update(QuotaCounter)
                .where(QuotaCounter.id == counter.id, QuotaCounter.version == seen_version)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                db.rollback()
                logger.info(
                    "Quota counter user=%s resource=%s changed underneath (attempt %s/%s)",
                    user_id, resource_type, attempt, attempts,
                )
                continue

            if did_reset:
                logger.info("Quota period reset user=%s resource=%s", user_id, resource_type)
                _audit(
                    db,
                    user_id=user_id,
                    resource_type=resource_type,
                    event_type="reset",
                    amount=amount,
                    limit=limit,
                    count_after=final_count,
                    details={"previous_period_start": counter.period_start.isoformat()},
                )
            if not allowed:
                _audit(
                    db,
                    user_id=user_id,
                    resource_type=resource_type,
                    event_type="rejected",
                    amount=amount,
                    limit=limit,
                    count_after=final_count,
                )
            db.commit()
            return status
        except OperationalError as exc:
            db.rollback()
            logger.warning(f"Quota update attempt {attempt}/{attempts} hit contention: {exc}")

    raise TemporarilyUnavailableError(f"{resource_type} quota", attempts)


def consume_for_user(
    db: Session,
    user: User,
    resource_type: str,
    amount: int,
    now: datetime | None = None,
) -> QuotaStatus:
    limit = resource_limit(user.subscription_tier, resource_type)
    status = check_and_consume(db, user.id, resource_type, amount, limit, now=now)
    if not status.allowed and limit == 0:
        plan_name = tier_limits(user.subscription_tier).name
        status.message = f"This feature is not available on the {plan_name}. Please upgrade to Gold or Platinum."
    return status


def get_usage_stats(db: Session, user: User, now: datetime | None = None) -> dict[str, Any]:
    limits = tier_limits(user.subscription_tier)
    resources: dict[str, Any] = {}
    for resource_type in RESOURCE_TYPES:
        limit = resource_limit(user.subscription_tier, resource_type)
        status = check_and_consume(db, user.id, resource_type, 0, limit, now=now)
        payload = status.as_dict()
        payload["available"] = limit > 0
        resources[resource_type] = payload
    if limits.chat_messages_estimate is not None:
        resources[RESOURCE_AI_CHAT_TOKENS]["messages_limit_estimate"] = limits.chat_messages_estimate
    return {
        "subscription_tier": str(user.subscription_tier or "free"),
        "plan_name": limits.name,
        "resources": resources,
    }
