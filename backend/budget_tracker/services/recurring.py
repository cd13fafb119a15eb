from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

import structlog

from ..errors import InvariantViolation
from ..persistence import Persistence, signed_amount
from ..schemas import Frequency, RecurringTransactionCreate
from .schedule import compute_next_run, ensure_day

logger = structlog.get_logger(__name__)

# Fields whose change moves the schedule.
SCHEDULE_FIELDS = ("frequency", "cycle_day_of_month", "cycle_day_of_week")


class ApplyStatus(str, Enum):
    applied = "APPLIED"
    skipped = "SKIPPED"


@dataclass
class ApplyPlan:
    rule_id: UUID
    wallet_id: UUID
    user_id: UUID
    category_id: UUID
    amount: Decimal
    transaction_type: str
    description: str
    applied_on: date
    next_run_at: date | None
    is_active: bool

    @property
    def balance_delta(self) -> Decimal:
        return signed_amount(self.amount, self.transaction_type)

    def rule_changes(self) -> dict[str, Any]:
        return {"last_run_at": self.applied_on, "next_run_at": self.next_run_at, "is_active": self.is_active}

    def check(self, rule: dict[str, Any]) -> None:
        """Raise InvariantViolation unless the rule row reflects a sane advance."""
        if Decimal(self.amount) <= 0:
            raise InvariantViolation(f"rule {self.rule_id} has non-positive amount {self.amount}")
        if ensure_day(rule["last_run_at"]) != self.applied_on:
            raise InvariantViolation(f"rule {self.rule_id} last_run_at was not advanced")
        upcoming = ensure_day(rule["next_run_at"])
        if upcoming is not None and upcoming <= self.applied_on:
            raise InvariantViolation(f"rule {self.rule_id} next run {upcoming} is not after {self.applied_on}")


@dataclass
class ApplyResult:
    status: ApplyStatus
    rule_id: UUID
    transaction: dict[str, Any] | None = None
    rule: dict[str, Any] | None = None

    @property
    def applied(self) -> bool:
        return self.status == ApplyStatus.applied


@dataclass
class RunStats:
    due: int = 0
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    failed_rule_ids: list[UUID] = field(default_factory=list)

    @property
    def processed_count(self) -> int:
        return self.processed


def seed_next_run(
    frequency: Frequency | str,
    start_date: date,
    cycle_day_of_month: int | None = None,
    cycle_day_of_week: int | None = None,
    today: date | datetime | None = None,
) -> date:
    return compute_next_run(frequency, start_date, None, cycle_day_of_month, cycle_day_of_week, today=today)


def new_rule_row(user_id: UUID, payload: RecurringTransactionCreate, today: date | datetime | None = None) -> dict[str, Any]:
    start = payload.startDate or ensure_day(today) or date.today()
    return {
        "wallet_id": payload.walletId,
        "user_id": user_id,
        "name": payload.name,
        "amount": payload.amount,
        "transaction_type": payload.transactionType.value,
        "frequency": payload.frequency.value,
        "category_id": payload.categoryId,
        "description": payload.description,
        "start_date": start,
        "end_date": payload.endDate,
        "is_active": True,
        "cycle_day_of_month": payload.cycleDayOfMonth,
        "cycle_day_of_week": payload.cycleDayOfWeek,
        "last_run_at": None,
        "next_run_at": seed_next_run(
            payload.frequency, start, payload.cycleDayOfMonth, payload.cycleDayOfWeek, today=today
        ),
    }


def reschedule(rule: dict[str, Any], changes: dict[str, Any], today: date | datetime | None = None) -> dict[str, Any]:
    """Complete a rule update with the schedule fields it implies.

    A changed frequency or cycle anchor recomputes ``next_run_at`` from the
    last application (or from the start date when the rule never ran).
    Re-activating a rule without a pending run seeds a fresh one. A new end
    date before the pending run ends the rule.
    """
    merged = {**rule, **changes}
    out = dict(changes)
    schedule_moved = any(name in changes and changes[name] != rule.get(name) for name in SCHEDULE_FIELDS)
    reactivated = changes.get("is_active") is True and (not rule["is_active"] or rule["next_run_at"] is None)

    if schedule_moved or reactivated:
        last = ensure_day(merged["last_run_at"])
        if reactivated and last is not None:
            # Resume from today rather than replaying the gap.
            last = None
        out["next_run_at"] = compute_next_run(
            merged["frequency"],
            merged["start_date"],
            last,
            merged["cycle_day_of_month"],
            merged["cycle_day_of_week"],
            today=today,
        )
        merged["next_run_at"] = out["next_run_at"]

    end = ensure_day(merged["end_date"])
    upcoming = ensure_day(merged["next_run_at"])
    if merged["is_active"] and end is not None and upcoming is not None and upcoming > end:
        out["next_run_at"] = None
        out["is_active"] = False
    return out


def plan_application(rule: dict[str, Any], today: date | datetime | None = None) -> ApplyPlan:
    applied_on = ensure_day(rule["next_run_at"])
    if applied_on is None:
        raise InvariantViolation(f"rule {rule['id']} has no pending run")
    upcoming = compute_next_run(
        rule["frequency"],
        rule["start_date"],
        applied_on,
        rule.get("cycle_day_of_month"),
        rule.get("cycle_day_of_week"),
        today=today,
    )
    if upcoming <= applied_on:
        raise InvariantViolation(f"rule {rule['id']} schedule does not advance past {applied_on}")
    end = ensure_day(rule.get("end_date"))
    should_continue = end is None or end >= upcoming
    return ApplyPlan(
        rule_id=rule["id"],
        wallet_id=rule["wallet_id"],
        user_id=rule["user_id"],
        category_id=rule["category_id"],
        amount=Decimal(rule["amount"]),
        transaction_type=rule["transaction_type"],
        description=rule.get("description") or f"Recurring: {rule['name']}",
        applied_on=applied_on,
        next_run_at=upcoming if should_continue else None,
        is_active=bool(rule["is_active"]) if should_continue else False,
    )


def apply_rule(persistence: Persistence, rule: dict[str, Any], today: date | datetime | None = None) -> ApplyResult:
    plan = plan_application(rule, today=today)
    created = persistence.apply_recurrence_atomically(plan.rule_id, plan.applied_on, plan)
    if created is None:
        return ApplyResult(status=ApplyStatus.skipped, rule_id=plan.rule_id)
    return ApplyResult(
        status=ApplyStatus.applied,
        rule_id=plan.rule_id,
        transaction=created,
        rule={**rule, **plan.rule_changes()},
    )


def find_due_rules(persistence: Persistence, as_of: date | datetime) -> list[dict[str, Any]]:
    return persistence.find_due_rules(ensure_day(as_of))


def run_due_recurrences(persistence: Persistence, today: date | datetime | None = None) -> RunStats:
    as_of = ensure_day(today) or date.today()
    rules = find_due_rules(persistence, as_of)
    stats = RunStats(due=len(rules))
    logger.info("recurring.batch.started", as_of=as_of.isoformat(), due=stats.due, backend=persistence.backend)

    for rule in rules:
        log = logger.bind(rule_id=str(rule["id"]), wallet_id=str(rule["wallet_id"]))
        try:
            result = apply_rule(persistence, rule, today=as_of)
        except Exception:
            stats.failed += 1
            stats.failed_rule_ids.append(rule["id"])
            log.exception("recurring.rule.failed", next_run_at=str(rule["next_run_at"]))
            continue
        if result.applied:
            stats.processed += 1
            log.info(
                "recurring.rule.applied",
                applied_on=str(result.rule["last_run_at"]),
                next_run_at=str(result.rule["next_run_at"]),
                is_active=result.rule["is_active"],
            )
        else:
            stats.skipped += 1
            log.info("recurring.rule.skipped", next_run_at=str(rule["next_run_at"]))

    logger.info(
        "recurring.batch.finished",
        as_of=as_of.isoformat(),
        processed=stats.processed,
        skipped=stats.skipped,
        failed=stats.failed,
    )
    return stats
