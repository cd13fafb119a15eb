from __future__ import annotations

from collections import defaultdict
from datetime import date, timedelta
from decimal import Decimal
from typing import Any
from uuid import UUID

from ..persistence import Persistence
from ..schemas import CENT, TransactionQuery, TransactionType, TrendInterval
from .schedule import js_weekday

UNCATEGORIZED = "Uncategorized"


def _entries(persistence: Persistence, wallet_id: UUID, start: date, end: date) -> list[dict[str, Any]]:
    return persistence.list_transactions(wallet_id, TransactionQuery(startDate=start, endDate=end))


def _category_names(persistence: Persistence, wallet_id: UUID) -> dict[UUID, str]:
    return {row["id"]: row["name"] for row in persistence.list_categories(wallet_id)}


def _money(value: Decimal) -> Decimal:
    return Decimal(value).quantize(CENT)


def period_key(day: date, interval: TrendInterval | str) -> str:
    """Bucket label for a ledger date; weeks start on Sunday."""
    interval = TrendInterval(interval)
    if interval == TrendInterval.weekly:
        return "W" + (day - timedelta(days=js_weekday(day))).isoformat()
    if interval == TrendInterval.monthly:
        return day.strftime("%Y-%m")
    return day.isoformat()


def summary(persistence: Persistence, wallet_id: UUID, start: date, end: date) -> dict[str, Any]:
    names = _category_names(persistence, wallet_id)
    income = Decimal("0")
    expenses = Decimal("0")
    breakdown: dict[str, dict[str, Decimal]] = {}
    rows = _entries(persistence, wallet_id, start, end)
    for row in rows:
        amount = Decimal(row["amount"])
        name = names.get(row["category_id"], UNCATEGORIZED)
        bucket = breakdown.setdefault(name, {"income": Decimal("0"), "expense": Decimal("0")})
        if row["type"] == TransactionType.income.value:
            income += amount
            bucket["income"] += amount
        else:
            expenses += amount
            bucket["expense"] += amount
    return {
        "walletId": wallet_id,
        "startDate": start,
        "endDate": end,
        "income": _money(income),
        "expenses": _money(expenses),
        "net": _money(income - expenses),
        "categoryBreakdown": {
            name: {"income": _money(totals["income"]), "expense": _money(totals["expense"])}
            for name, totals in breakdown.items()
        },
        "transactionCount": len(rows),
    }


def by_category(
    persistence: Persistence,
    wallet_id: UUID,
    start: date,
    end: date,
    transaction_type: TransactionType | None = None,
) -> list[dict[str, Any]]:
    names = _category_names(persistence, wallet_id)
    totals: dict[str, Decimal] = defaultdict(Decimal)
    for row in _entries(persistence, wallet_id, start, end):
        if transaction_type is not None and row["type"] != transaction_type.value:
            continue
        totals[names.get(row["category_id"], UNCATEGORIZED)] += Decimal(row["amount"])
    ranked = sorted(totals.items(), key=lambda item: (-item[1], item[0]))
    return [{"category": name, "amount": _money(amount)} for name, amount in ranked]


def trends(
    persistence: Persistence,
    wallet_id: UUID,
    start: date,
    end: date,
    interval: TrendInterval | str = TrendInterval.monthly,
) -> list[dict[str, Any]]:
    buckets: dict[str, dict[str, Decimal]] = {}
    for row in _entries(persistence, wallet_id, start, end):
        key = period_key(row["date"], interval)
        bucket = buckets.setdefault(key, {"income": Decimal("0"), "expense": Decimal("0")})
        side = "income" if row["type"] == TransactionType.income.value else "expense"
        bucket[side] += Decimal(row["amount"])
    return [
        {
            "date": key,
            "income": _money(bucket["income"]),
            "expense": _money(bucket["expense"]),
            "net": _money(bucket["income"] - bucket["expense"]),
        }
        for key, bucket in sorted(buckets.items())
    ]
