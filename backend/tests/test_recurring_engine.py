import threading
from datetime import date
from decimal import Decimal
from uuid import UUID

import pytest

from budget_tracker.errors import InvariantViolation, NotFoundError, TransientStorageError
from budget_tracker.persistence import InMemoryPersistence
from budget_tracker.schemas import CategoryCreate, TransactionCreate, WalletCreate
from budget_tracker.services.recurring import (
    ApplyStatus,
    apply_rule,
    find_due_rules,
    reschedule,
    run_due_recurrences,
)
from budget_tracker.store import store

OWNER = UUID("00000000-0000-0000-0000-0000000000aa")

persistence = InMemoryPersistence()


def _wallet(balance: str = "100.00", name: str = "Main") -> tuple[dict, dict]:
    wallet = persistence.create_wallet(OWNER, WalletCreate(name=name))
    bills = persistence.create_category(wallet["id"], CategoryCreate(name="Bills", type="EXPENSE"))
    if Decimal(balance) > 0:
        salary = persistence.create_category(wallet["id"], CategoryCreate(name="Salary", type="INCOME"))
        persistence.create_transaction(
            OWNER,
            TransactionCreate(
                walletId=wallet["id"],
                type="INCOME",
                amount=Decimal(balance),
                categoryId=salary["id"],
                occurredOn=date(2024, 6, 1),
            ),
        )
    return wallet, bills


def _rule(wallet: dict, category: dict, **overrides) -> dict:
    row = {
        "wallet_id": wallet["id"],
        "user_id": OWNER,
        "name": "Rent",
        "amount": Decimal("10.00"),
        "transaction_type": "EXPENSE",
        "frequency": "MONTHLY",
        "category_id": category["id"],
        "description": None,
        "start_date": date(2024, 1, 15),
        "end_date": None,
        "is_active": True,
        "cycle_day_of_month": None,
        "cycle_day_of_week": None,
        "last_run_at": None,
        "next_run_at": date(2024, 6, 15),
    }
    row.update(overrides)
    return persistence.create_rule(row)


def _balance(wallet: dict) -> Decimal:
    return persistence.get_wallet(wallet["id"])["balance"]


def test_expense_rule_debits_wallet_and_links_entry(today: date) -> None:
    wallet, bills = _wallet()
    rule = _rule(wallet, bills)

    result = apply_rule(persistence, rule, today=today)

    assert result.status == ApplyStatus.applied
    assert _balance(wallet) == Decimal("90.00")
    linked = [t for t in persistence.list_transactions(wallet["id"]) if t["recurring_transaction_id"] == rule["id"]]
    assert len(linked) == 1
    assert linked[0]["amount"] == Decimal("10.00")
    assert linked[0]["type"] == "EXPENSE"
    assert linked[0]["date"] == today
    assert linked[0]["description"] == "Recurring: Rent"
    stored = persistence.get_rule(rule["id"])
    assert stored["last_run_at"] == today
    assert stored["next_run_at"] == date(2024, 7, 15)
    assert stored["is_active"] is True


def test_income_rule_credits_wallet_and_keeps_description(today: date) -> None:
    wallet, _ = _wallet()
    salary = persistence.create_category(wallet["id"], CategoryCreate(name="Bonus", type="INCOME"))
    rule = _rule(wallet, salary, transaction_type="INCOME", amount=Decimal("25.50"), description="Quarterly bonus")

    apply_rule(persistence, rule, today=today)

    assert _balance(wallet) == Decimal("125.50")
    entry = persistence.list_transactions(wallet["id"])[0]
    assert entry["description"] == "Quarterly bonus"


def test_rule_ends_when_next_run_passes_end_date(today: date) -> None:
    wallet, bills = _wallet()
    rule = _rule(wallet, bills, end_date=date(2024, 7, 1))

    apply_rule(persistence, rule, today=today)

    stored = persistence.get_rule(rule["id"])
    assert stored["is_active"] is False
    assert stored["next_run_at"] is None
    assert stored["last_run_at"] == today
    assert find_due_rules(persistence, date(2024, 7, 20)) == []


def test_rule_continues_when_next_run_equals_end_date(today: date) -> None:
    wallet, bills = _wallet()
    rule = _rule(wallet, bills, end_date=date(2024, 7, 15))

    apply_rule(persistence, rule, today=today)

    stored = persistence.get_rule(rule["id"])
    assert stored["is_active"] is True
    assert stored["next_run_at"] == date(2024, 7, 15)


def test_second_apply_with_stale_rule_is_skipped(today: date) -> None:
    wallet, bills = _wallet()
    rule = _rule(wallet, bills)

    first = apply_rule(persistence, rule, today=today)
    second = apply_rule(persistence, rule, today=today)

    assert first.status == ApplyStatus.applied
    assert second.status == ApplyStatus.skipped
    assert _balance(wallet) == Decimal("90.00")
    assert len(store.transactions) == 2


def test_rule_deactivated_after_scan_is_skipped(today: date) -> None:
    wallet, bills = _wallet()
    rule = _rule(wallet, bills)
    due = find_due_rules(persistence, today)
    persistence.update_rule(rule["id"], {"is_active": False})

    result = apply_rule(persistence, due[0], today=today)

    assert result.status == ApplyStatus.skipped
    assert _balance(wallet) == Decimal("100.00")


def test_concurrent_applications_post_once(today: date) -> None:
    wallet, bills = _wallet()
    _rule(wallet, bills)
    due = find_due_rules(persistence, today)
    barrier = threading.Barrier(2)
    statuses: list[ApplyStatus] = []

    def worker() -> None:
        barrier.wait()
        statuses.append(apply_rule(persistence, due[0], today=today).status)

    threads = [threading.Thread(target=worker) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(statuses) == [ApplyStatus.applied, ApplyStatus.skipped]
    assert _balance(wallet) == Decimal("90.00")


def test_failure_mid_application_leaves_no_trace(monkeypatch, today: date) -> None:
    wallet, bills = _wallet()
    rule = _rule(wallet, bills)
    entries_before = len(store.transactions)

    def broken(self, wallet_id, delta):
        raise TransientStorageError("balance update failed")

    monkeypatch.setattr(InMemoryPersistence, "_increment_balance", broken)
    with pytest.raises(TransientStorageError):
        apply_rule(persistence, rule, today=today)
    monkeypatch.undo()

    assert len(store.transactions) == entries_before
    assert _balance(wallet) == Decimal("100.00")
    stored = persistence.get_rule(rule["id"])
    assert stored["next_run_at"] == today
    assert stored["last_run_at"] is None

    assert apply_rule(persistence, stored, today=today).status == ApplyStatus.applied
    assert _balance(wallet) == Decimal("90.00")


def test_missing_category_rolls_back(today: date) -> None:
    wallet, bills = _wallet()
    rule = _rule(wallet, bills)
    del store.categories[bills["id"]]

    with pytest.raises(NotFoundError):
        apply_rule(persistence, rule, today=today)

    assert persistence.get_rule(rule["id"])["next_run_at"] == today
    assert _balance(wallet) == Decimal("100.00")


def test_non_positive_amount_is_an_invariant_violation(today: date) -> None:
    wallet, bills = _wallet()
    rule = _rule(wallet, bills, amount=Decimal("0.00"))

    with pytest.raises(InvariantViolation):
        apply_rule(persistence, rule, today=today)

    assert _balance(wallet) == Decimal("100.00")
    assert persistence.get_rule(rule["id"])["next_run_at"] == today


def test_scanner_applies_due_predicate(today: date) -> None:
    wallet, bills = _wallet()
    earlier = _rule(wallet, bills, name="Earlier", next_run_at=date(2024, 6, 10))
    due = _rule(wallet, bills, name="Due")
    _rule(wallet, bills, name="Tomorrow", next_run_at=date(2024, 6, 16))
    _rule(wallet, bills, name="Paused", is_active=False)
    _rule(wallet, bills, name="Not started", start_date=date(2024, 6, 20))
    _rule(wallet, bills, name="Ended", end_date=date(2024, 6, 14))
    _rule(wallet, bills, name="Exhausted", next_run_at=None)

    found = find_due_rules(persistence, today)

    assert [r["id"] for r in found] == [earlier["id"], due["id"]]


def test_batch_isolates_failing_rule_and_retries_it(monkeypatch, today: date) -> None:
    good_wallet, good_bills = _wallet(name="Good")
    bad_wallet, bad_bills = _wallet(name="Bad")
    good = _rule(good_wallet, good_bills)
    bad = _rule(bad_wallet, bad_bills)
    original = InMemoryPersistence._increment_balance

    def flaky(self, wallet_id, delta):
        if wallet_id == bad_wallet["id"]:
            raise TransientStorageError("wallet row locked")
        return original(self, wallet_id, delta)

    monkeypatch.setattr(InMemoryPersistence, "_increment_balance", flaky)
    stats = run_due_recurrences(persistence, today=today)
    monkeypatch.undo()

    assert stats.processed_count == 1
    assert stats.failed == 1
    assert stats.failed_rule_ids == [bad["id"]]
    assert persistence.get_rule(good["id"])["next_run_at"] == date(2024, 7, 15)
    assert persistence.get_rule(bad["id"])["next_run_at"] == today
    assert _balance(bad_wallet) == Decimal("100.00")

    retry = run_due_recurrences(persistence, today=today)
    assert retry.processed_count == 1
    assert _balance(bad_wallet) == Decimal("90.00")


def test_overdue_rule_advances_one_period_per_run(today: date) -> None:
    wallet, bills = _wallet()
    rule = _rule(wallet, bills, next_run_at=date(2024, 4, 15))

    first = run_due_recurrences(persistence, today=today)
    assert first.processed_count == 1
    assert persistence.get_rule(rule["id"])["next_run_at"] == date(2024, 5, 15)

    second = run_due_recurrences(persistence, today=today)
    third = run_due_recurrences(persistence, today=today)
    fourth = run_due_recurrences(persistence, today=today)
    assert (second.processed_count, third.processed_count, fourth.processed_count) == (1, 1, 0)
    assert _balance(wallet) == Decimal("70.00")


def test_balance_matches_ledger_after_batch(today: date) -> None:
    wallet, bills = _wallet()
    _rule(wallet, bills, amount=Decimal("12.34"))
    _rule(wallet, bills, amount=Decimal("0.66"), frequency="WEEKLY")

    stats = run_due_recurrences(persistence, today=today)

    assert stats.processed_count == 2
    assert _balance(wallet) == Decimal("87.00")
    assert persistence.ledger_balance(wallet["id"]) == _balance(wallet)


def test_reschedule_on_frequency_change_uses_last_run(today: date) -> None:
    wallet, bills = _wallet()
    rule = _rule(wallet, bills, last_run_at=date(2024, 6, 1), next_run_at=date(2024, 7, 1))

    changes = reschedule(rule, {"frequency": "WEEKLY"}, today=today)

    assert changes["next_run_at"] == date(2024, 6, 8)


def test_reschedule_reactivation_reseeds_from_today(today: date) -> None:
    wallet, bills = _wallet()
    rule = _rule(wallet, bills, is_active=False, last_run_at=date(2024, 3, 15), next_run_at=None)

    changes = reschedule(rule, {"is_active": True}, today=today)

    assert changes["is_active"] is True
    assert changes["next_run_at"] == date(2024, 7, 15)


def test_reschedule_end_date_before_pending_run_ends_rule(today: date) -> None:
    wallet, bills = _wallet()
    rule = _rule(wallet, bills, next_run_at=date(2024, 7, 15))

    changes = reschedule(rule, {"end_date": date(2024, 7, 1)}, today=today)

    assert changes == {"end_date": date(2024, 7, 1), "next_run_at": None, "is_active": False}


def test_reschedule_leaves_unrelated_edits_alone(today: date) -> None:
    wallet, bills = _wallet()
    rule = _rule(wallet, bills)

    assert reschedule(rule, {"name": "Flat rent"}, today=today) == {"name": "Flat rent"}


def test_batch_keeps_going_when_schedule_overflows_calendar() -> None:
    wallet, bills = _wallet()
    start = date(9999, 1, 1)
    yearly = _rule(wallet, bills, name="Yearly", frequency="YEARLY", start_date=start, next_run_at=date(9999, 3, 1))
    daily = _rule(wallet, bills, name="Daily", frequency="DAILY", start_date=start, next_run_at=date(9999, 6, 1))

    stats = run_due_recurrences(persistence, today=date(9999, 6, 1))

    assert stats.due == 2
    assert stats.processed_count == 1
    assert stats.failed_rule_ids == [yearly["id"]]
    assert persistence.get_rule(daily["id"])["next_run_at"] == date(9999, 6, 2)
    assert persistence.get_rule(yearly["id"])["next_run_at"] == date(9999, 3, 1)
    assert persistence.get_rule(yearly["id"])["last_run_at"] is None
    assert _balance(wallet) == Decimal("90.00")


def test_batch_isolates_unexpected_error_from_one_rule(monkeypatch, today: date) -> None:
    good_wallet, good_bills = _wallet(name="Good")
    bad_wallet, bad_bills = _wallet(name="Bad")
    bad = _rule(bad_wallet, bad_bills, next_run_at=date(2024, 6, 1))
    good = _rule(good_wallet, good_bills)
    original = InMemoryPersistence._increment_balance

    def broken(self, wallet_id, delta):
        if wallet_id == bad_wallet["id"]:
            raise RuntimeError("unexpected")
        return original(self, wallet_id, delta)

    monkeypatch.setattr(InMemoryPersistence, "_increment_balance", broken)
    stats = run_due_recurrences(persistence, today=today)
    monkeypatch.undo()

    assert (stats.processed_count, stats.failed) == (1, 1)
    assert stats.failed_rule_ids == [bad["id"]]
    assert persistence.get_rule(good["id"])["last_run_at"] == today
    assert _balance(good_wallet) == Decimal("90.00")
    assert _balance(bad_wallet) == Decimal("100.00")
    assert persistence.get_rule(bad["id"])["next_run_at"] == date(2024, 6, 1)
