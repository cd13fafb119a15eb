from datetime import date
from decimal import Decimal
from uuid import UUID, uuid4

import pytest

from budget_tracker.errors import AccessDeniedError, ConflictError, NotFoundError, TransientStorageError
from budget_tracker.persistence import SqlPersistence
from budget_tracker.schemas import (
    CategoryCreate,
    CategoryUpdate,
    TransactionCreate,
    TransactionQuery,
    TransactionUpdate,
    WalletCreate,
    WalletShareCreate,
    WalletUpdate,
)
from budget_tracker.services.recurring import ApplyStatus, apply_rule, find_due_rules, run_due_recurrences

OWNER = UUID("00000000-0000-0000-0000-0000000000bb")


@pytest.fixture
def db(tmp_path) -> SqlPersistence:
    persistence = SqlPersistence(f"sqlite:///{tmp_path / 'ledger.db'}")
    persistence.create_schema()
    return persistence


def _funded_wallet(db: SqlPersistence) -> tuple[dict, dict]:
    wallet = db.create_wallet(OWNER, WalletCreate(name="Main", currency="eur"))
    bills = db.create_category(wallet["id"], CategoryCreate(name="Bills", type="EXPENSE"))
    salary = db.create_category(wallet["id"], CategoryCreate(name="Salary", type="INCOME"))
    db.create_transaction(
        OWNER,
        TransactionCreate(
            walletId=wallet["id"],
            type="INCOME",
            amount=Decimal("100.00"),
            categoryId=salary["id"],
            occurredOn=date(2024, 6, 1),
        ),
    )
    return wallet, bills


def _rule(db: SqlPersistence, wallet: dict, category: dict, **overrides) -> dict:
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
    return db.create_rule(row)


def test_wallet_starts_empty_and_tracks_manual_entries(db: SqlPersistence) -> None:
    wallet = db.create_wallet(OWNER, WalletCreate(name="Cash"))
    assert wallet["balance"] == Decimal("0")
    assert wallet["currency"] == "USD"

    food = db.create_category(wallet["id"], CategoryCreate(name="Food", type="EXPENSE"))
    entry = db.create_transaction(
        OWNER,
        TransactionCreate(walletId=wallet["id"], type="EXPENSE", amount=Decimal("12.50"), categoryId=food["id"]),
    )
    assert db.get_wallet(wallet["id"])["balance"] == Decimal("-12.50")

    db.update_transaction(entry["id"], TransactionUpdate(type="INCOME", amount=Decimal("20.00")))
    assert db.get_wallet(wallet["id"])["balance"] == Decimal("20.00")

    db.delete_transaction(entry["id"])
    assert db.get_wallet(wallet["id"])["balance"] == Decimal("0")
    assert db.list_transactions(wallet["id"]) == []


def test_duplicate_category_conflicts(db: SqlPersistence) -> None:
    wallet = db.create_wallet(OWNER, WalletCreate(name="Cash"))
    db.create_category(wallet["id"], CategoryCreate(name="Food", type="EXPENSE"))
    db.create_category(wallet["id"], CategoryCreate(name="Food", type="INCOME"))

    with pytest.raises(ConflictError):
        db.create_category(wallet["id"], CategoryCreate(name="Food", type="EXPENSE"))
    assert len(db.list_categories(wallet["id"])) == 2


def test_shared_wallet_access(db: SqlPersistence) -> None:
    wallet = db.create_wallet(OWNER, WalletCreate(name="Family"))
    guest = uuid4()
    db.share_wallet(wallet["id"], WalletShareCreate(userId=guest, permission="view"))

    assert [w["id"] for w in db.list_wallets(guest)] == [wallet["id"]]
    assert db.check_wallet_access(guest, wallet["id"])["id"] == wallet["id"]
    with pytest.raises(ConflictError):
        db.share_wallet(wallet["id"], WalletShareCreate(userId=guest))


def test_apply_rule_commits_all_steps(db: SqlPersistence) -> None:
    wallet, bills = _funded_wallet(db)
    rule = _rule(db, wallet, bills)

    result = apply_rule(db, rule, today=date(2024, 6, 15))

    assert result.status == ApplyStatus.applied
    assert db.get_wallet(wallet["id"])["balance"] == Decimal("90.00")
    linked = [t for t in db.list_transactions(wallet["id"]) if t["recurring_transaction_id"] == rule["id"]]
    assert len(linked) == 1
    assert linked[0]["date"] == date(2024, 6, 15)
    assert linked[0]["description"] == "Recurring: Rent"
    stored = db.get_rule(rule["id"])
    assert stored["last_run_at"] == date(2024, 6, 15)
    assert stored["next_run_at"] == date(2024, 7, 15)
    assert db.ledger_balance(wallet["id"]) == Decimal("90.00")


def test_claim_rejects_stale_rule(db: SqlPersistence) -> None:
    wallet, bills = _funded_wallet(db)
    rule = _rule(db, wallet, bills)

    apply_rule(db, rule, today=date(2024, 6, 15))
    again = apply_rule(db, rule, today=date(2024, 6, 15))

    assert again.status == ApplyStatus.skipped
    assert db.get_wallet(wallet["id"])["balance"] == Decimal("90.00")


def test_failed_balance_update_rolls_back_everything(db: SqlPersistence, monkeypatch) -> None:
    wallet, bills = _funded_wallet(db)
    rule = _rule(db, wallet, bills)
    entries_before = len(db.list_transactions(wallet["id"]))

    def broken(self, conn, wallet_id, delta):
        raise TransientStorageError("balance update failed")

    monkeypatch.setattr(SqlPersistence, "_increment_balance", broken)
    with pytest.raises(TransientStorageError):
        apply_rule(db, rule, today=date(2024, 6, 15))
    monkeypatch.undo()

    assert len(db.list_transactions(wallet["id"])) == entries_before
    assert db.get_wallet(wallet["id"])["balance"] == Decimal("100.00")
    stored = db.get_rule(rule["id"])
    assert stored["next_run_at"] == date(2024, 6, 15)
    assert stored["last_run_at"] is None
    assert stored["is_active"] is True


def test_due_scan_and_batch(db: SqlPersistence) -> None:
    wallet, bills = _funded_wallet(db)
    earlier = _rule(db, wallet, bills, name="Earlier", next_run_at=date(2024, 6, 1))
    due = _rule(db, wallet, bills, name="Due")
    _rule(db, wallet, bills, name="Paused", is_active=False)
    _rule(db, wallet, bills, name="Ended", end_date=date(2024, 6, 10))
    _rule(db, wallet, bills, name="Later", next_run_at=date(2024, 6, 20))

    found = find_due_rules(db, date(2024, 6, 15))
    assert [r["id"] for r in found] == [earlier["id"], due["id"]]

    stats = run_due_recurrences(db, today=date(2024, 6, 15))
    assert stats.processed_count == 2
    assert db.get_wallet(wallet["id"])["balance"] == Decimal("80.00")
    assert db.ledger_balance(wallet["id"]) == Decimal("80.00")


def test_delete_rule_keeps_generated_entries(db: SqlPersistence) -> None:
    wallet, bills = _funded_wallet(db)
    rule = _rule(db, wallet, bills)
    applied = apply_rule(db, rule, today=date(2024, 6, 15))

    db.delete_rule(rule["id"])

    entry = db.get_transaction(applied.transaction["id"])
    assert entry["recurring_transaction_id"] is None
    with pytest.raises(NotFoundError):
        db.get_rule(rule["id"])
    assert db.get_wallet(wallet["id"])["balance"] == Decimal("90.00")


def test_rule_needs_category_from_same_wallet(db: SqlPersistence) -> None:
    wallet, _ = _funded_wallet(db)
    other = db.create_wallet(OWNER, WalletCreate(name="Other"))
    foreign = db.create_category(other["id"], CategoryCreate(name="Bills", type="EXPENSE"))

    with pytest.raises(NotFoundError):
        _rule(db, wallet, foreign)


def test_category_update_conflicts_and_delete_guard(db: SqlPersistence) -> None:
    wallet, bills = _funded_wallet(db)
    fuel = db.create_category(wallet["id"], CategoryCreate(name="Fuel", type="EXPENSE"))

    assert db.update_category(fuel["id"], CategoryUpdate(name="Petrol"))["name"] == "Petrol"
    with pytest.raises(ConflictError):
        db.update_category(fuel["id"], CategoryUpdate(name="Bills"))
    assert db.get_category(fuel["id"])["name"] == "Petrol"

    _rule(db, wallet, bills)
    with pytest.raises(ConflictError):
        db.delete_category(bills["id"])
    db.delete_category(fuel["id"])
    with pytest.raises(NotFoundError):
        db.get_category(fuel["id"])
    with pytest.raises(NotFoundError):
        db.delete_category(fuel["id"])


def test_wallet_update_and_cascading_delete(db: SqlPersistence) -> None:
    wallet, bills = _funded_wallet(db)
    _rule(db, wallet, bills)
    guest = uuid4()
    db.share_wallet(wallet["id"], WalletShareCreate(userId=guest))

    updated = db.update_wallet(wallet["id"], WalletUpdate(name="Household"))
    assert (updated["name"], updated["currency"], updated["balance"]) == ("Household", "EUR", Decimal("100.00"))

    db.delete_wallet(wallet["id"])
    with pytest.raises(NotFoundError):
        db.get_wallet(wallet["id"])
    assert db.list_transactions(wallet["id"]) == []
    assert db.list_rules(wallet["id"]) == []
    assert db.list_categories(wallet["id"]) == []
    assert db.list_wallets(guest) == []
    with pytest.raises(NotFoundError):
        db.delete_wallet(wallet["id"])


def test_remove_share_revokes_access(db: SqlPersistence) -> None:
    wallet = db.create_wallet(OWNER, WalletCreate(name="Family"))
    guest = uuid4()
    db.share_wallet(wallet["id"], WalletShareCreate(userId=guest))

    db.remove_share(wallet["id"], guest)

    with pytest.raises(AccessDeniedError):
        db.check_wallet_access(guest, wallet["id"])
    with pytest.raises(NotFoundError):
        db.remove_share(wallet["id"], guest)


def test_transaction_query_filters_and_keyset_pages(db: SqlPersistence) -> None:
    wallet, bills = _funded_wallet(db)
    spent = [
        db.create_transaction(
            OWNER,
            TransactionCreate(
                walletId=wallet["id"],
                type="EXPENSE",
                amount=Decimal("1.00"),
                categoryId=bills["id"],
                occurredOn=date(2024, 6, day),
            ),
        )["id"]
        for day in (2, 3, 4)
    ]

    expenses = db.list_transactions(wallet["id"], TransactionQuery(type="expense"))
    assert [row["id"] for row in expenses] == spent[::-1]
    june_3 = db.list_transactions(wallet["id"], TransactionQuery(startDate=date(2024, 6, 3), endDate=date(2024, 6, 3)))
    assert [row["id"] for row in june_3] == [spent[1]]

    page = db.list_transactions(wallet["id"], TransactionQuery(limit=2))
    assert [row["id"] for row in page] == [spent[2], spent[1], spent[0]]
    rest = db.list_transactions(wallet["id"], TransactionQuery(limit=2, cursor=spent[0]))
    assert [row["date"] for row in rest] == [date(2024, 6, 2), date(2024, 6, 1)]
    with pytest.raises(NotFoundError):
        db.list_transactions(wallet["id"], TransactionQuery(cursor=uuid4()))
