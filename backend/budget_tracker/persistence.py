from __future__ import annotations

from contextlib import contextmanager
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Iterator
from uuid import UUID, uuid4

from sqlalchemy import and_, case, create_engine, delete, func, insert, or_, select, update
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from .config import settings
from .errors import AccessDeniedError, ConflictError, NotFoundError, TransientStorageError
from .schemas import (
    CENT,
    CategoryCreate,
    CategoryUpdate,
    SharePermission,
    TransactionCreate,
    TransactionQuery,
    TransactionType,
    TransactionUpdate,
    WalletCreate,
    WalletShareCreate,
    WalletUpdate,
)
from .store import store
from .tables import categories, metadata, recurring_transactions, transactions, wallet_shares, wallets

if TYPE_CHECKING:
    from .services.recurring import ApplyPlan


def _tx_sign(direction: str) -> Decimal:
    return Decimal("1") if direction == TransactionType.income.value else Decimal("-1")


def signed_amount(amount: Decimal, direction: TransactionType | str) -> Decimal:
    value = direction.value if isinstance(direction, TransactionType) else direction
    return Decimal(amount) * _tx_sign(value)


def _enum_value(value: Any) -> Any:
    return getattr(value, "value", value)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _ledger_order(row: dict[str, Any]) -> tuple[date, str]:
    return row["date"], str(row["id"])


class Persistence:
    backend = "base"

    def create_wallet(self, user_id: UUID, payload: WalletCreate) -> dict[str, Any]:
        raise NotImplementedError

    def get_wallet(self, wallet_id: UUID) -> dict[str, Any]:
        raise NotImplementedError

    def list_wallets(self, user_id: UUID) -> list[dict[str, Any]]:
        raise NotImplementedError

    def get_share(self, wallet_id: UUID, user_id: UUID) -> dict[str, Any] | None:
        raise NotImplementedError

    def update_wallet(self, wallet_id: UUID, payload: WalletUpdate) -> dict[str, Any]:
        raise NotImplementedError

    def delete_wallet(self, wallet_id: UUID) -> None:
        raise NotImplementedError

    def share_wallet(self, wallet_id: UUID, payload: WalletShareCreate) -> dict[str, Any]:
        raise NotImplementedError

    def remove_share(self, wallet_id: UUID, user_id: UUID) -> None:
        raise NotImplementedError

    def ledger_balance(self, wallet_id: UUID) -> Decimal:
        raise NotImplementedError

    def create_category(self, wallet_id: UUID, payload: CategoryCreate) -> dict[str, Any]:
        raise NotImplementedError

    def get_category(self, category_id: UUID) -> dict[str, Any]:
        raise NotImplementedError

    def list_categories(self, wallet_id: UUID) -> list[dict[str, Any]]:
        raise NotImplementedError

    def update_category(self, category_id: UUID, payload: CategoryUpdate) -> dict[str, Any]:
        raise NotImplementedError

    def delete_category(self, category_id: UUID) -> None:
        """Refuses with ConflictError while entries or rules still use it."""
        raise NotImplementedError

    def create_rule(self, row: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    def get_rule(self, rule_id: UUID) -> dict[str, Any]:
        raise NotImplementedError

    def list_rules(self, wallet_id: UUID) -> list[dict[str, Any]]:
        raise NotImplementedError

    def update_rule(self, rule_id: UUID, changes: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    def delete_rule(self, rule_id: UUID) -> None:
        raise NotImplementedError

    def create_transaction(self, user_id: UUID, payload: TransactionCreate) -> dict[str, Any]:
        raise NotImplementedError

    def get_transaction(self, transaction_id: UUID) -> dict[str, Any]:
        raise NotImplementedError

    def list_transactions(self, wallet_id: UUID, query: TransactionQuery | None = None) -> list[dict[str, Any]]:
        """Entries newest first, ordered by ``(date, id)`` descending.

        With a query, filters apply, ``cursor`` names the first entry of the
        page and at most ``limit + 1`` rows come back so the caller can tell
        whether another page follows.
        """
        raise NotImplementedError

    def update_transaction(self, transaction_id: UUID, payload: TransactionUpdate) -> dict[str, Any]:
        raise NotImplementedError

    def delete_transaction(self, transaction_id: UUID) -> None:
        raise NotImplementedError

    def find_due_rules(self, as_of: date) -> list[dict[str, Any]]:
        raise NotImplementedError

    def apply_recurrence_atomically(
        self, rule_id: UUID, expected_next_run_at: date, plan: ApplyPlan
    ) -> dict[str, Any] | None:
        """Run one rule application as a single unit of work.

        Returns the new ledger entry, or ``None`` when the rule is no longer
        due (inactive, or ``next_run_at`` already moved past the planned date
        by a concurrent run). Nothing is persisted unless every step succeeds.
        """
        raise NotImplementedError

    def check_wallet_access(self, user_id: UUID, wallet_id: UUID, require_edit: bool = False) -> dict[str, Any]:
        wallet = self.get_wallet(wallet_id)
        if wallet["user_id"] == user_id:
            return wallet
        share = self.get_share(wallet_id, user_id)
        if share is None:
            raise AccessDeniedError("access denied")
        if require_edit and share["permission"] != SharePermission.edit.value:
            raise AccessDeniedError("edit permission required")
        return wallet

    @staticmethod
    def _new_transaction_row(user_id: UUID, payload: TransactionCreate) -> dict[str, Any]:
        return {
            "id": uuid4(),
            "wallet_id": payload.walletId,
            "user_id": user_id,
            "amount": payload.amount,
            "type": payload.type.value,
            "category_id": payload.categoryId,
            "description": payload.description,
            "date": payload.occurredOn or date.today(),
            "recurring_transaction_id": None,
            "created_at": _now(),
        }

    @staticmethod
    def _entry_row(plan: ApplyPlan) -> dict[str, Any]:
        return {
            "id": uuid4(),
            "wallet_id": plan.wallet_id,
            "user_id": plan.user_id,
            "amount": plan.amount,
            "type": plan.transaction_type,
            "category_id": plan.category_id,
            "description": plan.description,
            "date": plan.applied_on,
            "recurring_transaction_id": plan.rule_id,
            "created_at": _now(),
        }


class InMemoryPersistence(Persistence):
    backend = "memory"

    def _wallet_row(self, wallet_id: UUID) -> dict[str, Any]:
        row = store.wallets.get(wallet_id)
        if not row:
            raise NotFoundError(f"wallet not found: {wallet_id}")
        return row

    def _category_row(self, category_id: UUID, wallet_id: UUID | None = None) -> dict[str, Any]:
        row = store.categories.get(category_id)
        if not row or (wallet_id is not None and row["wallet_id"] != wallet_id):
            raise NotFoundError(f"category not found: {category_id}")
        return row

    def _increment_balance(self, wallet_id: UUID, delta: Decimal) -> None:
        wallet = self._wallet_row(wallet_id)
        wallet["balance"] = Decimal(wallet["balance"]) + delta

    def create_wallet(self, user_id: UUID, payload: WalletCreate) -> dict[str, Any]:
        row = {
            "id": store.make_id(),
            "user_id": user_id,
            "name": payload.name,
            "currency": payload.currency,
            "balance": Decimal("0.00"),
            "created_at": store.now(),
        }
        with store.atomic():
            store.wallets[row["id"]] = row
        return dict(row)

    def get_wallet(self, wallet_id: UUID) -> dict[str, Any]:
        return dict(self._wallet_row(wallet_id))

    def list_wallets(self, user_id: UUID) -> list[dict[str, Any]]:
        shared = {key[0] for key in store.wallet_shares if key[1] == user_id}
        rows = [w for w in store.wallets.values() if w["user_id"] == user_id or w["id"] in shared]
        return [dict(w) for w in sorted(rows, key=lambda w: w["created_at"])]

    def get_share(self, wallet_id: UUID, user_id: UUID) -> dict[str, Any] | None:
        row = store.wallet_shares.get((wallet_id, user_id))
        return dict(row) if row else None

    def share_wallet(self, wallet_id: UUID, payload: WalletShareCreate) -> dict[str, Any]:
        with store.atomic():
            wallet = self._wallet_row(wallet_id)
            if payload.userId == wallet["user_id"]:
                raise ConflictError("owner already has access")
            if (wallet_id, payload.userId) in store.wallet_shares:
                raise ConflictError("wallet already shared with user")
            row = {
                "wallet_id": wallet_id,
                "user_id": payload.userId,
                "permission": payload.permission.value,
                "created_at": store.now(),
            }
            store.wallet_shares[(wallet_id, payload.userId)] = row
        return dict(row)

    def remove_share(self, wallet_id: UUID, user_id: UUID) -> None:
        with store.atomic():
            if store.wallet_shares.pop((wallet_id, user_id), None) is None:
                raise NotFoundError(f"share not found for user: {user_id}")

    def update_wallet(self, wallet_id: UUID, payload: WalletUpdate) -> dict[str, Any]:
        with store.atomic():
            row = self._wallet_row(wallet_id)
            row.update(payload.model_dump(exclude_none=True))
        return dict(row)

    def delete_wallet(self, wallet_id: UUID) -> None:
        with store.atomic():
            self._wallet_row(wallet_id)
            for name in ("transactions", "recurring_transactions", "categories"):
                table = getattr(store, name)
                for key in [k for k, row in table.items() if row["wallet_id"] == wallet_id]:
                    del table[key]
            for key in [k for k in store.wallet_shares if k[0] == wallet_id]:
                del store.wallet_shares[key]
            del store.wallets[wallet_id]

    def ledger_balance(self, wallet_id: UUID) -> Decimal:
        self._wallet_row(wallet_id)
        total = Decimal("0")
        for tx in store.transactions.values():
            if tx["wallet_id"] == wallet_id:
                total += signed_amount(tx["amount"], tx["type"])
        return total.quantize(CENT)

    def create_category(self, wallet_id: UUID, payload: CategoryCreate) -> dict[str, Any]:
        with store.atomic():
            self._wallet_row(wallet_id)
            for existing in store.categories.values():
                if (existing["wallet_id"], existing["name"], existing["type"]) == (wallet_id, payload.name, payload.type.value):
                    raise ConflictError(f"category already exists: {payload.name}")
            row = {
                "id": store.make_id(),
                "wallet_id": wallet_id,
                "name": payload.name,
                "type": payload.type.value,
                "created_at": store.now(),
            }
            store.categories[row["id"]] = row
        return dict(row)

    def get_category(self, category_id: UUID) -> dict[str, Any]:
        return dict(self._category_row(category_id))

    def list_categories(self, wallet_id: UUID) -> list[dict[str, Any]]:
        rows = [c for c in store.categories.values() if c["wallet_id"] == wallet_id]
        return [dict(c) for c in sorted(rows, key=lambda c: (c["type"], c["name"]))]

    def update_category(self, category_id: UUID, payload: CategoryUpdate) -> dict[str, Any]:
        with store.atomic():
            row = self._category_row(category_id)
            name = payload.name if payload.name is not None else row["name"]
            kind = payload.type.value if payload.type is not None else row["type"]
            for existing in store.categories.values():
                if existing["id"] != category_id and (existing["wallet_id"], existing["name"], existing["type"]) == (
                    row["wallet_id"],
                    name,
                    kind,
                ):
                    raise ConflictError(f"category already exists: {name}")
            row.update(name=name, type=kind)
        return dict(row)

    def delete_category(self, category_id: UUID) -> None:
        with store.atomic():
            self._category_row(category_id)
            in_use = any(t["category_id"] == category_id for t in store.transactions.values()) or any(
                r["category_id"] == category_id for r in store.recurring_transactions.values()
            )
            if in_use:
                raise ConflictError("cannot delete category with existing transactions or recurring transactions")
            del store.categories[category_id]

    def create_rule(self, row: dict[str, Any]) -> dict[str, Any]:
        with store.atomic():
            self._wallet_row(row["wallet_id"])
            self._category_row(row["category_id"], row["wallet_id"])
            stored = {**row, "id": row.get("id") or store.make_id(), "created_at": store.now()}
            store.recurring_transactions[stored["id"]] = stored
        return dict(stored)

    def get_rule(self, rule_id: UUID) -> dict[str, Any]:
        row = store.recurring_transactions.get(rule_id)
        if not row:
            raise NotFoundError(f"recurring transaction not found: {rule_id}")
        return dict(row)

    def list_rules(self, wallet_id: UUID) -> list[dict[str, Any]]:
        rows = [r for r in store.recurring_transactions.values() if r["wallet_id"] == wallet_id]
        return [dict(r) for r in sorted(rows, key=lambda r: r["created_at"], reverse=True)]

    def update_rule(self, rule_id: UUID, changes: dict[str, Any]) -> dict[str, Any]:
        with store.atomic():
            row = store.recurring_transactions.get(rule_id)
            if not row:
                raise NotFoundError(f"recurring transaction not found: {rule_id}")
            if "category_id" in changes:
                self._category_row(changes["category_id"], row["wallet_id"])
            row.update(changes)
        return dict(row)

    def delete_rule(self, rule_id: UUID) -> None:
        with store.atomic():
            if rule_id not in store.recurring_transactions:
                raise NotFoundError(f"recurring transaction not found: {rule_id}")
            for tx in store.transactions.values():
                if tx.get("recurring_transaction_id") == rule_id:
                    tx["recurring_transaction_id"] = None
            del store.recurring_transactions[rule_id]

    def create_transaction(self, user_id: UUID, payload: TransactionCreate) -> dict[str, Any]:
        with store.atomic():
            self._wallet_row(payload.walletId)
            self._category_row(payload.categoryId, payload.walletId)
            row = self._new_transaction_row(user_id, payload)
            store.transactions[row["id"]] = row
            self._increment_balance(payload.walletId, signed_amount(row["amount"], row["type"]))
        return dict(row)

    def get_transaction(self, transaction_id: UUID) -> dict[str, Any]:
        row = store.transactions.get(transaction_id)
        if not row:
            raise NotFoundError(f"transaction not found: {transaction_id}")
        return dict(row)

    def list_transactions(self, wallet_id: UUID, query: TransactionQuery | None = None) -> list[dict[str, Any]]:
        rows = sorted(
            (t for t in store.transactions.values() if t["wallet_id"] == wallet_id),
            key=_ledger_order,
            reverse=True,
        )
        if query is not None:
            if query.type is not None:
                rows = [t for t in rows if t["type"] == query.type.value]
            if query.categoryId is not None:
                rows = [t for t in rows if t["category_id"] == query.categoryId]
            if query.startDate is not None:
                rows = [t for t in rows if t["date"] >= query.startDate]
            if query.endDate is not None:
                rows = [t for t in rows if t["date"] <= query.endDate]
            if query.cursor is not None:
                anchor = store.transactions.get(query.cursor)
                if not anchor or anchor["wallet_id"] != wallet_id:
                    raise NotFoundError(f"cursor not found: {query.cursor}")
                rows = [t for t in rows if _ledger_order(t) <= _ledger_order(anchor)]
            if query.limit is not None:
                rows = rows[: query.limit + 1]
        return [dict(t) for t in rows]

    def update_transaction(self, transaction_id: UUID, payload: TransactionUpdate) -> dict[str, Any]:
        with store.atomic():
            row = store.transactions.get(transaction_id)
            if not row:
                raise NotFoundError(f"transaction not found: {transaction_id}")
            old_delta = signed_amount(row["amount"], row["type"])
            updates = payload.model_dump(exclude_none=True)
            if "categoryId" in updates:
                self._category_row(updates["categoryId"], row["wallet_id"])
                row["category_id"] = updates["categoryId"]
            if "type" in updates:
                row["type"] = _enum_value(updates["type"])
            if "amount" in updates:
                row["amount"] = updates["amount"]
            if "description" in updates:
                row["description"] = updates["description"]
            if "occurredOn" in updates:
                row["date"] = updates["occurredOn"]
            new_delta = signed_amount(row["amount"], row["type"])
            self._increment_balance(row["wallet_id"], new_delta - old_delta)
        return dict(row)

    def delete_transaction(self, transaction_id: UUID) -> None:
        with store.atomic():
            row = store.transactions.get(transaction_id)
            if not row:
                raise NotFoundError(f"transaction not found: {transaction_id}")
            del store.transactions[transaction_id]
            self._increment_balance(row["wallet_id"], -signed_amount(row["amount"], row["type"]))

    def find_due_rules(self, as_of: date) -> list[dict[str, Any]]:
        due = [
            r
            for r in store.recurring_transactions.values()
            if r["is_active"]
            and r["start_date"] <= as_of
            and r["next_run_at"] is not None
            and r["next_run_at"] <= as_of
            and (r["end_date"] is None or r["end_date"] >= as_of)
        ]
        return [dict(r) for r in sorted(due, key=lambda r: (r["next_run_at"], str(r["id"])))]

    def apply_recurrence_atomically(
        self, rule_id: UUID, expected_next_run_at: date, plan: ApplyPlan
    ) -> dict[str, Any] | None:
        with store.atomic():
            rule = store.recurring_transactions.get(rule_id)
            if not rule or not rule["is_active"] or rule["next_run_at"] != expected_next_run_at:
                return None
            rule.update(plan.rule_changes())
            self._category_row(plan.category_id, plan.wallet_id)
            row = self._entry_row(plan)
            store.transactions[row["id"]] = row
            self._increment_balance(plan.wallet_id, plan.balance_delta)
            plan.check(rule)
        return dict(row)


class SqlPersistence(Persistence):
    backend = "sql"

    def __init__(self, database_url: str, engine: Engine | None = None) -> None:
        self.engine: Engine = engine or create_engine(database_url, future=True, pool_pre_ping=True)

    def create_schema(self) -> None:
        metadata.create_all(self.engine)

    @contextmanager
    def _unit_of_work(self) -> Iterator[Connection]:
        try:
            with self.engine.begin() as conn:
                yield conn
        except SQLAlchemyError as exc:
            raise TransientStorageError(f"storage error: {exc.__class__.__name__}") from exc

    def _fetch(self, stmt) -> list[dict[str, Any]]:
        with self._unit_of_work() as conn:
            return [dict(row._mapping) for row in conn.execute(stmt)]

    def _fetch_one(self, stmt, missing: str) -> dict[str, Any]:
        rows = self._fetch(stmt)
        if not rows:
            raise NotFoundError(missing)
        return rows[0]

    def _increment_balance(self, conn: Connection, wallet_id: UUID, delta: Decimal) -> None:
        result = conn.execute(
            update(wallets).where(wallets.c.id == wallet_id).values(balance=wallets.c.balance + delta)
        )
        if result.rowcount != 1:
            raise NotFoundError(f"wallet not found: {wallet_id}")

    @staticmethod
    def _require_category(conn: Connection, category_id: UUID, wallet_id: UUID) -> None:
        found = conn.execute(
            select(categories.c.id).where(categories.c.id == category_id, categories.c.wallet_id == wallet_id)
        ).first()
        if found is None:
            raise NotFoundError(f"category not found: {category_id}")

    def create_wallet(self, user_id: UUID, payload: WalletCreate) -> dict[str, Any]:
        row = {
            "id": uuid4(),
            "user_id": user_id,
            "name": payload.name,
            "currency": payload.currency,
            "balance": Decimal("0.00"),
            "created_at": _now(),
        }
        with self._unit_of_work() as conn:
            conn.execute(insert(wallets).values(**row))
        return self.get_wallet(row["id"])

    def get_wallet(self, wallet_id: UUID) -> dict[str, Any]:
        return self._fetch_one(select(wallets).where(wallets.c.id == wallet_id), f"wallet not found: {wallet_id}")

    def list_wallets(self, user_id: UUID) -> list[dict[str, Any]]:
        shared = select(wallet_shares.c.wallet_id).where(wallet_shares.c.user_id == user_id)
        return self._fetch(
            select(wallets)
            .where(or_(wallets.c.user_id == user_id, wallets.c.id.in_(shared)))
            .order_by(wallets.c.created_at)
        )

    def get_share(self, wallet_id: UUID, user_id: UUID) -> dict[str, Any] | None:
        rows = self._fetch(
            select(wallet_shares).where(wallet_shares.c.wallet_id == wallet_id, wallet_shares.c.user_id == user_id)
        )
        return rows[0] if rows else None

    def share_wallet(self, wallet_id: UUID, payload: WalletShareCreate) -> dict[str, Any]:
        wallet = self.get_wallet(wallet_id)
        if payload.userId == wallet["user_id"]:
            raise ConflictError("owner already has access")
        row = {
            "wallet_id": wallet_id,
            "user_id": payload.userId,
            "permission": payload.permission.value,
            "created_at": _now(),
        }
        with self._unit_of_work() as conn:
            try:
                conn.execute(insert(wallet_shares).values(**row))
            except IntegrityError as exc:
                raise ConflictError("wallet already shared with user") from exc
        return row

    def remove_share(self, wallet_id: UUID, user_id: UUID) -> None:
        with self._unit_of_work() as conn:
            result = conn.execute(
                delete(wallet_shares).where(wallet_shares.c.wallet_id == wallet_id, wallet_shares.c.user_id == user_id)
            )
            if result.rowcount != 1:
                raise NotFoundError(f"share not found for user: {user_id}")

    def update_wallet(self, wallet_id: UUID, payload: WalletUpdate) -> dict[str, Any]:
        changes = payload.model_dump(exclude_none=True)
        with self._unit_of_work() as conn:
            found = conn.execute(select(wallets.c.id).where(wallets.c.id == wallet_id).with_for_update()).first()
            if found is None:
                raise NotFoundError(f"wallet not found: {wallet_id}")
            if changes:
                conn.execute(update(wallets).where(wallets.c.id == wallet_id).values(**changes))
        return self.get_wallet(wallet_id)

    def delete_wallet(self, wallet_id: UUID) -> None:
        with self._unit_of_work() as conn:
            for table in (transactions, recurring_transactions, categories, wallet_shares):
                conn.execute(delete(table).where(table.c.wallet_id == wallet_id))
            result = conn.execute(delete(wallets).where(wallets.c.id == wallet_id))
            if result.rowcount != 1:
                raise NotFoundError(f"wallet not found: {wallet_id}")

    def ledger_balance(self, wallet_id: UUID) -> Decimal:
        self.get_wallet(wallet_id)
        signed = case(
            (transactions.c.type == TransactionType.income.value, transactions.c.amount),
            else_=-transactions.c.amount,
        )
        rows = self._fetch(
            select(func.coalesce(func.sum(signed), 0).label("total")).where(transactions.c.wallet_id == wallet_id)
        )
        return Decimal(str(rows[0]["total"])).quantize(CENT)

    def create_category(self, wallet_id: UUID, payload: CategoryCreate) -> dict[str, Any]:
        self.get_wallet(wallet_id)
        row = {
            "id": uuid4(),
            "wallet_id": wallet_id,
            "name": payload.name,
            "type": payload.type.value,
            "created_at": _now(),
        }
        with self._unit_of_work() as conn:
            try:
                conn.execute(insert(categories).values(**row))
            except IntegrityError as exc:
                raise ConflictError(f"category already exists: {payload.name}") from exc
        return row

    def get_category(self, category_id: UUID) -> dict[str, Any]:
        return self._fetch_one(
            select(categories).where(categories.c.id == category_id), f"category not found: {category_id}"
        )

    def list_categories(self, wallet_id: UUID) -> list[dict[str, Any]]:
        return self._fetch(
            select(categories).where(categories.c.wallet_id == wallet_id).order_by(categories.c.type, categories.c.name)
        )

    def update_category(self, category_id: UUID, payload: CategoryUpdate) -> dict[str, Any]:
        changes = {"name": payload.name, "type": _enum_value(payload.type)}
        changes = {key: value for key, value in changes.items() if value is not None}
        if not changes:
            return self.get_category(category_id)
        with self._unit_of_work() as conn:
            try:
                result = conn.execute(update(categories).where(categories.c.id == category_id).values(**changes))
            except IntegrityError as exc:
                raise ConflictError(f"category already exists: {payload.name}") from exc
            if result.rowcount != 1:
                raise NotFoundError(f"category not found: {category_id}")
        return self.get_category(category_id)

    def delete_category(self, category_id: UUID) -> None:
        with self._unit_of_work() as conn:
            used = conn.execute(
                select(func.count()).select_from(transactions).where(transactions.c.category_id == category_id)
            ).scalar_one()
            used += conn.execute(
                select(func.count())
                .select_from(recurring_transactions)
                .where(recurring_transactions.c.category_id == category_id)
            ).scalar_one()
            if used:
                raise ConflictError("cannot delete category with existing transactions or recurring transactions")
            result = conn.execute(delete(categories).where(categories.c.id == category_id))
            if result.rowcount != 1:
                raise NotFoundError(f"category not found: {category_id}")

    def create_rule(self, row: dict[str, Any]) -> dict[str, Any]:
        stored = {**row, "id": row.get("id") or uuid4(), "created_at": _now()}
        with self._unit_of_work() as conn:
            self._require_category(conn, stored["category_id"], stored["wallet_id"])
            conn.execute(insert(recurring_transactions).values(**stored))
        return self.get_rule(stored["id"])

    def get_rule(self, rule_id: UUID) -> dict[str, Any]:
        return self._fetch_one(
            select(recurring_transactions).where(recurring_transactions.c.id == rule_id),
            f"recurring transaction not found: {rule_id}",
        )

    def list_rules(self, wallet_id: UUID) -> list[dict[str, Any]]:
        return self._fetch(
            select(recurring_transactions)
            .where(recurring_transactions.c.wallet_id == wallet_id)
            .order_by(recurring_transactions.c.created_at.desc())
        )

    def update_rule(self, rule_id: UUID, changes: dict[str, Any]) -> dict[str, Any]:
        with self._unit_of_work() as conn:
            current = conn.execute(
                select(recurring_transactions.c.wallet_id)
                .where(recurring_transactions.c.id == rule_id)
                .with_for_update()
            ).first()
            if current is None:
                raise NotFoundError(f"recurring transaction not found: {rule_id}")
            if "category_id" in changes:
                self._require_category(conn, changes["category_id"], current.wallet_id)
            if changes:
                conn.execute(
                    update(recurring_transactions).where(recurring_transactions.c.id == rule_id).values(**changes)
                )
        return self.get_rule(rule_id)

    def delete_rule(self, rule_id: UUID) -> None:
        with self._unit_of_work() as conn:
            conn.execute(
                update(transactions)
                .where(transactions.c.recurring_transaction_id == rule_id)
                .values(recurring_transaction_id=None)
            )
            result = conn.execute(delete(recurring_transactions).where(recurring_transactions.c.id == rule_id))
            if result.rowcount != 1:
                raise NotFoundError(f"recurring transaction not found: {rule_id}")

    def create_transaction(self, user_id: UUID, payload: TransactionCreate) -> dict[str, Any]:
        row = self._new_transaction_row(user_id, payload)
        with self._unit_of_work() as conn:
            self._require_category(conn, payload.categoryId, payload.walletId)
            conn.execute(insert(transactions).values(**row))
            self._increment_balance(conn, payload.walletId, signed_amount(row["amount"], row["type"]))
        return self.get_transaction(row["id"])

    def get_transaction(self, transaction_id: UUID) -> dict[str, Any]:
        return self._fetch_one(
            select(transactions).where(transactions.c.id == transaction_id),
            f"transaction not found: {transaction_id}",
        )

    def list_transactions(self, wallet_id: UUID, query: TransactionQuery | None = None) -> list[dict[str, Any]]:
        tx = transactions
        stmt = select(tx).where(tx.c.wallet_id == wallet_id)
        if query is not None:
            if query.type is not None:
                stmt = stmt.where(tx.c.type == query.type.value)
            if query.categoryId is not None:
                stmt = stmt.where(tx.c.category_id == query.categoryId)
            if query.startDate is not None:
                stmt = stmt.where(tx.c.date >= query.startDate)
            if query.endDate is not None:
                stmt = stmt.where(tx.c.date <= query.endDate)
            if query.cursor is not None:
                anchor = self._fetch_one(
                    select(tx.c.date, tx.c.id).where(tx.c.id == query.cursor, tx.c.wallet_id == wallet_id),
                    f"cursor not found: {query.cursor}",
                )
                stmt = stmt.where(
                    or_(tx.c.date < anchor["date"], and_(tx.c.date == anchor["date"], tx.c.id <= anchor["id"]))
                )
            if query.limit is not None:
                stmt = stmt.limit(query.limit + 1)
        return self._fetch(stmt.order_by(tx.c.date.desc(), tx.c.id.desc()))

    def update_transaction(self, transaction_id: UUID, payload: TransactionUpdate) -> dict[str, Any]:
        with self._unit_of_work() as conn:
            current = conn.execute(
                select(transactions).where(transactions.c.id == transaction_id).with_for_update()
            ).first()
            if current is None:
                raise NotFoundError(f"transaction not found: {transaction_id}")
            merged = dict(current._mapping)
            updates = payload.model_dump(exclude_none=True)
            if "categoryId" in updates:
                self._require_category(conn, updates["categoryId"], merged["wallet_id"])
                merged["category_id"] = updates["categoryId"]
            if "type" in updates:
                merged["type"] = _enum_value(updates["type"])
            if "amount" in updates:
                merged["amount"] = updates["amount"]
            if "description" in updates:
                merged["description"] = updates["description"]
            if "occurredOn" in updates:
                merged["date"] = updates["occurredOn"]
            old_delta = signed_amount(current.amount, current.type)
            new_delta = signed_amount(merged["amount"], merged["type"])
            conn.execute(
                update(transactions)
                .where(transactions.c.id == transaction_id)
                .values(
                    category_id=merged["category_id"],
                    type=merged["type"],
                    amount=merged["amount"],
                    description=merged["description"],
                    date=merged["date"],
                )
            )
            self._increment_balance(conn, merged["wallet_id"], new_delta - old_delta)
        return self.get_transaction(transaction_id)

    def delete_transaction(self, transaction_id: UUID) -> None:
        with self._unit_of_work() as conn:
            current = conn.execute(
                select(transactions).where(transactions.c.id == transaction_id).with_for_update()
            ).first()
            if current is None:
                raise NotFoundError(f"transaction not found: {transaction_id}")
            conn.execute(delete(transactions).where(transactions.c.id == transaction_id))
            self._increment_balance(conn, current.wallet_id, -signed_amount(current.amount, current.type))

    def find_due_rules(self, as_of: date) -> list[dict[str, Any]]:
        rt = recurring_transactions
        return self._fetch(
            select(rt)
            .where(
                rt.c.is_active.is_(True),
                rt.c.start_date <= as_of,
                rt.c.next_run_at.is_not(None),
                rt.c.next_run_at <= as_of,
                or_(rt.c.end_date.is_(None), rt.c.end_date >= as_of),
            )
            .order_by(rt.c.next_run_at, rt.c.id)
        )

    def apply_recurrence_atomically(
        self, rule_id: UUID, expected_next_run_at: date, plan: ApplyPlan
    ) -> dict[str, Any] | None:
        rt = recurring_transactions
        row = self._entry_row(plan)
        with self._unit_of_work() as conn:
            # Claiming the rule first takes its row lock; a racing run blocks
            # here and then matches zero rows.
            claimed = conn.execute(
                update(rt)
                .where(rt.c.id == rule_id, rt.c.is_active.is_(True), rt.c.next_run_at == expected_next_run_at)
                .values(**plan.rule_changes())
            )
            if claimed.rowcount != 1:
                return None
            self._require_category(conn, plan.category_id, plan.wallet_id)
            conn.execute(insert(transactions).values(**row))
            self._increment_balance(conn, plan.wallet_id, plan.balance_delta)
            rule = conn.execute(select(rt).where(rt.c.id == rule_id)).first()
            plan.check(dict(rule._mapping))
        return row


def get_persistence() -> Persistence:
    if settings.storage_backend in {"sql", "postgres"}:
        return SqlPersistence(settings.database_url)
    return InMemoryPersistence()
