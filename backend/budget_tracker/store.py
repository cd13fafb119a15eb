from contextlib import contextmanager
from datetime import datetime, timezone
from threading import RLock
from typing import Iterator
from uuid import UUID, uuid4

TABLES = ("wallets", "wallet_shares", "categories", "recurring_transactions", "transactions")


class InMemoryStore:
    def __init__(self) -> None:
        self.wallets: dict[UUID, dict] = {}
        self.wallet_shares: dict[tuple[UUID, UUID], dict] = {}
        self.categories: dict[UUID, dict] = {}
        self.recurring_transactions: dict[UUID, dict] = {}
        self.transactions: dict[UUID, dict] = {}
        self._lock = RLock()

    @contextmanager
    def atomic(self) -> Iterator["InMemoryStore"]:
        """Serialise writers and undo every table change if the block raises.

        Rows are copied one level deep, so callers must replace or mutate
        row dicts only inside the block.
        """
        with self._lock:
            snapshot = {
                name: {key: row.copy() for key, row in getattr(self, name).items()}
                for name in TABLES
            }
            try:
                yield self
            except BaseException:
                for name, rows in snapshot.items():
                    setattr(self, name, rows)
                raise

    def reset(self) -> None:
        with self._lock:
            for name in TABLES:
                setattr(self, name, {})

    @staticmethod
    def make_id() -> UUID:
        return uuid4()

    @staticmethod
    def now() -> datetime:
        return datetime.now(timezone.utc)


store = InMemoryStore()
