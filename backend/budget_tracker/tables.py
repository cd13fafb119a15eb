from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)

metadata = MetaData()

MONEY = Numeric(14, 2, asdecimal=True)

wallets = Table(
    "wallets",
    metadata,
    Column("id", Uuid, primary_key=True),
    Column("user_id", Uuid, nullable=False),
    Column("name", String(120), nullable=False),
    Column("currency", String(3), nullable=False, server_default="USD"),
    Column("balance", MONEY, nullable=False, server_default="0"),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    Index("idx_wallets_user", "user_id"),
)

wallet_shares = Table(
    "wallet_shares",
    metadata,
    Column("wallet_id", Uuid, ForeignKey("wallets.id", ondelete="CASCADE"), primary_key=True),
    Column("user_id", Uuid, primary_key=True),
    Column("permission", String(10), nullable=False, server_default="VIEW"),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
)

categories = Table(
    "categories",
    metadata,
    Column("id", Uuid, primary_key=True),
    Column("wallet_id", Uuid, ForeignKey("wallets.id", ondelete="CASCADE"), nullable=False),
    Column("name", String(100), nullable=False),
    Column("type", String(10), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    UniqueConstraint("wallet_id", "name", "type", name="uq_categories_wallet_name_type"),
)

recurring_transactions = Table(
    "recurring_transactions",
    metadata,
    Column("id", Uuid, primary_key=True),
    Column("wallet_id", Uuid, ForeignKey("wallets.id", ondelete="CASCADE"), nullable=False),
    Column("user_id", Uuid, nullable=False),
    Column("name", String(120), nullable=False),
    Column("amount", MONEY, nullable=False),
    Column("transaction_type", String(10), nullable=False),
    Column("frequency", String(10), nullable=False),
    Column("category_id", Uuid, ForeignKey("categories.id"), nullable=False),
    Column("description", Text),
    Column("start_date", Date, nullable=False),
    Column("end_date", Date),
    Column("is_active", Boolean, nullable=False, server_default="1"),
    Column("cycle_day_of_month", Integer),
    Column("cycle_day_of_week", Integer),
    Column("last_run_at", Date),
    Column("next_run_at", Date),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    Index("idx_recurring_due", "is_active", "next_run_at"),
    Index("idx_recurring_wallet", "wallet_id"),
)

transactions = Table(
    "transactions",
    metadata,
    Column("id", Uuid, primary_key=True),
    Column("wallet_id", Uuid, ForeignKey("wallets.id", ondelete="CASCADE"), nullable=False),
    Column("user_id", Uuid, nullable=False),
    Column("amount", MONEY, nullable=False),
    Column("type", String(10), nullable=False),
    Column("category_id", Uuid, ForeignKey("categories.id"), nullable=False),
    Column("description", Text),
    Column("date", Date, nullable=False),
    Column(
        "recurring_transaction_id",
        Uuid,
        ForeignKey("recurring_transactions.id", ondelete="SET NULL"),
    ),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    Index("idx_transactions_wallet", "wallet_id", "date"),
    Index("idx_transactions_recurring", "recurring_transaction_id"),
)
