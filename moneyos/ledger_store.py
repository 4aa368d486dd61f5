from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    func,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.pool import StaticPool

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(255), unique=True, nullable=False),
    Column("hashed_password", String(255), nullable=False),
    Column("monthly_income", Numeric(12, 2), nullable=False, server_default="0"),
    Column("current_balance", Numeric(12, 2), nullable=False, server_default="0"),
    Column("currency", String(3), nullable=False, server_default="INR"),
    Column("recurring_expenses", JSON, nullable=False, default=list),
    Column("onboarding_complete", Boolean, nullable=False, server_default="0"),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

transactions = Table(
    "transactions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("client_id", String(255)),
    Column("hash", String(255)),
    Column("type", String(10), nullable=False, server_default="DEBIT"),
    Column("amount", Numeric(12, 2), nullable=False),
    Column("category", String(255)),
    Column("description", String(500)),
    Column("date", String(40)),
    Column("firewall_decision", String(50)),
    Column("firewall_reason", String(500)),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    # NULL hashes (manual entries) never collide.
    UniqueConstraint("user_id", "hash", name="uq_transactions_user_hash"),
)

budgets = Table(
    "budgets",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("category", String(255), nullable=False),
    Column("limit_amount", Numeric(12, 2), nullable=False, server_default="0"),
    Column("spent", Numeric(12, 2), nullable=False, server_default="0"),
    UniqueConstraint("user_id", "category", name="uq_budgets_user_category"),
)

goals = Table(
    "goals",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("client_id", String(255)),
    Column("name", String(255), nullable=False),
    Column("target_amount", Numeric(12, 2), nullable=False, server_default="0"),
    Column("saved_amount", Numeric(12, 2), nullable=False, server_default="0"),
    Column("deadline", String(40)),
    Column("status", String(50)),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

pending_messages = Table(
    "pending_messages",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("device_id", String(255)),
    Column("sender", String(255)),
    Column("body", Text, nullable=False),
    Column("received_at", DateTime, nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)


class LedgerStore:
    """Handle on the ledger database.

    One instance is built by the process entry point and handed to every
    component that reads or writes ledger state.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    @classmethod
    def from_url(cls, database_url: str) -> "LedgerStore":
        connect_args = {}
        kwargs = {}
        if database_url.startswith("sqlite"):
            connect_args = {"check_same_thread": False}
            if database_url in {"sqlite://", "sqlite:///:memory:"}:
                # A single shared connection keeps the in-memory database alive.
                kwargs["poolclass"] = StaticPool
        engine = create_engine(database_url, connect_args=connect_args, **kwargs)
        return cls(engine)

    def create_all(self) -> None:
        metadata.create_all(self.engine)

    @contextmanager
    def begin(self) -> Iterator[Connection]:
        with self.engine.begin() as conn:
            yield conn

    def dispose(self) -> None:
        self.engine.dispose()
