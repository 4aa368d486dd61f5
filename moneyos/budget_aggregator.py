from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Iterable, Mapping, Optional

from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.engine import Connection
from sqlalchemy.exc import IntegrityError

from moneyos.candidates import DEBIT, MAX_AMOUNT, clean_text, parse_amount
from moneyos.errors import ConflictError, NotFoundError, ValidationError
from moneyos.ledger_store import LedgerStore, budgets, transactions

logger = logging.getLogger("moneyos.budgets")

ZERO = Decimal("0")


@dataclass(frozen=True)
class BudgetSpec:
    category: str
    limit: Decimal
    budget_id: Optional[int] = None

    @classmethod
    def from_payload(
        cls, category: Any, limit: Any, budget_id: Optional[int] = None
    ) -> "BudgetSpec":
        name = clean_text(category if isinstance(category, str) else None)
        if not name:
            raise ValidationError("Budget category required.")
        amount = parse_amount(limit if limit is not None else 0)
        if amount is None:
            raise ValidationError(f"Budget limit for '{name}' is malformed.")
        if amount < ZERO:
            raise ValidationError(f"Budget limit for '{name}' cannot be negative.")
        if amount > MAX_AMOUNT:
            raise ValidationError(f"Budget limit for '{name}' is too large.")
        return cls(category=name, limit=amount, budget_id=budget_id)


def sum_admitted_debits(
    transactions: Iterable[Mapping[str, Any]],
    *,
    category: Optional[str] = None,
) -> Decimal:
    total = ZERO
    for txn in transactions:
        if str(txn["type"]).strip().upper() != DEBIT:
            continue
        if category is not None and txn["category"] != category:
            continue
        total += _coerce_amount(txn["amount"])
    return total


def apply_admitted_debit(
    store: LedgerStore, user_id: int, category: str, amount: Decimal
) -> bool:
    """Add an admitted debit to its category budget.

    Call once per admitted DEBIT, never for duplicates. Returns False when
    the user has no budget for the category.
    """
    stmt = (
        update(budgets)
        .where(budgets.c.user_id == user_id, budgets.c.category == category)
        .values(spent=budgets.c.spent + amount)
    )
    with store.begin() as conn:
        result = conn.execute(stmt)
    return result.rowcount > 0


def list_budgets(store: LedgerStore, user_id: int) -> list[dict]:
    with store.begin() as conn:
        return _select_budgets(conn, user_id)


def upsert_budget(
    store: LedgerStore,
    user_id: int,
    category: str,
    limit: Decimal,
    budget_id: Optional[int] = None,
) -> dict:
    """Create the budget or change its limit; ``spent`` is never reset.

    An explicit ``budget_id`` owned by the user wins over the category
    lookup. A new row starts from the debits already in the ledger.
    """
    try:
        with store.begin() as conn:
            if budget_id is not None:
                row = _update_by_id(conn, user_id, budget_id, category, limit)
                if row:
                    return row
            row = _update_limit(conn, user_id, category, limit)
            if row:
                return row
            return _insert_budget(conn, user_id, category, limit)
    except IntegrityError as exc:
        if budget_id is not None:
            raise ConflictError(f"A budget for '{category}' already exists.") from exc

    # Another request created the row first.
    with store.begin() as conn:
        row = _update_limit(conn, user_id, category, limit)
    if not row:
        raise ConflictError(f"Could not save budget for '{category}'.")
    return row


def replace_budgets(
    store: LedgerStore, user_id: int, specs: Iterable[BudgetSpec]
) -> list[dict]:
    """Swap the user's whole budget set in one transaction."""
    specs = list(specs)
    categories = [spec.category for spec in specs]
    if len(set(categories)) != len(categories):
        raise ValidationError("Budget categories must be unique.")
    with store.begin() as conn:
        conn.execute(delete(budgets).where(budgets.c.user_id == user_id))
        for spec in specs:
            _insert_budget(conn, user_id, spec.category, spec.limit)
        return _select_budgets(conn, user_id)


def delete_budget(store: LedgerStore, user_id: int, budget_id: int) -> None:
    stmt = delete(budgets).where(budgets.c.id == budget_id, budgets.c.user_id == user_id)
    with store.begin() as conn:
        result = conn.execute(stmt)
        if result.rowcount == 0:
            raise NotFoundError("Budget not found.")


def recalculate(
    store: LedgerStore, user_id: int, category: Optional[str] = None
) -> list[dict]:
    """Overwrite ``spent`` with the ledger's debit totals.

    Repairs drift left behind by failed aggregation steps.
    """
    debit_total = (
        select(func.coalesce(func.sum(transactions.c.amount), 0))
        .where(
            transactions.c.user_id == budgets.c.user_id,
            transactions.c.category == budgets.c.category,
            transactions.c.type == DEBIT,
        )
        .scalar_subquery()
    )
    stmt = update(budgets).where(budgets.c.user_id == user_id).values(spent=debit_total)
    if category is not None:
        stmt = stmt.where(budgets.c.category == category)

    with store.begin() as conn:
        before = {row["id"]: row["spent"] for row in _select_budgets(conn, user_id)}
        conn.execute(stmt)
        refreshed = _select_budgets(conn, user_id)

    for row in refreshed:
        previous = before.get(row["id"])
        if previous is not None and _coerce_amount(previous) != _coerce_amount(row["spent"]):
            logger.warning(
                "Budget %s (%s) for user %s drifted: spent %s, ledger %s",
                row["id"],
                row["category"],
                user_id,
                previous,
                row["spent"],
            )
    return refreshed


def _ledger_debit_total(conn: Connection, user_id: int, category: str) -> Decimal:
    rows = conn.execute(
        select(transactions.c.type, transactions.c.category, transactions.c.amount).where(
            transactions.c.user_id == user_id,
            transactions.c.category == category,
            transactions.c.type == DEBIT,
        )
    ).mappings().all()
    return sum_admitted_debits(rows, category=category)


def _insert_budget(conn: Connection, user_id: int, category: str, limit: Decimal) -> dict:
    spent = _ledger_debit_total(conn, user_id, category)
    row = conn.execute(
        insert(budgets)
        .values(user_id=user_id, category=category, limit_amount=limit, spent=spent)
        .returning(*budgets.c)
    ).mappings().first()
    return dict(row)


def _update_limit(conn: Connection, user_id: int, category: str, limit: Decimal) -> dict | None:
    row = conn.execute(
        update(budgets)
        .where(budgets.c.user_id == user_id, budgets.c.category == category)
        .values(limit_amount=limit)
        .returning(*budgets.c)
    ).mappings().first()
    return dict(row) if row else None


def _update_by_id(
    conn: Connection, user_id: int, budget_id: int, category: str, limit: Decimal
) -> dict | None:
    current = conn.execute(
        select(budgets).where(budgets.c.id == budget_id, budgets.c.user_id == user_id)
    ).mappings().first()
    if not current:
        return None
    values: dict[str, Any] = {"limit_amount": limit}
    if current["category"] != category:
        # Renamed budgets follow the ledger of their new category.
        values["category"] = category
        values["spent"] = _ledger_debit_total(conn, user_id, category)
    row = conn.execute(
        update(budgets)
        .where(budgets.c.id == budget_id)
        .values(**values)
        .returning(*budgets.c)
    ).mappings().first()
    return dict(row)


def _select_budgets(conn: Connection, user_id: int) -> list[dict]:
    rows = conn.execute(
        select(budgets).where(budgets.c.user_id == user_id).order_by(budgets.c.id.asc())
    ).mappings().all()
    return [dict(row) for row in rows]


def _coerce_amount(amount: Any) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
