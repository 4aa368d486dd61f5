from __future__ import annotations

from decimal import Decimal
from typing import Any, Iterable, Optional

from sqlalchemy import select, update

from moneyos.budget_aggregator import BudgetSpec, replace_budgets
from moneyos.errors import NotFoundError
from moneyos.ledger_store import LedgerStore, users

SETTINGS_COLUMNS = (
    users.c.monthly_income,
    users.c.current_balance,
    users.c.currency,
    users.c.recurring_expenses,
    users.c.onboarding_complete,
)


def get_settings(store: LedgerStore, user_id: int) -> dict:
    with store.begin() as conn:
        row = conn.execute(select(*SETTINGS_COLUMNS).where(users.c.id == user_id)).mappings().first()
    if not row:
        raise NotFoundError("User not found.")
    return dict(row)


def update_settings(
    store: LedgerStore,
    user_id: int,
    *,
    monthly_income: Optional[Decimal] = None,
    current_balance: Optional[Decimal] = None,
    recurring_expenses: Optional[list[dict[str, Any]]] = None,
    onboarding_complete: Optional[bool] = None,
) -> dict:
    """Apply the provided settings fields; omitted fields keep their value."""
    values: dict[str, Any] = {}
    if monthly_income is not None:
        values["monthly_income"] = monthly_income
    if current_balance is not None:
        values["current_balance"] = current_balance
    if recurring_expenses is not None:
        values["recurring_expenses"] = recurring_expenses
    if onboarding_complete is not None:
        values["onboarding_complete"] = onboarding_complete
    if not values:
        return get_settings(store, user_id)

    with store.begin() as conn:
        row = conn.execute(
            update(users).where(users.c.id == user_id).values(**values).returning(*SETTINGS_COLUMNS)
        ).mappings().first()
    if not row:
        raise NotFoundError("User not found.")
    return dict(row)


def complete_onboarding(
    store: LedgerStore,
    user_id: int,
    *,
    monthly_income: Optional[Decimal] = None,
    current_balance: Optional[Decimal] = None,
    recurring_expenses: Optional[list[dict[str, Any]]] = None,
    initial_budgets: Iterable[BudgetSpec] = (),
) -> dict:
    settings = update_settings(
        store,
        user_id,
        monthly_income=monthly_income,
        current_balance=current_balance,
        recurring_expenses=recurring_expenses,
        onboarding_complete=True,
    )
    initial_budgets = list(initial_budgets)
    if initial_budgets:
        replace_budgets(store, user_id, initial_budgets)
    return settings
