from __future__ import annotations

from decimal import Decimal

from sqlalchemy import insert, select

from moneyos.errors import ValidationError
from moneyos.ledger_store import LedgerStore, goals

DEFAULT_GOAL_STATUS = "active"


def create_goal(
    store: LedgerStore,
    user_id: int,
    name: str,
    target_amount: Decimal,
    saved_amount: Decimal = Decimal("0"),
    deadline: str | None = None,
    status: str | None = None,
    client_id: str | None = None,
) -> dict:
    name = name.strip()
    if not name:
        raise ValidationError("Goal name required.")
    if target_amount < 0 or saved_amount < 0:
        raise ValidationError("Goal amounts cannot be negative.")
    status = (status or "").strip() or DEFAULT_GOAL_STATUS
    if len(status) > 50:
        raise ValidationError("Goal status is too long.")
    stmt = (
        insert(goals)
        .values(
            user_id=user_id,
            client_id=client_id,
            name=name,
            target_amount=target_amount,
            saved_amount=saved_amount,
            deadline=deadline.strip() if deadline else None,
            status=status,
        )
        .returning(*goals.c)
    )
    with store.begin() as conn:
        row = conn.execute(stmt).mappings().first()
    return dict(row)


def list_goals(store: LedgerStore, user_id: int) -> list[dict]:
    with store.begin() as conn:
        rows = conn.execute(
            select(goals).where(goals.c.user_id == user_id).order_by(goals.c.id.asc())
        ).mappings().all()
    return [dict(row) for row in rows]
