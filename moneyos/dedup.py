from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from datetime import date as date_type
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING

from sqlalchemy import insert, select
from sqlalchemy.exc import IntegrityError

from moneyos.ledger_store import LedgerStore, transactions

if TYPE_CHECKING:
    from moneyos.candidates import Candidate

logger = logging.getLogger("moneyos.dedup")


class AdmissionStatus(str, Enum):
    ADMITTED = "ADMITTED"
    DUPLICATE = "DUPLICATE"


@dataclass(frozen=True)
class Admission:
    status: AdmissionStatus
    hash: str | None
    row: dict | None = None

    @property
    def admitted(self) -> bool:
        return self.status is AdmissionStatus.ADMITTED


def compute_dedup_hash(
    sender: str | None,
    amount: Decimal,
    date: str | date_type | None,
    body: str | None,
) -> str:
    """Fingerprint a message from its sender, amount, date and body.

    Two distinct purchases that share all four fields collapse into one
    hash; callers that can tell them apart should send their own hash.
    """
    date_text = date.isoformat() if isinstance(date, date_type) else (date or "")
    parts = [
        (sender or "").strip().lower(),
        format(Decimal(amount).normalize(), "f"),
        date_text.strip(),
        " ".join((body or "").split()),
    ]
    return hashlib.sha256("\x1f".join(parts).encode("utf-8")).hexdigest()


def admit(store: LedgerStore, user_id: int, candidate: "Candidate") -> Admission:
    """Insert the candidate unless ``(user_id, hash)`` already exists.

    The unique constraint on the transactions table decides the race, so
    overlapping sync calls cannot both insert the same candidate. The row
    is committed before this returns.
    """
    stmt = insert(transactions).values(**candidate.to_row(user_id)).returning(*transactions.c)
    try:
        with store.begin() as conn:
            row = conn.execute(stmt).mappings().first()
    except IntegrityError:
        if candidate.hash is None or not _hash_exists(store, user_id, candidate.hash):
            raise
        logger.debug("Duplicate transaction %s for user %s", candidate.hash, user_id)
        return Admission(status=AdmissionStatus.DUPLICATE, hash=candidate.hash)

    logger.debug("Admitted transaction %s for user %s", candidate.hash, user_id)
    return Admission(status=AdmissionStatus.ADMITTED, hash=candidate.hash, row=dict(row))


def _hash_exists(store: LedgerStore, user_id: int, txn_hash: str) -> bool:
    with store.begin() as conn:
        found = conn.execute(
            select(transactions.c.id).where(
                transactions.c.user_id == user_id,
                transactions.c.hash == txn_hash,
            )
        ).first()
    return found is not None
