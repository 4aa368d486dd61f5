from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from sqlalchemy.exc import SQLAlchemyError

from moneyos.budget_aggregator import apply_admitted_debit
from moneyos.candidates import Candidate, normalize_candidate
from moneyos.dedup import Admission, admit
from moneyos.errors import ValidationError
from moneyos.ledger_store import LedgerStore

logger = logging.getLogger("moneyos.sync")


@dataclass(frozen=True)
class CandidateFailure:
    index: int
    hash: str | None
    error: str

    def to_dict(self) -> dict:
        return {"index": self.index, "hash": self.hash, "error": self.error}


@dataclass
class SyncResult:
    added: int = 0
    duplicates: int = 0
    failed: list[CandidateFailure] = field(default_factory=list)
    unaggregated: list[str | None] = field(default_factory=list)

    @property
    def partial(self) -> bool:
        return bool(self.failed)


@dataclass(frozen=True)
class RecordedTransaction:
    admission: Admission
    aggregated: bool


def sync_transactions(
    store: LedgerStore, user_id: int, raw_candidates: Iterable[Mapping[str, Any]]
) -> SyncResult:
    """Apply a batch of SMS-derived candidates for one user.

    Safe to re-run with the same batch: duplicates are skipped and only
    admitted debits reach the budgets. A bad candidate is reported by its
    index and does not stop the rest of the batch.
    """
    result = SyncResult()
    for index, raw in enumerate(raw_candidates):
        raw_hash = raw.get("hash") if isinstance(raw, Mapping) else None
        if raw_hash is not None:
            raw_hash = str(raw_hash)
        try:
            candidate = normalize_candidate(raw, derive_hash=True)
        except ValidationError as exc:
            result.failed.append(CandidateFailure(index, raw_hash, exc.message))
            continue

        try:
            recorded = _admit_and_aggregate(store, user_id, candidate)
        except SQLAlchemyError:
            logger.exception("Failed to store candidate %s for user %s", candidate.hash, user_id)
            result.failed.append(CandidateFailure(index, candidate.hash, "Failed to store transaction."))
            continue

        if not recorded.admission.admitted:
            result.duplicates += 1
            continue
        result.added += 1
        if not recorded.aggregated:
            result.unaggregated.append(candidate.hash)

    logger.info(
        "Sync for user %s: %s added, %s duplicates, %s failed",
        user_id,
        result.added,
        result.duplicates,
        len(result.failed),
    )
    return result


def record_transaction(
    store: LedgerStore, user_id: int, raw: Mapping[str, Any]
) -> RecordedTransaction:
    """Store one manually entered transaction.

    Entries without a hash are always admitted; entries carrying one go
    through the same duplicate check as a sync batch.
    """
    candidate = normalize_candidate(raw)
    return _admit_and_aggregate(store, user_id, candidate)


def _admit_and_aggregate(
    store: LedgerStore, user_id: int, candidate: Candidate
) -> RecordedTransaction:
    admission = admit(store, user_id, candidate)
    if not admission.admitted or not candidate.is_debit:
        return RecordedTransaction(admission=admission, aggregated=True)
    try:
        apply_admitted_debit(store, user_id, candidate.category, candidate.amount)
    except SQLAlchemyError:
        # The transaction stays; recalculate() restores the budget total.
        logger.exception(
            "Budget aggregation failed for transaction %s (user %s, category %s)",
            admission.row["id"],
            user_id,
            candidate.category,
        )
        return RecordedTransaction(admission=admission, aggregated=False)
    return RecordedTransaction(admission=admission, aggregated=True)
