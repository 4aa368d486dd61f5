import unittest
from decimal import Decimal
from unittest import mock

from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from moneyos.budget_aggregator import list_budgets, recalculate, upsert_budget
from moneyos.errors import ValidationError
from moneyos.ledger_store import transactions
from moneyos.sync_orchestrator import record_transaction, sync_transactions
from moneyos.tests.support import make_store, make_user


def food_debit(txn_hash: str, amount: int = 100) -> dict:
    return {"hash": txn_hash, "type": "DEBIT", "amount": amount, "category": "food"}


class SyncOrchestratorTests(unittest.TestCase):
    def setUp(self) -> None:
        self.store = make_store()
        self.user_id = make_user(self.store)
        upsert_budget(self.store, self.user_id, "food", Decimal("1000"))

    def tearDown(self) -> None:
        self.store.dispose()

    def spent(self, category: str = "food") -> Decimal:
        for row in list_budgets(self.store, self.user_id):
            if row["category"] == category:
                return row["spent"]
        raise AssertionError(f"No budget for {category}")

    def assert_budgets_match_ledger(self) -> None:
        before = {row["id"]: row["spent"] for row in list_budgets(self.store, self.user_id)}
        after = {row["id"]: row["spent"] for row in recalculate(self.store, self.user_id)}
        self.assertEqual(before, after)

    def test_empty_batch_is_a_no_op(self) -> None:
        result = sync_transactions(self.store, self.user_id, [])

        self.assertEqual(result.added, 0)
        self.assertEqual(result.failed, [])
        self.assertEqual(self.spent(), Decimal("0"))

    def test_resync_of_same_batch_admits_nothing(self) -> None:
        batch = [food_debit("h1")]

        first = sync_transactions(self.store, self.user_id, batch)
        self.assertEqual(first.added, 1)
        self.assertEqual(self.spent(), Decimal("100"))

        second = sync_transactions(self.store, self.user_id, batch)
        self.assertEqual(second.added, 0)
        self.assertEqual(second.duplicates, 1)
        self.assertEqual(self.spent(), Decimal("100"))
        self.assert_budgets_match_ledger()

    def test_duplicate_inside_one_batch_counts_once(self) -> None:
        result = sync_transactions(
            self.store, self.user_id, [food_debit("h1"), food_debit("h1"), food_debit("h2", 50)]
        )

        self.assertEqual(result.added, 2)
        self.assertEqual(result.duplicates, 1)
        self.assertEqual(self.spent(), Decimal("150"))

    def test_identical_amounts_with_distinct_hashes_are_kept_apart(self) -> None:
        result = sync_transactions(self.store, self.user_id, [food_debit("h1"), food_debit("h2")])

        self.assertEqual(result.added, 2)
        self.assertEqual(self.spent(), Decimal("200"))

    def test_credit_never_touches_budgets(self) -> None:
        upsert_budget(self.store, self.user_id, "salary", Decimal("0"))

        result = sync_transactions(
            self.store,
            self.user_id,
            [{"hash": "c1", "type": "CREDIT", "amount": 500, "category": "salary"}],
        )

        self.assertEqual(result.added, 1)
        self.assertEqual(self.spent("salary"), Decimal("0"))
        self.assertEqual(self.spent("food"), Decimal("0"))

    def test_malformed_candidates_are_itemized(self) -> None:
        result = sync_transactions(
            self.store,
            self.user_id,
            [
                food_debit("h1"),
                {"hash": "bad", "amount": "lots", "category": "food"},
                "not-an-object",
                food_debit("h2", 20),
            ],
        )

        self.assertEqual(result.added, 2)
        self.assertTrue(result.partial)
        self.assertEqual([failure.index for failure in result.failed], [1, 2])
        self.assertEqual(result.failed[0].hash, "bad")
        self.assertEqual(self.spent(), Decimal("120"))

    def test_oversized_amount_fails_only_its_candidate(self) -> None:
        batch = [
            food_debit("h1"),
            {"hash": "big", "type": "DEBIT", "amount": "1e30", "category": "food"},
            food_debit("h2", 20),
        ]

        result = sync_transactions(self.store, self.user_id, batch)

        self.assertEqual(result.added, 2)
        self.assertEqual([failure.index for failure in result.failed], [1])
        self.assertEqual(self.spent(), Decimal("120"))
        self.assert_budgets_match_ledger()

    def test_missing_hash_is_derived_from_content(self) -> None:
        message = {
            "amount": "Rs. 250",
            "category": "food",
            "date": "2024-05-01",
            "from": "AX-HDFCBK",
            "body": "Rs 250 debited at CAFE",
        }

        self.assertEqual(sync_transactions(self.store, self.user_id, [message]).added, 1)
        self.assertEqual(sync_transactions(self.store, self.user_id, [message]).added, 0)
        self.assertEqual(self.spent(), Decimal("250"))

    def test_aggregation_failure_keeps_transaction(self) -> None:
        failure = OperationalError("UPDATE budgets", {}, Exception("database is locked"))
        with mock.patch(
            "moneyos.sync_orchestrator.apply_admitted_debit", side_effect=failure
        ), self.assertLogs("moneyos.sync", level="ERROR"):
            result = sync_transactions(self.store, self.user_id, [food_debit("h1")])

        self.assertEqual(result.added, 1)
        self.assertEqual(result.unaggregated, ["h1"])
        with self.store.begin() as conn:
            stored = conn.execute(select(func.count()).select_from(transactions)).scalar_one()
        self.assertEqual(stored, 1)
        self.assertEqual(self.spent(), Decimal("0"))

        recalculate(self.store, self.user_id)
        self.assertEqual(self.spent(), Decimal("100"))

    def test_invariant_holds_across_mixed_operations(self) -> None:
        upsert_budget(self.store, self.user_id, "rent", Decimal("900"))
        sync_transactions(self.store, self.user_id, [food_debit("h1"), food_debit("h2", 35)])
        record_transaction(self.store, self.user_id, {"amount": 15, "category": "food"})
        record_transaction(self.store, self.user_id, {"amount": 800, "category": "rent"})
        sync_transactions(self.store, self.user_id, [food_debit("h1"), food_debit("h3", 5)])
        upsert_budget(self.store, self.user_id, "food", Decimal("2000"))

        self.assertEqual(self.spent("food"), Decimal("155"))
        self.assertEqual(self.spent("rent"), Decimal("800"))
        self.assert_budgets_match_ledger()


class RecordTransactionTests(unittest.TestCase):
    def setUp(self) -> None:
        self.store = make_store()
        self.user_id = make_user(self.store)
        upsert_budget(self.store, self.user_id, "food", Decimal("1000"))

    def tearDown(self) -> None:
        self.store.dispose()

    def test_manual_debit_is_aggregated(self) -> None:
        recorded = record_transaction(
            self.store, self.user_id, {"id": "tx-1", "amount": 42, "category": "food"}
        )

        self.assertTrue(recorded.admission.admitted)
        self.assertTrue(recorded.aggregated)
        self.assertEqual(recorded.admission.row["client_id"], "tx-1")
        self.assertEqual(list_budgets(self.store, self.user_id)[0]["spent"], Decimal("42"))

    def test_hashed_manual_entry_is_deduplicated(self) -> None:
        record_transaction(self.store, self.user_id, food_debit("h1"))
        recorded = record_transaction(self.store, self.user_id, food_debit("h1"))

        self.assertFalse(recorded.admission.admitted)
        self.assertEqual(list_budgets(self.store, self.user_id)[0]["spent"], Decimal("100"))

    def test_invalid_entry_raises(self) -> None:
        with self.assertRaises(ValidationError):
            record_transaction(self.store, self.user_id, {"amount": "abc"})


if __name__ == "__main__":
    unittest.main()
