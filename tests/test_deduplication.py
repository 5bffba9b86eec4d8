"""Tests for TransactionDeduplicator."""

from datetime import date
from decimal import Decimal

from backend.app.bank_integration.deduplication import CSV_EXTERNAL_ID_PREFIX, TransactionDeduplicator
from backend.app.bank_integration.schemas import NormalizedTransaction


def tx(external_id="", amount="-3.00", description="Coffee", day=15):
    return NormalizedTransaction(
        external_id=external_id,
        amount=Decimal(amount),
        description=description,
        transaction_date=date(2024, 1, day),
        type="expense"
    )


class TestGenerateHash:

    def test_normalizes_inputs(self):
        a = TransactionDeduplicator.generate_hash(date(2024, 1, 15), Decimal("-12.50"), "Coffee Shop")
        b = TransactionDeduplicator.generate_hash(date(2024, 1, 15), Decimal("-12.5"), "  coffee shop ")

        assert a == b
        assert len(a) == 32

    def test_reference_changes_hash(self):
        base = TransactionDeduplicator.generate_hash(date(2024, 1, 15), Decimal("1"), "x")
        with_ref = TransactionDeduplicator.generate_hash(date(2024, 1, 15), Decimal("1"), "x", "REF-1")

        assert base != with_ref


class TestCsvExternalIds:

    def test_prefix_and_occurrence(self):
        first = TransactionDeduplicator.csv_external_id(date(2024, 1, 15), Decimal("-3"), "Coffee")
        second = TransactionDeduplicator.csv_external_id(date(2024, 1, 15), Decimal("-3"), "Coffee", occurrence=2)

        assert first.startswith(CSV_EXTERNAL_ID_PREFIX)
        assert first != second

    def test_assign_in_file_order(self):
        transactions = [tx(), tx(day=16), tx()]

        TransactionDeduplicator.assign_csv_external_ids(transactions)

        assert transactions[0].external_id == TransactionDeduplicator.csv_external_id(
            date(2024, 1, 15), Decimal("-3.00"), "Coffee", 1
        )
        assert transactions[2].external_id == TransactionDeduplicator.csv_external_id(
            date(2024, 1, 15), Decimal("-3.00"), "Coffee", 2
        )
        assert len({t.external_id for t in transactions}) == 3


class TestFilterNew:

    def test_skips_stored_and_repeated(self):
        transactions = [tx("a"), tx("b"), tx("a"), tx("c")]

        fresh, duplicates = TransactionDeduplicator.filter_new(transactions, {"c"})

        assert [t.external_id for t in fresh] == ["a", "b"]
        assert duplicates == 2

    def test_nothing_stored(self):
        fresh, duplicates = TransactionDeduplicator.filter_new([tx("a")], [])
        assert len(fresh) == 1
        assert duplicates == 0
