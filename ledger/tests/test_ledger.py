"""
Unit Tests for the Ledger Service

Tests cover:
1. Khata entry flow (create, update, delete) and customer totals
2. Soft-deleted customers
3. Due-dated credits, mark-as-paid and merchant stats
4. Running-balance statements
5. Entry and aggregate write failures, replay and repair
6. Concurrent writers on one customer
7. Live subscriptions
"""

import threading
from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest

from common.errors import StoreUnavailableError
from ledger.balance import CustomerDelta
from ledger.models import (
    CreateCustomerRequest,
    UpdateCustomerRequest,
    CreateEntryRequest,
    UpdateEntryRequest,
    EntryType,
    EntryStatus,
)
from ledger.service import (
    LedgerService,
    CustomerNotFoundError,
    CustomerInactiveError,
    EntryNotFoundError,
)
from ledger.store import ENTRIES


MERCHANT_ID = "merchant-123"


def make_customer(service, name="Ramesh Kumar", merchant_id=MERCHANT_ID):
    return service.add_customer(merchant_id, CreateCustomerRequest(name=name, phone="9876543210"))


def credit(amount, description="", due_date=None):
    return CreateEntryRequest(type=EntryType.CREDIT, amount=amount, description=description, due_date=due_date)


def debit(amount, description=""):
    return CreateEntryRequest(type=EntryType.DEBIT, amount=amount, description=description)


class TestKhataEntryFlow:
    """Tests for adding, editing and deleting khata entries."""

    def test_new_customer_starts_at_zero(self, clock):
        """Test that a new customer has empty totals."""
        service = LedgerService(clock=clock)
        customer = make_customer(service)

        assert customer.total_balance == Decimal("0")
        assert customer.total_credit == Decimal("0")
        assert customer.total_debit == Decimal("0")
        assert customer.last_entry_at is None
        assert customer.is_active

    def test_end_to_end_scenario(self, clock):
        """Test credit, partial payment, then deleting the credit."""
        service = LedgerService(clock=clock)
        customer = make_customer(service)

        rice = service.add_entry(customer.id, credit(300, "Rice 5kg"))
        assert rice.customer.total_balance == Decimal("300.00")
        assert rice.customer.total_credit == Decimal("300.00")

        clock.advance(60)
        partial = service.add_entry(customer.id, debit(100, "partial payment"))
        assert partial.customer.total_balance == Decimal("200.00")

        deleted = service.delete_entry(rice.entry.id)
        assert deleted.customer.total_balance == Decimal("-100.00")
        assert deleted.customer.total_credit == Decimal("0.00")
        assert deleted.customer.total_debit == Decimal("100.00")
        assert deleted.customer.is_balanced()

    def test_entry_status_defaults(self, clock):
        """Test that only a due-dated credit starts out pending."""
        service = LedgerService(clock=clock)
        customer = make_customer(service)

        assert service.add_entry(customer.id, credit(50)).entry.status == EntryStatus.PAID
        assert service.add_entry(customer.id, credit(50, due_date=date(2024, 2, 1))).entry.status == EntryStatus.PENDING
        assert service.add_entry(customer.id, debit(50)).entry.status == EntryStatus.PAID

    def test_note_does_not_move_balance(self, clock):
        """Test that a NOTE entry only updates last_entry_at."""
        service = LedgerService(clock=clock)
        customer = make_customer(service)

        response = service.add_entry(
            customer.id, CreateEntryRequest(type=EntryType.NOTE, description="Will pay on Friday")
        )

        assert response.customer.total_balance == Decimal("0")
        assert response.customer.last_entry_at == clock()

    def test_update_changes_type_and_amount(self, clock):
        """Test that editing an entry replaces its old contribution."""
        service = LedgerService(clock=clock)
        customer = make_customer(service)
        added = service.add_entry(customer.id, credit(300))

        updated = service.update_entry(added.entry.id, UpdateEntryRequest(type=EntryType.DEBIT, amount=50))

        assert updated.entry.version == 2
        assert updated.entry.seq == added.entry.seq
        assert updated.customer.total_balance == Decimal("-50.00")
        assert updated.customer.total_credit == Decimal("0.00")
        assert updated.customer.total_debit == Decimal("50.00")

    def test_update_clearing_due_date_marks_paid(self, clock):
        """Test that removing the due date recomputes the entry status."""
        service = LedgerService(clock=clock)
        customer = make_customer(service)
        added = service.add_entry(customer.id, credit(100, due_date=date(2024, 1, 20)))

        updated = service.update_entry(added.entry.id, UpdateEntryRequest(due_date=None))

        assert updated.entry.due_date is None
        assert updated.entry.status == EntryStatus.PAID

    def test_delete_latest_entry_recomputes_last_entry_at(self, clock):
        """Test that last_entry_at falls back to the newest remaining entry."""
        service = LedgerService(clock=clock)
        customer = make_customer(service)
        first = service.add_entry(customer.id, credit(10))
        clock.advance(30)
        second = service.add_entry(customer.id, credit(20))

        response = service.delete_entry(second.entry.id)

        assert response.customer.last_entry_at == first.entry.created_at

    def test_delete_only_entry_clears_last_entry_at(self, clock):
        """Test that deleting the only entry leaves no last_entry_at."""
        service = LedgerService(clock=clock)
        customer = make_customer(service)
        added = service.add_entry(customer.id, debit(10))

        response = service.delete_entry(added.entry.id)

        assert response.customer.last_entry_at is None
        assert response.customer.total_balance == Decimal("0.00")

    def test_unknown_ids_raise(self, clock):
        """Test not-found errors for customers and entries."""
        service = LedgerService(clock=clock)

        with pytest.raises(CustomerNotFoundError):
            service.add_entry(uuid4(), credit(10))
        with pytest.raises(EntryNotFoundError):
            service.delete_entry(uuid4())
        with pytest.raises(EntryNotFoundError):
            service.update_entry(uuid4(), UpdateEntryRequest(amount=5))

    def test_negative_amount_rejected(self):
        """Test that validation rejects a negative amount before any write."""
        with pytest.raises(ValueError):
            CreateEntryRequest(type=EntryType.CREDIT, amount="-5")
        with pytest.raises(ValueError):
            CreateEntryRequest(type=EntryType.CREDIT, amount="abc")

    def test_list_entries_newest_first(self, clock):
        """Test entry listing order."""
        service = LedgerService(clock=clock)
        customer = make_customer(service)
        first = service.add_entry(customer.id, credit(10))
        clock.advance(5)
        second = service.add_entry(customer.id, credit(20))

        entries = service.list_entries(customer.id)

        assert [e.id for e in entries] == [second.entry.id, first.entry.id]


class TestCustomers:
    """Tests for customer profile and soft delete."""

    def test_update_profile(self, clock):
        """Test partial profile updates."""
        service = LedgerService(clock=clock)
        customer = make_customer(service)

        updated = service.update_customer(customer.id, UpdateCustomerRequest(phone="9000000000", tags=["regular"]))

        assert updated.phone == "9000000000"
        assert updated.tags == ["regular"]
        assert updated.name == "Ramesh Kumar"

    def test_soft_delete_hides_customer(self, clock):
        """Test that a deleted customer is hidden but kept with its entries."""
        service = LedgerService(clock=clock)
        customer = make_customer(service)
        service.add_entry(customer.id, credit(100))

        service.delete_customer(customer.id)

        assert service.list_customers(MERCHANT_ID) == []
        assert service.get_customer(customer.id).is_active is False
        assert len(service.list_entries(customer.id)) == 1

    def test_soft_deleted_customer_rejects_entries(self, clock):
        """Test that no new entries land on a deleted customer."""
        service = LedgerService(clock=clock)
        customer = make_customer(service)
        service.delete_customer(customer.id)

        with pytest.raises(CustomerInactiveError):
            service.add_entry(customer.id, credit(100))

    def test_customers_are_per_merchant(self, clock):
        """Test merchant isolation of customer lists."""
        service = LedgerService(clock=clock)
        make_customer(service, "A")
        make_customer(service, "B", merchant_id="other-merchant")

        assert [c.name for c in service.list_customers(MERCHANT_ID)] == ["A"]


class TestDueDatesAndStats:
    """Tests for overdue credits, mark-as-paid and khata stats."""

    def test_stats_split_collect_and_pay(self, clock):
        """Test totals to collect and to pay across customers."""
        service = LedgerService(clock=clock)
        owes = make_customer(service, "Owes")
        advance = make_customer(service, "Advance")
        service.add_entry(owes.id, credit(300, due_date=date(2024, 1, 10)))
        service.add_entry(advance.id, debit(100))

        stats = service.get_khata_stats(MERCHANT_ID)

        assert stats.total_to_collect == Decimal("300.00")
        assert stats.total_to_pay == Decimal("100.00")
        assert stats.customers_count == 2
        assert stats.overdue_count == 1

    def test_mark_paid_clears_overdue_but_not_balance(self, clock):
        """Test that settling a credit is a status change only."""
        service = LedgerService(clock=clock)
        customer = make_customer(service)
        added = service.add_entry(customer.id, credit(300, due_date=date(2024, 1, 10)))

        paid = service.mark_entry_paid(added.entry.id)

        assert paid.status == EntryStatus.PAID
        assert paid.paid_at == clock()
        assert service.get_customer(customer.id).total_balance == Decimal("300.00")
        assert service.get_khata_stats(MERCHANT_ID).overdue_count == 0

    def test_future_due_date_not_overdue(self, clock):
        """Test that a credit due later is not counted as overdue."""
        service = LedgerService(clock=clock)
        customer = make_customer(service)
        service.add_entry(customer.id, credit(300, due_date=date(2024, 1, 30)))

        assert service.get_khata_stats(MERCHANT_ID).overdue_count == 0


class TestStatement:
    """Tests for running-balance statements."""

    def test_running_balance_with_equal_timestamps(self, clock):
        """Test that entries sharing a timestamp replay in insertion order."""
        service = LedgerService(clock=clock)
        customer = make_customer(service)
        service.add_entry(customer.id, credit(300))
        service.add_entry(customer.id, debit(100))
        service.add_entry(customer.id, credit(50))

        statement = service.get_statement(customer.id)

        assert [line.balance_after for line in statement.lines] == [
            Decimal("300.00"), Decimal("200.00"), Decimal("250.00")
        ]
        assert statement.closing_balance == statement.customer.total_balance

    def test_statement_is_stable(self, clock):
        """Test that repeated statements are identical."""
        service = LedgerService(clock=clock)
        customer = make_customer(service)
        for amount in (10, 20, 30):
            service.add_entry(customer.id, credit(amount))

        first = service.get_statement(customer.id)
        second = service.get_statement(customer.id)

        assert [line.entry.id for line in first.lines] == [line.entry.id for line in second.lines]


class TestAggregateFailures:
    """Tests for failed aggregate writes, replay and repair."""

    def fail_next_aggregate_write(self, service, monkeypatch):
        original = service.storage.apply_customer_delta
        calls = {"n": 0}

        def flaky(*args, **kwargs):
            calls["n"] += 1
            if calls["n"] == 1:
                raise StoreUnavailableError("store offline")
            return original(*args, **kwargs)

        monkeypatch.setattr(service.storage, "apply_customer_delta", flaky)

    def test_failed_write_is_replayed(self, clock, monkeypatch):
        """Test that a journaled aggregate write is finished by replay."""
        service = LedgerService(clock=clock)
        customer = make_customer(service)
        self.fail_next_aggregate_write(service, monkeypatch)

        with pytest.raises(StoreUnavailableError):
            service.add_entry(customer.id, credit(300))

        assert service.get_customer(customer.id).total_balance == Decimal("0")
        assert len(service.list_entries(customer.id)) == 1

        assert service.replay_pending() == 1
        assert service.get_customer(customer.id).total_balance == Decimal("300.00")
        # replaying again must not double count
        assert service.replay_pending() == 0
        assert service.get_customer(customer.id).total_balance == Decimal("300.00")

    def test_repair_fixes_drift(self, clock, monkeypatch):
        """Test that a full rescan overwrites drifted totals."""
        service = LedgerService(clock=clock)
        customer = make_customer(service)
        service.add_entry(customer.id, debit(40))
        self.fail_next_aggregate_write(service, monkeypatch)
        with pytest.raises(StoreUnavailableError):
            service.add_entry(customer.id, credit(300))

        report = service.repair_customer(customer.id)

        assert report.drift_detected
        assert report.entries_scanned == 2
        assert report.after["total_balance"] == Decimal("260.00")
        assert service.get_customer(customer.id).total_balance == Decimal("260.00")
        assert service.replay_pending() == 0

    def test_failed_insert_leaves_nothing_to_replay(self, clock, monkeypatch):
        """Test that a failed entry insert does not leave a delta for replay."""
        service = LedgerService(clock=clock)
        customer = make_customer(service)

        def offline(*args, **kwargs):
            raise StoreUnavailableError("store offline")

        monkeypatch.setattr(service.storage, "insert_entry", offline)
        with pytest.raises(StoreUnavailableError):
            service.add_entry(customer.id, credit(300))
        monkeypatch.undo()

        assert service.replay_pending() == 0
        assert service.list_entries(customer.id) == []
        assert service.get_customer(customer.id).total_balance == Decimal("0.00")
        assert service.repair_customer(customer.id).drift_detected is False

    def test_failed_delete_leaves_balance_alone(self, clock, monkeypatch):
        """Test that a failed entry delete keeps the entry and its balance."""
        service = LedgerService(clock=clock)
        customer = make_customer(service)
        entry = service.add_entry(customer.id, credit(300)).entry

        def offline(*args, **kwargs):
            raise StoreUnavailableError("store offline")

        monkeypatch.setattr(service.storage, "delete_entry", offline)
        with pytest.raises(StoreUnavailableError):
            service.delete_entry(entry.id)
        monkeypatch.undo()

        assert service.replay_pending() == 0
        assert service.get_entry(entry.id).id == entry.id
        assert service.get_customer(customer.id).total_balance == Decimal("300.00")

    def test_failed_update_keeps_old_amount(self, clock, monkeypatch):
        """Test that a failed entry replace leaves the old amount counted."""
        service = LedgerService(clock=clock)
        customer = make_customer(service)
        entry = service.add_entry(customer.id, credit(300)).entry

        def offline(*args, **kwargs):
            raise StoreUnavailableError("store offline")

        monkeypatch.setattr(service.storage, "replace_entry", offline)
        with pytest.raises(StoreUnavailableError):
            service.update_entry(entry.id, UpdateEntryRequest(amount=500))
        monkeypatch.undo()

        assert service.replay_pending() == 0
        assert service.get_entry(entry.id).amount == Decimal("300.00")
        assert service.get_customer(customer.id).total_balance == Decimal("300.00")

    def test_older_update_replayed_after_newer_one(self, clock, monkeypatch):
        """Test that a pending edit is still applied once a later edit has landed."""
        service = LedgerService(clock=clock)
        customer = make_customer(service)
        entry = service.add_entry(customer.id, credit(100)).entry
        self.fail_next_aggregate_write(service, monkeypatch)
        with pytest.raises(StoreUnavailableError):
            service.update_entry(entry.id, UpdateEntryRequest(amount=150))

        service.update_entry(entry.id, UpdateEntryRequest(amount=200))
        assert service.replay_pending() == 1

        assert service.get_customer(customer.id).total_balance == Decimal("200.00")
        assert service.repair_customer(customer.id).drift_detected is False

    def test_repair_without_drift(self, clock):
        """Test that a consistent customer is left alone."""
        service = LedgerService(clock=clock)
        customer = make_customer(service)
        service.add_entry(customer.id, credit(10))

        report = service.repair_customer(customer.id)

        assert not report.drift_detected
        assert report.before == report.after


class TestAppliedOperations:
    """Tests for the per-customer record of applied aggregate operations."""

    def test_only_last_op_per_entry_is_kept(self, clock):
        """Test that editing an entry does not grow the applied-op record."""
        service = LedgerService(clock=clock)
        customer = make_customer(service)
        entry = service.add_entry(customer.id, credit(100)).entry
        for amount in (110, 120, 130, 140):
            service.update_entry(entry.id, UpdateEntryRequest(amount=amount))

        applied = service.storage.customers[customer.id]["applied_ops"]

        assert applied == {str(entry.id): f"{entry.id}:5:update"}

    def test_deleted_entry_is_forgotten(self, clock):
        """Test that deleting an entry drops its applied-op record."""
        service = LedgerService(clock=clock)
        customer = make_customer(service)
        kept = service.add_entry(customer.id, credit(100)).entry
        dropped = service.add_entry(customer.id, debit(40)).entry

        service.delete_entry(dropped.id)

        applied = service.storage.customers[customer.id]["applied_ops"]
        assert set(applied) == {str(kept.id)}

    def test_same_op_applied_once(self, clock):
        """Test that re-applying the last operation does not double count."""
        service = LedgerService(clock=clock)
        customer = make_customer(service)
        entry = service.add_entry(customer.id, credit(100)).entry
        record = service.storage.customers[customer.id]
        op_id = record["applied_ops"][str(entry.id)]

        delta = CustomerDelta(balance=Decimal("100.00"), credit=Decimal("100.00"), debit=Decimal("0.00"))
        service.storage.apply_customer_delta(customer.id, op_id, delta, clock())

        assert service.get_customer(customer.id).total_balance == Decimal("100.00")


class TestConcurrency:
    """Tests for concurrent writers on one customer."""

    def test_parallel_entries_keep_totals(self):
        """Test that concurrent adds are all reflected in the totals."""
        service = LedgerService()
        customer = make_customer(service)
        errors = []

        def worker(entry_type):
            try:
                for _ in range(25):
                    service.add_entry(customer.id, CreateEntryRequest(type=entry_type, amount="1.50"))
            except Exception as e:
                errors.append(e)

        threads = [
            threading.Thread(target=worker, args=(t,))
            for t in (EntryType.CREDIT, EntryType.CREDIT, EntryType.DEBIT, EntryType.DEBIT, EntryType.CREDIT)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        final = service.get_customer(customer.id)
        assert final.total_credit == Decimal("112.50")
        assert final.total_debit == Decimal("75.00")
        assert final.total_balance == Decimal("37.50")
        assert service.repair_customer(customer.id).drift_detected is False


class TestSubscriptions:
    """Tests for live entry and customer streams."""

    def test_entry_stream_and_cancel(self, clock):
        """Test that a cancelled subscription stops receiving events."""
        service = LedgerService(clock=clock)
        customer = make_customer(service)
        other = make_customer(service, "Other")
        subscription = service.subscribe_entries(customer.id)

        service.add_entry(other.id, credit(5))
        service.add_entry(customer.id, credit(10))

        event = subscription.get(timeout=1)
        assert event.collection == ENTRIES
        assert event.action == "created"
        assert event.record["customer_id"] == customer.id

        subscription.cancel()
        service.add_entry(customer.id, credit(20))

        assert subscription.get(timeout=0.1) is None
        assert service.storage.feed.subscriber_count == 0

    def test_customer_stream_sees_new_totals(self, clock):
        """Test that customer subscribers get the updated aggregate."""
        service = LedgerService(clock=clock)
        customer = make_customer(service)

        with service.subscribe_customers(MERCHANT_ID) as subscription:
            service.add_entry(customer.id, credit(300))
            event = subscription.get(timeout=1)

        assert event.record["total_balance"] == Decimal("300.00")
        assert "applied_ops" not in event.record
