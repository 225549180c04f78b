import logging
from datetime import date
from typing import Optional
from uuid import UUID, uuid4

from common.clock import Clock, utc_now
from common.errors import StoreUnavailableError
from common.feed import Subscription
from common.money import ZERO
from .balance import (
    CustomerDelta,
    apply_entry_create,
    apply_entry_delete,
    apply_entry_update,
    compute_running_balance,
    recompute_totals,
)
from .models import (
    EntryType,
    EntryStatus,
    Customer,
    LedgerEntry,
    CreateCustomerRequest,
    UpdateCustomerRequest,
    CreateEntryRequest,
    UpdateEntryRequest,
    EntryResponse,
    StatementLine,
    StatementResponse,
    KhataStats,
    RepairReport,
    default_entry_status,
)
from .store import CUSTOMERS, ENTRIES, LedgerStore, op_id_for

logger = logging.getLogger(__name__)

AGGREGATE_FIELDS = ("total_balance", "total_credit", "total_debit", "last_entry_at")


class LedgerServiceError(Exception):
    pass


class CustomerNotFoundError(LedgerServiceError):
    pass


class CustomerInactiveError(LedgerServiceError):
    pass


class EntryNotFoundError(LedgerServiceError):
    pass


class LedgerService:
    def __init__(self, storage: Optional[LedgerStore] = None, clock: Clock = utc_now):
        self.storage = storage or LedgerStore()
        self.clock = clock

    # customers

    def add_customer(self, merchant_id: str, request: CreateCustomerRequest) -> Customer:
        now = self.clock()
        customer_data = {
            "id": uuid4(),
            "merchant_id": merchant_id,
            **request.model_dump(),
            "total_balance": ZERO,
            "total_credit": ZERO,
            "total_debit": ZERO,
            "last_entry_at": None,
            "is_active": True,
            "created_at": now,
            "updated_at": now,
        }
        record = self.storage.insert_customer(customer_data)
        logger.info("Customer %s added for merchant %s", record["id"], merchant_id)
        return Customer(**record)

    def get_customer(self, customer_id: UUID) -> Customer:
        return Customer(**self._require_customer(customer_id))

    def list_customers(self, merchant_id: str) -> list[Customer]:
        customers = [Customer(**c) for c in self.storage.list_customers(merchant_id)]
        customers.sort(key=lambda c: c.updated_at, reverse=True)
        return customers

    def update_customer(self, customer_id: UUID, request: UpdateCustomerRequest) -> Customer:
        self._require_customer(customer_id)
        changes = request.model_dump(exclude_unset=True, exclude_none=True)
        changes["updated_at"] = self.clock()
        return Customer(**self.storage.update_customer(customer_id, changes))

    def delete_customer(self, customer_id: UUID) -> Customer:
        """Soft delete: the customer is hidden but its entries stay."""
        self._require_customer(customer_id)
        record = self.storage.update_customer(customer_id, {"is_active": False, "updated_at": self.clock()})
        logger.info("Customer %s deactivated", customer_id)
        return Customer(**record)

    # entries

    def add_entry(self, customer_id: UUID, request: CreateEntryRequest) -> EntryResponse:
        with self.storage.customer_lock(customer_id):
            customer = self._require_active_customer(customer_id)
            now = self.clock()
            entry_data = {
                "id": uuid4(),
                "customer_id": customer_id,
                "merchant_id": customer.merchant_id,
                "type": request.type,
                "amount": request.amount,
                "description": request.description,
                "note": request.note,
                "due_date": request.due_date,
                "status": default_entry_status(request.type, request.due_date),
                "version": 1,
                "created_at": now,
                "updated_at": now,
                "paid_at": None,
            }
            entry = LedgerEntry(**entry_data)
            delta = apply_entry_create(customer, entry)
            op_id = op_id_for(entry.id, entry.version, "create")

            self.storage.record_pending(op_id, customer_id, delta)
            entry = LedgerEntry(**self._write_entry(op_id, self.storage.insert_entry, entry_data))
            updated = self._apply_aggregate(customer_id, op_id, delta, now)

        logger.info("Entry %s (%s %s) added for customer %s", entry.id, entry.type.value, entry.amount, customer_id)
        return EntryResponse(entry=entry, customer=updated, message="Entry added successfully")

    def update_entry(self, entry_id: UUID, request: UpdateEntryRequest) -> EntryResponse:
        old_entry = self._require_entry(entry_id)
        customer_id = old_entry.customer_id

        with self.storage.customer_lock(customer_id):
            # re-read under the lock, another writer may have edited it
            old_entry = self._require_entry(entry_id)
            customer = self._require_customer_model(customer_id)
            now = self.clock()

            changes = {
                k: v for k, v in request.model_dump(exclude_unset=True).items()
                if v is not None or k == "due_date"
            }
            new_data = {**old_entry.model_dump(), **changes}
            if "type" in changes or "due_date" in changes:
                new_data["status"] = default_entry_status(new_data["type"], new_data["due_date"])
            new_data["version"] = old_entry.version + 1
            new_data["updated_at"] = now
            new_entry = LedgerEntry(**new_data)

            delta = apply_entry_update(customer, old_entry, new_entry)
            op_id = op_id_for(entry_id, new_entry.version, "update")

            self.storage.record_pending(op_id, customer_id, delta)
            written = self._write_entry(op_id, self.storage.replace_entry, entry_id, new_entry.model_dump())
            new_entry = LedgerEntry(**written)
            updated = self._apply_aggregate(customer_id, op_id, delta, now)

        logger.info("Entry %s updated (balance delta %s)", entry_id, delta.balance)
        return EntryResponse(entry=new_entry, customer=updated, message="Entry updated successfully")

    def delete_entry(self, entry_id: UUID) -> EntryResponse:
        entry = self._require_entry(entry_id)
        customer_id = entry.customer_id

        with self.storage.customer_lock(customer_id):
            entry = self._require_entry(entry_id)
            customer = self._require_customer_model(customer_id)
            now = self.clock()
            delta = apply_entry_delete(customer, entry)
            op_id = op_id_for(entry_id, entry.version, "delete")

            self.storage.record_pending(op_id, customer_id, delta)
            self._write_entry(op_id, self.storage.delete_entry, entry_id)
            updated = self._apply_aggregate(customer_id, op_id, delta, now)

        logger.info("Entry %s deleted for customer %s", entry_id, customer_id)
        return EntryResponse(entry=entry, customer=updated, message="Entry deleted successfully")

    def mark_entry_paid(self, entry_id: UUID) -> LedgerEntry:
        """Settle a due-dated credit. Status only, the balance is untouched."""
        entry = self._require_entry(entry_id)
        with self.storage.customer_lock(entry.customer_id):
            entry = self._require_entry(entry_id)
            if entry.status == EntryStatus.PAID:
                return entry
            now = self.clock()
            data = entry.model_dump()
            data.update({"status": EntryStatus.PAID, "paid_at": now, "updated_at": now})
            return LedgerEntry(**self.storage.replace_entry(entry_id, data))

    def get_entry(self, entry_id: UUID) -> LedgerEntry:
        return self._require_entry(entry_id)

    def list_entries(self, customer_id: UUID) -> list[LedgerEntry]:
        self._require_customer(customer_id)
        entries = [LedgerEntry(**e) for e in self.storage.list_entries(customer_id)]
        entries.sort(key=lambda e: (e.created_at, e.seq), reverse=True)
        return entries

    # reporting

    def get_statement(self, customer_id: UUID) -> StatementResponse:
        customer = self.get_customer(customer_id)
        entries = [LedgerEntry(**e) for e in self.storage.list_entries(customer_id)]
        lines = [
            StatementLine(entry=entry, balance_after=balance)
            for entry, balance in compute_running_balance(entries)
        ]
        closing = lines[-1].balance_after if lines else ZERO
        return StatementResponse(customer=customer, lines=lines, closing_balance=closing)

    def get_khata_stats(self, merchant_id: str, today: Optional[date] = None) -> KhataStats:
        today = today or self.clock().date()
        customers = [Customer(**c) for c in self.storage.list_customers(merchant_id)]
        active_ids = {c.id for c in customers}

        to_collect = to_pay = ZERO
        for customer in customers:
            if customer.total_balance > 0:
                to_collect += customer.total_balance
            elif customer.total_balance < 0:
                to_pay += -customer.total_balance

        overdue = {
            e["customer_id"] for e in self.storage.list_merchant_entries(merchant_id)
            if e["type"] == EntryType.CREDIT
            and e["status"] == EntryStatus.PENDING
            and e["due_date"] is not None
            and e["due_date"] < today
            and e["customer_id"] in active_ids
        }
        return KhataStats(
            merchant_id=merchant_id,
            total_to_collect=to_collect,
            total_to_pay=to_pay,
            customers_count=len(customers),
            overdue_count=len(overdue),
        )

    # consistency

    def repair_customer(self, customer_id: UUID) -> RepairReport:
        """Recompute the aggregate from every entry and overwrite drifted totals."""
        with self.storage.customer_lock(customer_id):
            customer = self._require_customer(customer_id)
            entries = [LedgerEntry(**e) for e in self.storage.list_entries(customer_id)]
            before = {f: customer[f] for f in AGGREGATE_FIELDS}
            after = recompute_totals(entries)
            drift = before != after
            if drift:
                logger.warning("Balance drift for customer %s: %s -> %s", customer_id, before, after)
                self.storage.update_customer(customer_id, {**after, "updated_at": self.clock()})
                # the rescan already covers anything still journaled
                self.storage.discard_pending(customer_id)
        return RepairReport(
            customer_id=customer_id,
            drift_detected=drift,
            before=before,
            after=after,
            entries_scanned=len(entries),
        )

    def replay_pending(self) -> int:
        """Re-apply aggregate writes journaled before a failure. Safe to repeat."""
        replayed = 0
        for op_id, op in self.storage.list_pending():
            customer_id = op["customer_id"]
            with self.storage.customer_lock(customer_id):
                # the live write may have finished it since the listing
                if not self.storage.is_pending(op_id):
                    continue
                if self.storage.apply_customer_delta(customer_id, op_id, op["delta"], self.clock()) is not None:
                    replayed += 1
        if replayed:
            logger.info("Replayed %d pending aggregate writes", replayed)
        return replayed

    # live reads

    def subscribe_customers(self, merchant_id: str) -> Subscription:
        return self.storage.feed.subscribe(
            lambda event: event.collection == CUSTOMERS and event.record.get("merchant_id") == merchant_id
        )

    def subscribe_entries(self, customer_id: UUID) -> Subscription:
        return self.storage.feed.subscribe(
            lambda event: event.collection == ENTRIES and event.record.get("customer_id") == customer_id
        )

    def _write_entry(self, op_id: str, write, *args) -> dict:
        try:
            return write(*args)
        except Exception:
            # the entry never changed, so its journaled delta must not be replayed
            self.storage.discard_op(op_id)
            logger.error("Entry write for %s failed; journaled op dropped", op_id)
            raise

    def _apply_aggregate(self, customer_id: UUID, op_id: str, delta: CustomerDelta, now) -> Customer:
        try:
            record = self.storage.apply_customer_delta(customer_id, op_id, delta, now)
        except StoreUnavailableError:
            logger.error("Aggregate write %s failed; left pending for replay", op_id)
            raise
        if record is None:
            raise CustomerNotFoundError(f"Customer {customer_id} not found")
        return Customer(**record)

    def _require_customer(self, customer_id: UUID) -> dict:
        record = self.storage.get_customer(customer_id)
        if not record:
            raise CustomerNotFoundError(f"Customer {customer_id} not found")
        return record

    def _require_customer_model(self, customer_id: UUID) -> Customer:
        return Customer(**self._require_customer(customer_id))

    def _require_active_customer(self, customer_id: UUID) -> Customer:
        customer = self._require_customer_model(customer_id)
        if not customer.is_active:
            raise CustomerInactiveError(f"Customer {customer_id} has been deleted")
        return customer

    def _require_entry(self, entry_id: UUID) -> LedgerEntry:
        record = self.storage.get_entry(entry_id)
        if not record:
            raise EntryNotFoundError(f"Entry {entry_id} not found")
        return LedgerEntry(**record)

