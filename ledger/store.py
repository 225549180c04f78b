"""
In-memory khata store.

Holds customers and ledger entries as plain dicts, the way a document store
would. Entry writes and aggregate writes are separate steps: the service
writes the entry first and the customer aggregate second. Each aggregate
write carries an operation id. The customer remembers the last applied
operation per entry, so re-applying it is a no-op, and forgets an entry's
operation once the entry's delete is applied. Operations are journaled as
pending before the entry write, dropped if the entry write fails, and
cleared by the aggregate write, which lets ``LedgerService.replay_pending``
finish anything a failed aggregate write left behind.
"""

import itertools
import threading
from collections import defaultdict
from copy import deepcopy
from datetime import datetime
from typing import Optional
from uuid import UUID

from common.feed import ChangeFeed
from .balance import CustomerDelta
from .models import Customer

CUSTOMERS = "customers"
ENTRIES = "khata_entries"


def op_id_for(entry_id: UUID, version: int, action: str) -> str:
    return f"{entry_id}:{version}:{action}"


def _entry_key(op_id: str) -> str:
    return op_id.partition(":")[0]


class LedgerStore:
    def __init__(self, feed: Optional[ChangeFeed] = None):
        self.customers: dict[UUID, dict] = {}
        self.entries: dict[UUID, dict] = {}
        self.pending_ops: dict[str, dict] = {}
        self.feed = feed or ChangeFeed()
        self._lock = threading.RLock()
        self._customer_locks: dict[UUID, threading.Lock] = defaultdict(threading.Lock)
        self._seq = itertools.count(1)

    def customer_lock(self, customer_id: UUID) -> threading.Lock:
        with self._lock:
            return self._customer_locks[customer_id]

    # customers

    def insert_customer(self, data: dict) -> dict:
        with self._lock:
            record = deepcopy(data)
            record.setdefault("applied_ops", {})
            self.customers[record["id"]] = record
            snapshot = deepcopy(record)
        self._publish(CUSTOMERS, "created", snapshot)
        return snapshot

    def get_customer(self, customer_id: UUID) -> Optional[dict]:
        with self._lock:
            record = self.customers.get(customer_id)
            return deepcopy(record) if record else None

    def list_customers(self, merchant_id: str, include_inactive: bool = False) -> list[dict]:
        with self._lock:
            return [
                deepcopy(c) for c in self.customers.values()
                if c["merchant_id"] == merchant_id and (include_inactive or c["is_active"])
            ]

    def update_customer(self, customer_id: UUID, changes: dict) -> Optional[dict]:
        with self._lock:
            record = self.customers.get(customer_id)
            if record is None:
                return None
            record.update(deepcopy(changes))
            snapshot = deepcopy(record)
        self._publish(CUSTOMERS, "updated", snapshot)
        return snapshot

    def apply_customer_delta(self, customer_id: UUID, op_id: str, delta: CustomerDelta, now: datetime) -> Optional[dict]:
        with self._lock:
            record = self.customers.get(customer_id)
            if record is None:
                return None
            applied = record["applied_ops"]
            key = _entry_key(op_id)
            if applied.get(key) == op_id:
                self.pending_ops.pop(op_id, None)
                return deepcopy(record)
            recomputed = None
            if delta.recompute_last_entry_at:
                recomputed = self._latest_entry_at(customer_id)
            record.update(delta.apply(Customer(**record), recomputed))
            record["updated_at"] = now
            if op_id.endswith(":delete"):
                applied.pop(key, None)
            else:
                applied[key] = op_id
            self.pending_ops.pop(op_id, None)
            snapshot = deepcopy(record)
        self._publish(CUSTOMERS, "updated", snapshot)
        return snapshot

    # entries

    def insert_entry(self, data: dict) -> dict:
        with self._lock:
            record = deepcopy(data)
            record["seq"] = next(self._seq)
            self.entries[record["id"]] = record
            snapshot = deepcopy(record)
        self._publish(ENTRIES, "created", snapshot)
        return snapshot

    def replace_entry(self, entry_id: UUID, data: dict) -> Optional[dict]:
        with self._lock:
            if entry_id not in self.entries:
                return None
            record = deepcopy(data)
            record["seq"] = self.entries[entry_id]["seq"]
            self.entries[entry_id] = record
            snapshot = deepcopy(record)
        self._publish(ENTRIES, "updated", snapshot)
        return snapshot

    def delete_entry(self, entry_id: UUID) -> Optional[dict]:
        with self._lock:
            record = self.entries.pop(entry_id, None)
        if record is not None:
            self._publish(ENTRIES, "deleted", record)
        return record

    def get_entry(self, entry_id: UUID) -> Optional[dict]:
        with self._lock:
            record = self.entries.get(entry_id)
            return deepcopy(record) if record else None

    def list_entries(self, customer_id: UUID) -> list[dict]:
        with self._lock:
            return [deepcopy(e) for e in self.entries.values() if e["customer_id"] == customer_id]

    def list_merchant_entries(self, merchant_id: str) -> list[dict]:
        with self._lock:
            return [deepcopy(e) for e in self.entries.values() if e["merchant_id"] == merchant_id]

    # pending aggregate operations

    def record_pending(self, op_id: str, customer_id: UUID, delta: CustomerDelta) -> None:
        with self._lock:
            self.pending_ops[op_id] = {"customer_id": customer_id, "delta": delta}

    def is_pending(self, op_id: str) -> bool:
        with self._lock:
            return op_id in self.pending_ops

    def discard_op(self, op_id: str) -> None:
        with self._lock:
            self.pending_ops.pop(op_id, None)

    def list_pending(self) -> list[tuple[str, dict]]:
        with self._lock:
            return list(self.pending_ops.items())

    def _latest_entry_at(self, customer_id: UUID) -> Optional[datetime]:
        stamps = [e["created_at"] for e in self.entries.values() if e["customer_id"] == customer_id]
        return max(stamps) if stamps else None

    def _publish(self, collection: str, action: str, record: dict) -> None:
        payload = {k: v for k, v in record.items() if k != "applied_ops"}
        self.feed.publish(collection, action, payload)

    def discard_pending(self, customer_id: UUID) -> int:
        with self._lock:
            stale = [op_id for op_id, op in self.pending_ops.items() if op["customer_id"] == customer_id]
            for op_id in stale:
                del self.pending_ops[op_id]
            return len(stale)
