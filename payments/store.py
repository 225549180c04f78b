"""
In-memory payment store with conditional writes.

``compare_and_set`` is the only way a status changes: the write lands only
if the record's current status is one of the expected source states, which
is what keeps the webhook, the sweeper and merchant actions from clobbering
each other.
"""

import threading
from copy import deepcopy
from datetime import datetime
from typing import Iterable, Optional
from uuid import UUID

from common.feed import ChangeFeed
from .models import PaymentStatus

PAYMENTS = "payments"


class PaymentStore:
    def __init__(self, feed: Optional[ChangeFeed] = None):
        self.payments: dict[UUID, dict] = {}
        self.feed = feed or ChangeFeed()
        self._lock = threading.Lock()

    def insert(self, data: dict) -> dict:
        with self._lock:
            record = deepcopy(data)
            self.payments[record["id"]] = record
            snapshot = deepcopy(record)
        self.feed.publish(PAYMENTS, "created", snapshot)
        return snapshot

    def get(self, payment_id: UUID) -> Optional[dict]:
        with self._lock:
            record = self.payments.get(payment_id)
            return deepcopy(record) if record else None

    def query(
        self,
        merchant_id: Optional[str] = None,
        status: Optional[PaymentStatus] = None,
        created_from: Optional[datetime] = None,
        created_to: Optional[datetime] = None,
    ) -> list[dict]:
        """Equality and range filter, ordered by (created_at, id)."""
        with self._lock:
            found = [
                deepcopy(p) for p in self.payments.values()
                if (merchant_id is None or p["merchant_id"] == merchant_id)
                and (status is None or p["status"] == status)
                and (created_from is None or p["created_at"] >= created_from)
                and (created_to is None or p["created_at"] <= created_to)
            ]
        found.sort(key=lambda p: (p["created_at"], str(p["id"])))
        return found

    def find_by_utr(self, merchant_id: str, utr: str) -> Optional[dict]:
        with self._lock:
            for record in self.payments.values():
                sms = record.get("sms_data") or {}
                if record["merchant_id"] == merchant_id and sms.get("utr") == utr:
                    return deepcopy(record)
        return None

    def compare_and_set(
        self, payment_id: UUID, expected: Iterable[PaymentStatus], changes: dict
    ) -> tuple[Optional[dict], bool]:
        """Apply ``changes`` only if the current status is in ``expected``.

        Returns (current record, applied). The record is None when the id is
        unknown.
        """
        expected = frozenset(expected)
        with self._lock:
            record = self.payments.get(payment_id)
            if record is None:
                return None, False
            if record["status"] not in expected:
                return deepcopy(record), False
            record.update(deepcopy(changes))
            snapshot = deepcopy(record)
        self.feed.publish(PAYMENTS, "updated", snapshot)
        return snapshot, True
