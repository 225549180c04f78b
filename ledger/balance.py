"""
Balance engine for khata ledgers.

Pure functions, no I/O. Every entry contributes a signed amount to its
customer's balance: +amount for CREDIT (goods given on credit), -amount for
DEBIT (payment received), nothing for NOTE. Deltas returned here are applied
by the store; deleting an entry yields the exact inverse of creating it.

Callers validate amounts (see ``common.money.parse_amount``) before reaching
this module. An unknown entry type is a caller bug and raises ValueError.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Optional, Protocol

from common.money import ZERO
from .models import EntryType, LedgerEntry


class Aggregate(Protocol):
    total_balance: Decimal
    total_credit: Decimal
    total_debit: Decimal
    last_entry_at: Optional[datetime]


_SIGNS = {EntryType.CREDIT: 1, EntryType.DEBIT: -1, EntryType.NOTE: 0}


def entry_sign(entry_type: EntryType) -> int:
    try:
        return _SIGNS[EntryType(entry_type)]
    except (KeyError, ValueError):
        raise ValueError(f"Unknown entry type: {entry_type!r}")


def signed_amount(entry: LedgerEntry) -> Decimal:
    return entry_sign(entry.type) * entry.amount


def _credit_part(entry: LedgerEntry) -> Decimal:
    return entry.amount if entry.type == EntryType.CREDIT else ZERO


def _debit_part(entry: LedgerEntry) -> Decimal:
    return entry.amount if entry.type == EntryType.DEBIT else ZERO


@dataclass(frozen=True)
class CustomerDelta:
    balance: Decimal = ZERO
    credit: Decimal = ZERO
    debit: Decimal = ZERO
    # new last_entry_at, or None to leave it alone
    last_entry_at: Optional[datetime] = None
    # the store must derive last_entry_at from the remaining entries
    recompute_last_entry_at: bool = False

    @property
    def is_zero(self) -> bool:
        return (
            self.balance == 0 and self.credit == 0 and self.debit == 0
            and self.last_entry_at is None and not self.recompute_last_entry_at
        )

    def apply(self, customer: Aggregate, recomputed_last_entry_at: Optional[datetime] = None) -> dict:
        """New aggregate field values for ``customer`` after this delta."""
        if self.recompute_last_entry_at:
            last_entry_at = recomputed_last_entry_at
        elif self.last_entry_at is not None and customer.last_entry_at is not None:
            last_entry_at = max(self.last_entry_at, customer.last_entry_at)
        elif self.last_entry_at is not None:
            last_entry_at = self.last_entry_at
        else:
            last_entry_at = customer.last_entry_at
        return {
            "total_balance": customer.total_balance + self.balance,
            "total_credit": customer.total_credit + self.credit,
            "total_debit": customer.total_debit + self.debit,
            "last_entry_at": last_entry_at,
        }


def apply_entry_create(customer: Aggregate, entry: LedgerEntry) -> CustomerDelta:
    last_entry_at = None
    if customer.last_entry_at is None or entry.created_at > customer.last_entry_at:
        last_entry_at = entry.created_at
    return CustomerDelta(
        balance=signed_amount(entry),
        credit=_credit_part(entry),
        debit=_debit_part(entry),
        last_entry_at=last_entry_at,
    )


def apply_entry_update(customer: Aggregate, old_entry: LedgerEntry, new_entry: LedgerEntry) -> CustomerDelta:
    """Remove the old contribution and add the new one, without a rescan.

    created_at is immutable across edits so last_entry_at is untouched.
    """
    return CustomerDelta(
        balance=signed_amount(new_entry) - signed_amount(old_entry),
        credit=_credit_part(new_entry) - _credit_part(old_entry),
        debit=_debit_part(new_entry) - _debit_part(old_entry),
    )


def apply_entry_delete(customer: Aggregate, entry: LedgerEntry) -> CustomerDelta:
    return CustomerDelta(
        balance=-signed_amount(entry),
        credit=-_credit_part(entry),
        debit=-_debit_part(entry),
        recompute_last_entry_at=(
            customer.last_entry_at is not None and entry.created_at >= customer.last_entry_at
        ),
    )


def running_order_key(entry: LedgerEntry):
    return (entry.created_at, entry.seq, str(entry.id))


def compute_running_balance(entries: Iterable[LedgerEntry]) -> list[tuple[LedgerEntry, Decimal]]:
    """Pair each entry with the balance right after it.

    Entries are replayed in ascending created_at. Two entries can share a
    timestamp; ties go to the store-assigned insertion sequence and then to
    the entry id, so the result is the same on every call regardless of the
    order the entries were passed in.
    """
    balance = ZERO
    lines = []
    for entry in sorted(entries, key=running_order_key):
        balance += signed_amount(entry)
        lines.append((entry, balance))
    return lines


def recompute_totals(entries: Iterable[LedgerEntry]) -> dict:
    """Full rescan of a customer's entries. Used for repair, never on the hot path."""
    credit = debit = ZERO
    last_entry_at = None
    for entry in entries:
        credit += _credit_part(entry)
        debit += _debit_part(entry)
        if last_entry_at is None or entry.created_at > last_entry_at:
            last_entry_at = entry.created_at
    return {
        "total_balance": credit - debit,
        "total_credit": credit,
        "total_debit": debit,
        "last_entry_at": last_entry_at,
    }
