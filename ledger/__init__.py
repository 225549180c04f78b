"""
Khata (running credit ledger) for merchants

This module provides:
- Customer accounts with a denormalized running balance
- Credit, debit and note entries with reversible balance deltas
- Running-balance statements with a stable tie-break on equal timestamps
- Journaled aggregate writes plus a full-rescan repair
"""

from .models import (
    EntryType,
    EntryStatus,
    KhataType,
    Customer,
    LedgerEntry,
)
from .service import LedgerService
from .store import LedgerStore

__all__ = [
    "EntryType",
    "EntryStatus",
    "KhataType",
    "Customer",
    "LedgerEntry",
    "LedgerService",
    "LedgerStore",
]
