"""
UPI payment collection and SMS reconciliation

This module provides:
- PaymentRecord state machine with conditional (compare-and-set) transitions
- Bank SMS parsing and matching against open payments
- Timeout sweeper escalating unverified payments to manual review
- Manual override and khata payment collection
- Hand-recorded sales and expenses, search, filters and dashboard figures
"""

from .models import PaymentStatus, PaymentRecord, TransactionType, VerificationMethod
from .reconciler import SmsReconciler
from .service import PaymentService
from .state import PaymentStateMachine
from .store import PaymentStore
from .sweeper import TimeoutSweeper

__all__ = [
    "PaymentStatus",
    "PaymentRecord",
    "TransactionType",
    "VerificationMethod",
    "SmsReconciler",
    "PaymentService",
    "PaymentStateMachine",
    "PaymentStore",
    "TimeoutSweeper",
]
