"""Shared plumbing: money parsing, clock, change feed, logging setup."""

from .clock import utc_now
from .errors import StoreUnavailableError
from .feed import ChangeEvent, ChangeFeed, Subscription
from .money import InvalidAmountError, parse_amount

__all__ = [
    "utc_now",
    "StoreUnavailableError",
    "ChangeEvent",
    "ChangeFeed",
    "Subscription",
    "InvalidAmountError",
    "parse_amount",
]
