"""
Bank SMS parsing.

A message has to read like an incoming credit and carry a currency amount
before it is considered at all. Debit and spend alerts mentioning "credit"
(card payments, "credited to VPA x") are not money received: when a debit
keyword is present only the unambiguous credit words count.
"""

import re
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Optional

CREDIT_KEYWORDS = ("credited", "received", "deposited", "added to", "cr.", "credit")
STRONG_CREDIT_KEYWORDS = ("credited", "received", "deposited", "added to", "cr.")
DEBIT_KEYWORDS = ("debited", "spent", "withdrawn", "paid to", "sent to", "dr.")

AMOUNT_PATTERN = re.compile(r"(?:₹|\bRs\.?|\bINR)\s*(\d+(?:,\d+)*(?:\.\d{1,2})?)(?![.,]?\d)", re.IGNORECASE)
UTR_PATTERN = re.compile(
    r"\b(?:UTR|UPI\s+Ref|Ref(?:erence)?|Transaction\s+ID|Txn\s+ID)(?:\s*No\.?)?[\s:#.-]+([A-Za-z0-9]+)",
    re.IGNORECASE,
)


class SmsKind(str, Enum):
    CREDIT = "credit"
    NON_CREDIT = "non_credit"
    UNPARSEABLE = "unparseable"


@dataclass(frozen=True)
class ParsedSms:
    amount: Decimal
    utr: Optional[str]
    timestamp: datetime
    raw_sms: str


@dataclass(frozen=True)
class SmsParseResult:
    kind: SmsKind
    sms: Optional[ParsedSms] = None


def is_credit_message(text: str) -> bool:
    lowered = text.lower()
    if any(k in lowered for k in DEBIT_KEYWORDS):
        # in a debit alert "credited to" names the payee
        lowered = lowered.replace("credited to", "")
        return any(k in lowered for k in STRONG_CREDIT_KEYWORDS)
    return any(k in lowered for k in CREDIT_KEYWORDS)


def extract_amount(text: str) -> Optional[Decimal]:
    match = AMOUNT_PATTERN.search(text)
    if not match:
        return None
    try:
        amount = Decimal(match.group(1).replace(",", ""))
    except InvalidOperation:
        return None
    if amount <= 0:
        return None
    return amount.quantize(Decimal("0.01"))


def extract_utr(text: str) -> Optional[str]:
    match = UTR_PATTERN.search(text)
    return match.group(1) if match else None


def parse_sms(text, received_at: datetime) -> SmsParseResult:
    if not isinstance(text, str) or not text.strip():
        return SmsParseResult(SmsKind.NON_CREDIT)
    if not is_credit_message(text):
        return SmsParseResult(SmsKind.NON_CREDIT)
    amount = extract_amount(text)
    if amount is None:
        return SmsParseResult(SmsKind.UNPARSEABLE)
    return SmsParseResult(
        SmsKind.CREDIT,
        ParsedSms(amount=amount, utr=extract_utr(text), timestamp=received_at, raw_sms=text),
    )
