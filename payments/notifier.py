"""
Outbound payment-request SMS through the Fast2SMS bulk API.

Fire and forget from the payment's point of view: a failed or timed-out send
is reported back to the caller but never touches payment state. A timeout is
an unknown outcome (the gateway may still deliver), not a success.
"""

import logging
import re
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

import httpx

from .upi import build_upi_link

logger = logging.getLogger(__name__)

FAST2SMS_URL = "https://www.fast2sms.com/dev/bulkV2"


@dataclass
class SendResult:
    success: bool
    message: Optional[str] = None
    error: Optional[str] = None
    request_id: Optional[str] = None


def clean_phone(phone: str) -> str:
    """Strip +91, spaces and punctuation; keep the last 10 digits."""
    return re.sub(r"\D", "", phone or "")[-10:]


class PaymentRequestSender:
    def __init__(
        self,
        api_key: Optional[str] = None,
        url: str = FAST2SMS_URL,
        timeout: float = 10.0,
        client: Optional[httpx.Client] = None,
    ):
        self.api_key = api_key
        self.url = url
        self.client = client or httpx.Client(timeout=timeout)

        if not self.is_configured:
            logger.warning("FAST2SMS_API_KEY not configured. Payment request SMS will be disabled.")

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    def send(self, phone: str, text: str) -> SendResult:
        if not self.is_configured:
            return SendResult(success=False, error="SMS service not configured")

        number = clean_phone(phone)
        if len(number) != 10:
            return SendResult(success=False, error="Invalid phone number. Please enter a 10-digit mobile number.")

        try:
            response = self.client.post(
                self.url,
                headers={"authorization": self.api_key},
                json={"route": "q", "message": text, "language": "english", "flash": 0, "numbers": number},
            )
            data = response.json()
        except httpx.TimeoutException:
            logger.error("SMS gateway timed out sending to %s", number)
            return SendResult(success=False, error="SMS gateway timed out; delivery status unknown")
        except (httpx.HTTPError, ValueError) as e:
            logger.error("SMS sending error: %s", e)
            return SendResult(success=False, error="Failed to send SMS. Please try again.")

        if data.get("return") is True:
            logger.info("Payment request SMS sent to %s (request %s)", number, data.get("request_id"))
            return SendResult(success=True, message="Payment request sent successfully!", request_id=data.get("request_id"))

        error = data.get("message") or "Failed to send SMS"
        if isinstance(error, list):
            error = "; ".join(str(e) for e in error)
        logger.warning("Fast2SMS rejected message to %s: %s", number, error)
        return SendResult(success=False, error=str(error))

    def send_payment_request(
        self, phone: str, amount: Decimal, merchant_name: str, upi_id: str, transaction_ref: Optional[str] = None
    ) -> SendResult:
        link = build_upi_link(upi_id, amount, merchant_name, transaction_ref=transaction_ref)
        return self.send(phone, f"{merchant_name} has requested Rs.{amount:.2f}. Pay now: {link}")

    def close(self) -> None:
        self.client.close()
