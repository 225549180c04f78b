import json
import logging
import re
from decimal import Decimal
from typing import Optional

from groq import APIError, Groq
from pydantic import BaseModel, Field

from common.money import InvalidAmountError, parse_amount
from ledger.models import EntryType

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "llama-3.3-70b-versatile"

SYSTEM_PROMPT = """You are a bookkeeping assistant for a small shopkeeper in India.
Extract one khata (credit ledger) entry from the merchant's sentence. The
sentence may be in English, Hindi, Hinglish, Marathi or Gujarati.

Return a JSON object with this schema:
{
    "type": "CREDIT, DEBIT or NOTE",
    "amount": number or null,
    "customer_name": "name of the person mentioned, or empty string"
}

Rules:
- Goods or money given to the customer on credit ("udhaar diya", "given to X") -> CREDIT
- Money received back from the customer ("received from X", "wapas", "jama") -> DEBIT
- No amount or no money movement -> NOTE

Return ONLY valid JSON, no explanations."""

DEBIT_WORDS = ("received", "wapas", "वापस", "jama", "जमा", "paid back", "returned")
CREDIT_WORDS = ("udhaar", "udhar", "उधार", "given", "diya", "दिया", "credit", "liya")
STOPWORDS = {"paid", "from", "rupees", "rs", "inr", "back", "ko", "se"} | set(DEBIT_WORDS) | set(CREDIT_WORDS)

CURRENCY_AMOUNT = re.compile(r"(?:₹|\brs\.?|\binr)\s*(\d[\d,]*(?:\.\d{1,2})?)|(\d[\d,]*(?:\.\d{1,2})?)\s*(?:rupees?|rs\b|₹)", re.I)
BARE_AMOUNT = re.compile(r"\d[\d,]*(?:\.\d{1,2})?")
NAME_AFTER = re.compile(r"\b(?:from|to|by)\s+([A-Za-z]+)", re.I)


class EntryDraft(BaseModel):
    """Pre-filled values for the add-entry form. Never written to the ledger as is."""

    type: EntryType = EntryType.NOTE
    amount: Optional[Decimal] = None
    customer_name: str = ""
    description: str = ""
    source: str = Field(default="local", description="groq or local")


class EntryDraftParser:
    def __init__(self, api_key: Optional[str] = None, model: str = DEFAULT_MODEL, client=None):
        self.model = model
        self.client = client
        if self.client is None and api_key:
            self.client = Groq(api_key=api_key)

    @property
    def is_available(self) -> bool:
        return self.client is not None

    def parse(self, text: str) -> EntryDraft:
        if not text or not text.strip():
            raise ValueError("No text to parse")
        text = text.strip()
        if self.client:
            draft = self._parse_with_groq(text)
            if draft is not None:
                return draft
        return self._parse_locally(text)

    def _parse_with_groq(self, text: str) -> Optional[EntryDraft]:
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": text}
                ],
                temperature=0.1,
                max_tokens=256
            )
        except APIError as e:
            logger.warning("Groq error, falling back to local parsing: %s", e)
            return None

        data = self._extract_json(response.choices[0].message.content or "")
        try:
            entry_type = EntryType(str(data.get("type", "")).upper())
        except ValueError:
            logger.warning("Groq returned no usable entry type, falling back to local parsing")
            return None

        amount = data.get("amount")
        if amount is not None:
            try:
                amount = parse_amount(amount, allow_zero=False)
            except InvalidAmountError:
                amount = None
        return EntryDraft(
            type=entry_type if amount is not None else EntryType.NOTE,
            amount=amount,
            customer_name=str(data.get("customer_name") or "").strip(),
            description=text,
            source="groq",
        )

    def _extract_json(self, text: str) -> dict:
        json_match = re.search(r'\{[\s\S]*\}', text)
        if json_match:
            try:
                data = json.loads(json_match.group())
            except json.JSONDecodeError:
                return {}
            return data if isinstance(data, dict) else {}
        return {}

    def _parse_locally(self, text: str) -> EntryDraft:
        text_lower = text.lower()

        amount = None
        match = CURRENCY_AMOUNT.search(text)
        raw = (match.group(1) or match.group(2)) if match else None
        if raw is None:
            bare = BARE_AMOUNT.search(text)
            raw = bare.group() if bare else None
        if raw is not None:
            try:
                amount = parse_amount(raw, allow_zero=False)
            except InvalidAmountError:
                amount = None

        # "received back" beats "given": money coming in is a DEBIT
        if amount is None:
            entry_type = EntryType.NOTE
        elif any(word in text_lower for word in DEBIT_WORDS):
            entry_type = EntryType.DEBIT
        else:
            entry_type = EntryType.CREDIT

        return EntryDraft(
            type=entry_type,
            amount=amount,
            customer_name=self._guess_name(text),
            description=text,
            source="local",
        )

    def _guess_name(self, text: str) -> str:
        match = NAME_AFTER.search(text)
        if match and match.group(1).lower() not in STOPWORDS:
            return match.group(1).capitalize()
        for word in text.split():
            if len(word) > 2 and word.isalpha() and word.lower() not in STOPWORDS:
                return word.capitalize()
        return ""
