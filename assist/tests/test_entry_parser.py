"""
Tests for free-text entry parsing.

The Groq client is replaced by a stand-in object; no network calls are made.
"""

from decimal import Decimal
from types import SimpleNamespace

import httpx
import pytest
from groq import APIConnectionError

from assist.entry_parser import EntryDraftParser
from ledger.models import EntryType


class FakeCompletions:
    def __init__(self, content=None, error=None):
        self.content = content
        self.error = error
        self.calls = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        message = SimpleNamespace(content=self.content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def fake_client(completions):
    return SimpleNamespace(chat=SimpleNamespace(completions=completions))


class TestLocalParsing:
    """Tests for the heuristic parser used without an API key."""

    def test_not_available_without_key(self):
        """Test that the model path is off without an API key."""
        assert not EntryDraftParser().is_available

    def test_credit_given(self):
        """Test a Hinglish credit sentence."""
        draft = EntryDraftParser().parse("Udhaar diya Ramesh ko 300 ka saman")

        assert draft.type == EntryType.CREDIT
        assert draft.amount == Decimal("300.00")
        assert draft.customer_name == "Ramesh"
        assert draft.source == "local"
        assert draft.description == "Udhaar diya Ramesh ko 300 ka saman"

    def test_payment_received(self):
        """Test an English payment-received sentence."""
        draft = EntryDraftParser().parse("Received Rs 1,200 from suresh")

        assert draft.type == EntryType.DEBIT
        assert draft.amount == Decimal("1200.00")
        assert draft.customer_name == "Suresh"

    def test_no_amount_is_a_note(self):
        """Test that a sentence without an amount becomes a NOTE."""
        draft = EntryDraftParser().parse("Mohan will pay next week")

        assert draft.type == EntryType.NOTE
        assert draft.amount is None
        assert draft.customer_name == "Mohan"

    @pytest.mark.parametrize("text", ["", "   "])
    def test_empty_text(self, text):
        """Test that blank text is rejected."""
        with pytest.raises(ValueError):
            EntryDraftParser().parse(text)


class TestGroqParsing:
    """Tests for the LLM path and its fallback."""

    def test_uses_model_answer(self):
        """Test that a fenced JSON answer from the model is used."""
        completions = FakeCompletions('```json\n{"type": "debit", "amount": 450, "customer_name": "Anita"}\n```')
        parser = EntryDraftParser(client=fake_client(completions), model="test-model")

        draft = parser.parse("Anita ne 450 wapas diye")

        assert parser.is_available
        assert draft.type == EntryType.DEBIT
        assert draft.amount == Decimal("450.00")
        assert draft.customer_name == "Anita"
        assert draft.source == "groq"
        assert completions.calls[0]["model"] == "test-model"

    def test_api_error_falls_back(self):
        """Test that a Groq API error falls back to local parsing."""
        request = httpx.Request("POST", "https://api.groq.com/openai/v1/chat/completions")
        completions = FakeCompletions(error=APIConnectionError(request=request))
        parser = EntryDraftParser(client=fake_client(completions))

        draft = parser.parse("Received 200 from Kiran")

        assert draft.source == "local"
        assert draft.type == EntryType.DEBIT
        assert draft.amount == Decimal("200.00")

    def test_garbage_answer_falls_back(self):
        """Test that a non-JSON answer falls back to local parsing."""
        parser = EntryDraftParser(client=fake_client(FakeCompletions("I cannot help with that")))

        draft = parser.parse("Udhaar 75 to Meena")

        assert draft.source == "local"
        assert draft.amount == Decimal("75.00")

    def test_invalid_amount_from_model_becomes_note(self):
        """Test that an invalid model amount yields a NOTE."""
        completions = FakeCompletions('{"type": "CREDIT", "amount": -20, "customer_name": ""}')
        parser = EntryDraftParser(client=fake_client(completions))

        draft = parser.parse("something odd")

        assert draft.type == EntryType.NOTE
        assert draft.amount is None
