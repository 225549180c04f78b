"""Free-text helpers that pre-fill khata entry forms."""

from .entry_parser import EntryDraft, EntryDraftParser

__all__ = ["EntryDraft", "EntryDraftParser"]
