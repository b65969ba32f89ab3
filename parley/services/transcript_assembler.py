"""
Transcript Assembler

Accumulates transcription fragments acknowledged by the realtime backend into
one growing string for the current voiced turn. Each new fragment produces a
partial update; end-of-turn produces the final text.
"""

from typing import List, Optional


class TranscriptAssembler:
    def __init__(self):
        self._text = ""
        self._finalized: List[str] = []

    @property
    def text(self) -> str:
        return self._text

    @property
    def finalized_segments(self) -> List[str]:
        """Final texts of every completed voiced turn, in order."""
        return list(self._finalized)

    def add_fragment(self, fragment: Optional[str]) -> Optional[str]:
        """
        Append a fragment, space-joined.

        Returns:
            The updated partial text, or None when the fragment was empty
        """
        fragment = (fragment or "").strip()
        if not fragment:
            return None
        self._text = f"{self._text} {fragment}" if self._text else fragment
        return self._text

    def finalize(self) -> Optional[str]:
        """Close the current turn and return its text (None when nothing was heard)."""
        final = self._text.strip()
        self._text = ""
        if not final:
            return None
        self._finalized.append(final)
        return final

    def reset(self) -> None:
        """Start a new voiced turn; earlier finalized segments are kept."""
        self._text = ""

    def full_transcript(self) -> str:
        """All finalized segments plus any unfinished text."""
        parts = self._finalized + ([self._text.strip()] if self._text.strip() else [])
        return " ".join(parts)
