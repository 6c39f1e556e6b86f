"""Output cleanup for LLM responses.

The model intermittently emits "ghost" emphasis markers (STRONGSTART /
STRONGEND and variants) instead of normal prose, even when the system prompt
forbids them. This module strips every known surface form:

- Bare literals: STRONGSTART, strongend
- Underscore-wrapped: _STRONGSTART_, __STRONGEND__
- Separated: STRONG_START, Strong End, _STRONG END_
- Reordered: STARTSTRONG, END_STRONG
- Escaped: &lt;STRONGSTART&gt;, &amp;STRONGEND;, &#60;STRONGSTART&#62;, <STRONGEND>

`scrub` is pure, total and idempotent. Text without any marker keyword is
returned unchanged.
"""

import re

# =============================================================================
# Patterns
# =============================================================================

_KEYWORD = r"STRONG[_\s]*(?:START|END)"

# Markers embedded in escaped or literal HTML
ESCAPED_MARKER_PATTERNS = [
    r"&lt;/?[^&<>]*?" + _KEYWORD + r"[^&<>]*?&gt;",
    r"&amp;[^;]*?" + _KEYWORD + r"[^;]*?;",
    r"&#\d+;[^&]*?" + _KEYWORD + r"[^&]*?&#\d+;",
    r"<[^<>]*" + _KEYWORD + r"[^<>]*>",
]

# A whole leading underscore run or none of it; a match never starts inside a
# run, so long runs are scanned once
_LEAD = r"(?:(?<!_)_+)?"

# Case-insensitive forms. Reordered forms with a whitespace-only separator are
# matched only when underscore-wrapped.
MARKER_PATTERNS = [
    _LEAD + r"STRONG(?:START|END)_*",
    _LEAD + r"(?:START|END)STRONG_*",
    _LEAD + r"STRONG\s*_[_\s]*(?:START|END)_*",
    _LEAD + r"(?:START|END)\s*_[_\s]*STRONG_*",
    _LEAD + r"STRONG\s+(?:START|END)_*",
    r"(?<!_)_+(?:START|END)\s+STRONG_*",
]

_compiled_escaped_patterns = [re.compile(p, re.IGNORECASE) for p in ESCAPED_MARKER_PATTERNS]
_compiled_marker_pattern = re.compile("|".join(MARKER_PATTERNS), re.IGNORECASE)
_residue_pattern = re.compile(r"_{2,}")

# Quick reject: nothing to do unless the keyword appears at all
_keyword_hint = re.compile(r"STRONG|START|END", re.IGNORECASE)


def _scrub_pass(text: str) -> str:
    """Run one pass over every marker form."""
    cleaned = text
    for pattern in _compiled_escaped_patterns:
        cleaned = pattern.sub("", cleaned)
    cleaned = _compiled_marker_pattern.sub("", cleaned)
    if cleaned != text:
        cleaned = _residue_pattern.sub("", cleaned)
    return cleaned


def scrub(text: str | None) -> str | None:
    """Remove all ghost markers from text.

    Passes repeat until the text stops changing, which covers markers that
    only become visible after an adjacent marker was removed
    (e.g. STRONGSTRONGSTARTSTART).

    Args:
        text: Raw model output. Empty or None is returned as-is.

    Returns:
        The cleaned text.
    """
    if not text or not _keyword_hint.search(text):
        return text

    cleaned = text
    # Every changing pass shortens the text, so this is bounded by its length
    for _ in range(len(text) + 1):
        next_cleaned = _scrub_pass(cleaned)
        if next_cleaned == cleaned:
            break
        cleaned = next_cleaned
    return cleaned


class StreamScrubber:
    """Incremental scrubber for streamed output.

    A marker can straddle two upstream chunks ("..._STRONG" + "START_..."), so
    scrubbing each chunk on its own would miss it. The scrubber keeps back the
    tail of the text that could still grow into a marker and releases it once
    the next chunk shows it is safe, or on `flush()`.
    """

    # Upper bound on withheld characters; longer than any marker form
    HOLDBACK = 64

    # Tail that could be the start of a marker: an unclosed tag, or a run of
    # characters markers and entities are made of
    _open_tail = re.compile(r"(?:<[^<>]*|[A-Za-z0-9_\s&#;/]*)\Z")

    def __init__(self) -> None:
        self._pending = ""

    def feed(self, fragment: str) -> str:
        """Add a chunk and return the text that is safe to emit now."""
        if not fragment:
            return ""
        cleaned = scrub(self._pending + fragment) or ""
        cut = self._safe_cut(cleaned)
        self._pending = cleaned[cut:]
        return cleaned[:cut]

    def flush(self) -> str:
        """Return whatever is still withheld."""
        remainder = scrub(self._pending) or ""
        self._pending = ""
        return remainder

    def _safe_cut(self, text: str) -> int:
        floor = max(0, len(text) - self.HOLDBACK)
        match = self._open_tail.search(text, floor)
        return match.start() if match else len(text)
