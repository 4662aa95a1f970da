"""Format-directive codec for model replies.

A reply may carry an embedded directive that tells the frontend how to render
it::

    Here is my stack:

    [format:table][data:{"headers": ["Tool"], "rows": [["Python"]]}][/format]

``decode`` turns such text into a :class:`ResponseEnvelope`; ``encode`` and
``encode_contact`` produce it. Tokens are located with a small scanner rather
than regexes so that data bodies containing ``]`` or nested brackets are
captured whole.
"""
from __future__ import annotations

import json
import logging
import re
from typing import Iterator, List, Optional, Tuple

from .models import DEFAULT_FORMAT, FORMAT_KINDS, FormatData, OwnerProfile, ResponseEnvelope

logger = logging.getLogger(__name__)

_DIRECTIVE_OPEN = "[format:"
_DATA_OPEN = "[data:"
_END_MARKER = "[/format]"

Span = Tuple[int, int]


# -----------------------------
# Scanning
# -----------------------------
def _token_at(text: str, i: int, token: str) -> bool:
    # Compare in place; lower() on the whole text can change its length.
    return text[i:i + len(token)].lower() == token


def _find(text: str, token: str, pos: int = 0) -> int:
    """Case-insensitive ``text.find(token, pos)`` for ASCII tokens."""
    i = text.find("[", pos)
    while i >= 0:
        if _token_at(text, i, token):
            return i
        i = text.find("[", i + 1)
    return -1


def _directives(text: str) -> List[Tuple[Span, str]]:
    """All recognized ``[format:<kind>]`` tokens as ((start, end), kind)."""
    found: List[Tuple[Span, str]] = []
    pos = 0
    while True:
        start = _find(text, _DIRECTIVE_OPEN, pos)
        if start < 0:
            return found
        close = text.find("]", start + len(_DIRECTIVE_OPEN))
        if close < 0:
            return found
        kind = text[start + len(_DIRECTIVE_OPEN):close].strip().lower()
        if kind in FORMAT_KINDS:
            found.append(((start, close + 1), kind))
        pos = close + 1


def _end_markers(text: str) -> List[Span]:
    spans: List[Span] = []
    pos = _find(text, _END_MARKER)
    while pos >= 0:
        spans.append((pos, pos + len(_END_MARKER)))
        pos = _find(text, _END_MARKER, pos + len(_END_MARKER))
    return spans


def _balanced_end(text: str, start: int) -> int:
    """Index of the ``]`` closing a data body that begins at ``start``, or -1.

    Brackets and braces nest; string literals in either quote style are
    skipped, honoring backslash escapes.
    """
    depth = 0
    quote: Optional[str] = None
    i = start
    n = len(text)
    while i < n:
        ch = text[i]
        if quote:
            if ch == "\\":
                i += 2
                continue
            if ch == quote:
                quote = None
        elif ch in "\"'":
            quote = ch
        elif ch in "[{":
            depth += 1
        elif ch == "}":
            depth = max(0, depth - 1)
        elif ch == "]":
            if depth == 0:
                return i
            depth -= 1
        i += 1
    return -1


def _data_tokens(text: str) -> List[Tuple[Span, str]]:
    """Every ``[data:...]`` token as ((start, end), body), in order."""
    tokens: List[Tuple[Span, str]] = []
    start = _find(text, _DATA_OPEN)
    while start >= 0:
        body_start = start + len(_DATA_OPEN)
        end = _balanced_end(text, body_start)
        if end < 0:
            logger.warning("Unterminated data token at offset %d", start)
            break
        tokens.append(((start, end + 1), text[body_start:end]))
        start = _find(text, _DATA_OPEN, end + 1)
    return tokens


def _cut(text: str, spans: List[Span]) -> str:
    out: List[str] = []
    pos = 0
    for start, end in sorted(spans):
        if start < pos:
            # Overlap with a span already removed.
            start = pos
        out.append(text[pos:start])
        pos = max(pos, end)
    out.append(text[pos:])
    return "".join(out)


# -----------------------------
# Data parsing
# -----------------------------
_UNQUOTED_KEY = re.compile(r"([{,])\s*([a-zA-Z0-9_$]+)\s*:")
_TRAILING_COMMA = re.compile(r",\s*([}\]])")
_CONTROL_CHARS = re.compile(r"[\x00-\x1f]")
_APOS = "\u0000APOS\u0000"


def sanitize_json(raw: str) -> str:
    """Best-effort repair of the JSON dialect models tend to emit."""
    s = _CONTROL_CHARS.sub(" ", raw)
    s = s.replace("\\'", _APOS).replace("'", '"').replace(_APOS, "'")
    s = _UNQUOTED_KEY.sub(r'\1"\2":', s)
    s = _TRAILING_COMMA.sub(r"\1", s)
    return s


def parse_data(raw: str) -> FormatData:
    """Parse a data body; one sanitize-and-retry, None if still invalid."""
    try:
        return json.loads(raw)
    except ValueError:
        pass
    try:
        return json.loads(sanitize_json(raw))
    except ValueError as e:
        logger.warning("Could not parse format data (%s): %.200s", e, raw)
        return None


# -----------------------------
# Public API
# -----------------------------
def directive_kind(text: str) -> Optional[str]:
    """Kind of the first recognized directive in ``text``, if any."""
    found = _directives(text or "")
    return found[0][1] if found else None


def decode(text: str) -> ResponseEnvelope:
    """Split model text into visible text, format and structured data."""
    text = text or ""
    found = _directives(text)
    if not found:
        return ResponseEnvelope(text=text.strip(), format=DEFAULT_FORMAT, format_data=None)

    spans: List[Span] = [span for span, _ in found]
    spans.extend(_end_markers(text))
    data: FormatData = None
    tokens = _data_tokens(text)
    # Only the first payload is kept; every token is removed from the text.
    spans.extend(span for span, _ in tokens)
    if tokens:
        data = parse_data(tokens[0][1])

    fmt = found[0][1]
    visible = _cut(text, spans).strip()
    logger.debug("Decoded %s directive (data=%s)", fmt, data is not None)
    return ResponseEnvelope(text=visible, format=fmt, format_data=data)


def strip_directives(text: str) -> str:
    """Visible text with every directive, data token and end marker removed."""
    text = text or ""
    spans: List[Span] = [span for span, _ in _directives(text)]
    spans.extend(_end_markers(text))
    spans.extend(span for span, _ in _data_tokens(text))
    return _cut(text, spans).strip()


def _dump(data: FormatData) -> str:
    return json.dumps(data, ensure_ascii=False, separators=(",", ":"))


def encode(text: str, kind: str, data: FormatData = None) -> str:
    """Append a directive (and data token when ``data`` is given) to ``text``."""
    kind = (kind or "").strip().lower()
    if kind not in FORMAT_KINDS:
        raise ValueError(f"unknown format kind: {kind!r}")
    block = f"[format:{kind}]"
    if data is not None:
        block += f"[data:{_dump(data)}]"
    block += _END_MARKER
    return f"{text}\n\n{block}"


def encode_contact(text: str, payload: FormatData, email: str) -> str:
    return (
        f"{text}\n\nYou can contact me using the form below or directly at {email}:\n\n"
        f"[format:contact][data:{_dump(payload)}]{_END_MARKER}"
    )


def build_contact_payload(profile: OwnerProfile) -> dict:
    """Contact-form data for the frontend."""
    return {
        "title": "Contact Form",
        "recipientName": profile.name,
        "recipientPosition": profile.position,
        "emailSubject": "Portfolio Contact",
        "socialLinks": [
            {"platform": "LinkedIn", "url": profile.linkedin_url, "icon": "linkedin"},
            {"platform": "GitHub", "url": profile.github_url, "icon": "github"},
            {"platform": "Email", "url": f"mailto:{profile.email}", "icon": "email"},
        ],
    }


def iter_fragments(text: str, size: int = 25) -> Iterator[str]:
    """Yield ``text`` in consecutive chunks of at most ``size`` characters."""
    if size <= 0:
        raise ValueError("fragment size must be positive")
    for i in range(0, len(text or ""), size):
        yield text[i:i + size]
