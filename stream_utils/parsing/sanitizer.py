# stream_utils/parsing/sanitizer.py
"""
Text sanitizer for the user-visible answer channel.

SINGLE PURPOSE: Turn a raw answer candidate into display-ready text.

Does NOT handle:
- Splitting reasoning from answer (segment_extractor.py does this)
- Parsing reference records (reference_extractor.py does this)

ONLY handles:
- Escape decoding (\\uXXXX -> character)
- Stripping reference blocks, stray result JSON and leftover markup
- Whitespace collapsing

Inline [citation:N] markers are left untouched for citation_resolver.py.
"""

import json
import logging
import re
from typing import Iterable, Iterator, List, Tuple

from stream_utils.config import STREAMING_CONFIG

logger = logging.getLogger(__name__)

THINK_OPEN = STREAMING_CONFIG["think_open"]
THINK_CLOSE = STREAMING_CONFIG["think_close"]
REFERENCE_OPEN = STREAMING_CONFIG["reference_open"]
REFERENCE_CLOSE = STREAMING_CONFIG["reference_close"]

KNOWN_MARKERS = (THINK_OPEN, THINK_CLOSE, REFERENCE_OPEN, REFERENCE_CLOSE)

# Keys that identify a search-result object
DOC_INDEX_KEYS = ("doc_index", "docIndex", "doc_id")

_UNICODE_ESCAPE_RUN = re.compile(r'(?:\\u[0-9a-fA-F]{4})+')
_HEX4 = re.compile(r'\\u([0-9a-fA-F]{4})')

_REFERENCE_BLOCK = re.compile(
    re.escape(REFERENCE_OPEN) + r'[\s\S]*?' + re.escape(REFERENCE_CLOSE)
)
_REASONING_BLOCK = re.compile(
    re.escape(THINK_OPEN) + r'[\s\S]*?' + re.escape(THINK_CLOSE), re.IGNORECASE
)
# Open/close/self-closing tag except the reasoning pair; attributes must be name=value
_MARKUP_TAG = re.compile(
    r'<(?!/?think>)/?[A-Za-z][A-Za-z0-9_:-]*'
    r'(?:\s+[A-Za-z_:][\w:.-]*\s*=\s*(?:"[^"]*"|\'[^\']*\'|[^\s"\'<>]+))*\s*/?>'
)
_LONE_REASONING_TAG = re.compile(r'</?think>', re.IGNORECASE)
_NONE_LINE = re.compile(r'^[ \t]*None[ \t]*(?:\n|$)', re.MULTILINE)
_EXCESS_NEWLINES = re.compile(r'\n{3,}')
_LEADING_EMPTY_LINES = re.compile(r'^(?:[ \t]*\n)+')
_OUTER_CODE_FENCE = re.compile(r'^```[a-zA-Z]*\n([\s\S]*?)\n?```$')
_QUERY_OBJECT_START = re.compile(r'^\{\s*"query"\s*:')
_DOC_INDEX_KEY = re.compile(r'"(?:' + '|'.join(DOC_INDEX_KEYS) + r')"\s*:')


# ——— Escape Decoding ————————————————————————————————————————————————————————————

def _decode_escape_run(match: re.Match) -> str:
    codes = [int(h, 16) for h in _HEX4.findall(match.group(0))]
    chars = []
    i = 0
    while i < len(codes):
        code = codes[i]
        # Combine UTF-16 surrogate pairs (emoji, rare CJK)
        if 0xD800 <= code <= 0xDBFF and i + 1 < len(codes) and 0xDC00 <= codes[i + 1] <= 0xDFFF:
            chars.append(chr(0x10000 + ((code - 0xD800) << 10) + (codes[i + 1] - 0xDC00)))
            i += 2
            continue
        chars.append(chr(code))
        i += 1
    return "".join(chars)


def decode_unicode_escapes(text: str) -> str:
    """
    Replace literal \\uXXXX sequences with the characters they encode.

    Text without escapes is returned unchanged.
    """
    if not text or "\\u" not in text:
        return text
    return _UNICODE_ESCAPE_RUN.sub(_decode_escape_run, text)


# ——— Brace Scanning ———————————————————————————————————————————————————————————————

def _match_brace(text: str, start: int) -> int:
    """Index one past the brace closing text[start], or -1 if it never closes"""
    depth = 0
    in_string = False
    escaped = False
    for pos in range(start, len(text)):
        ch = text[pos]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return pos + 1
    return -1


def iter_json_object_spans(text: str) -> Iterator[Tuple[int, int]]:
    """
    Yield (start, end) of every balanced top-level {...} substring.

    An opening brace that never closes is skipped so it cannot swallow
    later objects.
    """
    pos = text.find("{")
    while pos != -1:
        end = _match_brace(text, pos)
        if end == -1:
            pos = text.find("{", pos + 1)
            continue
        yield pos, end
        pos = text.find("{", end)


def _is_strippable_object(span: str) -> bool:
    """Bare reference objects (first key `query`) and result-shaped objects"""
    try:
        obj = json.loads(span)
    except (json.JSONDecodeError, ValueError):
        return bool(_QUERY_OBJECT_START.match(span) or _DOC_INDEX_KEY.search(span))

    if not isinstance(obj, dict) or not obj:
        return False
    if next(iter(obj)) == "query":
        return True
    if any(key in obj for key in DOC_INDEX_KEYS):
        return True
    return "title" in obj and any(key in obj for key in ("snippet", "url", "link"))


def strip_loose_json_objects(text: str) -> str:
    """Remove top-level bare reference / result-shaped JSON objects"""
    if "{" not in text:
        return text

    kept: List[str] = []
    cursor = 0
    for start, end in iter_json_object_spans(text):
        if _is_strippable_object(text[start:end]):
            kept.append(text[cursor:start])
            cursor = end
    kept.append(text[cursor:])
    return "".join(kept)


# ——— Partial Markup ——————————————————————————————————————————————————————————————

def hold_back_partial_marker(text: str, markers: Iterable[str] = KNOWN_MARKERS) -> str:
    """
    Drop a trailing fragment that is a proper prefix of a known marker.

    "Hello <sea" -> "Hello " while the rest of the tag is still in flight.
    """
    cut = len(text)
    for marker in markers:
        for size in range(min(len(marker) - 1, len(text)), 0, -1):
            if text.endswith(marker[:size]):
                cut = min(cut, len(text) - size)
                break
    return text[:cut]


def strip_unclosed_block(text: str, open_marker: str, close_marker: str) -> str:
    """Cut everything from an opening marker that has no closing marker yet"""
    start = text.rfind(open_marker)
    if start == -1 or text.find(close_marker, start) != -1:
        return text
    return text[:start]


def unwrap_outer_code_fence(text: str) -> str:
    """Remove a ```lang ... ``` fence that wraps the entire answer"""
    stripped = text.strip()
    match = _OUTER_CODE_FENCE.match(stripped)
    if not match or "```" in match.group(1):
        return text
    return match.group(1)


# ——— Main Entry Point —————————————————————————————————————————————————————————————

def sanitize_content(candidate: str, streaming: bool = False, after_reasoning: bool = False) -> str:
    """
    Clean an answer candidate for display.

    Args:
        candidate: Text following the reasoning segment (or the whole buffer)
        streaming: True while more text may still arrive; partially-arrived
                   markers and unclosed blocks are held back
        after_reasoning: True when the candidate follows a closed reasoning
                         span; a trailing unclosed reasoning span and lone
                         reasoning tags are dropped even on the final parse

    Returns:
        Display-ready answer text with [citation:N] markers intact
    """
    if not candidate:
        return ""

    text = candidate
    if streaming:
        text = hold_back_partial_marker(text)
        text = strip_unclosed_block(text, REFERENCE_OPEN, REFERENCE_CLOSE)
    if streaming or after_reasoning:
        text = strip_unclosed_block(text, THINK_OPEN, THINK_CLOSE)

    text = _REFERENCE_BLOCK.sub("", text)
    text = _REASONING_BLOCK.sub("", text)
    if after_reasoning:
        text = _LONE_REASONING_TAG.sub("", text)
    text = strip_loose_json_objects(text)
    text = _NONE_LINE.sub("", text)

    if STREAMING_CONFIG["unwrap_outer_code_fence"]:
        text = unwrap_outer_code_fence(text)

    text = _MARKUP_TAG.sub("", text)
    text = _EXCESS_NEWLINES.sub("\n\n", text)
    text = _LEADING_EMPTY_LINES.sub("", text)
    return text.strip()
