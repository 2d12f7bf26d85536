# stream_utils/parsing/reference_extractor.py
"""
Reference extraction from <search_results> blocks embedded in the answer stream.

The upstream emits search results as loosely-shaped JSON inside a dedicated tag
pair. The payload is not always valid JSON (missing commas between objects,
truncated lines, stray prose), so recovery runs an ordered list of strategies
and the first one that yields at least one record wins:

    1. bracket_wrap   - "[" + payload + "]" parsed once as a list
    2. line_by_line   - each line parsed on its own, bad lines skipped
    3. brace_scan     - every {...} containing a doc index key parsed on its own

EXAMPLE:
```
<search_results>{"doc_index": 1, "title": "Cap. 57", "snippet": "..."}
{"doc_index": 2, "title": "HCA 123/2020", "url": "https://..."}</search_results>
```
bracket_wrap fails (no comma between objects), line_by_line yields both records.

Duplicate ids are kept as-is, in discovery order.
"""

import json
import logging
import re
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from stream_utils.config import STREAMING_CONFIG
from stream_utils.parsing.errors import ReferenceParseFailure
from stream_utils.parsing.models import ReferenceRecord
from stream_utils.parsing.sanitizer import (
    DOC_INDEX_KEYS,
    decode_unicode_escapes,
    iter_json_object_spans,
)

logger = logging.getLogger(__name__)

REFERENCE_BLOCK_PATTERN = re.compile(
    re.escape(STREAMING_CONFIG["reference_open"])
    + r'([\s\S]*?)'
    + re.escape(STREAMING_CONFIG["reference_close"])
)

DEFAULT_TITLE = "search result"
DEFAULT_SOURCE = "Unknown"
SNIPPET_FALLBACK_KEYS = ("content", "result", "text")
URL_KEYS = ("url", "link")


# ——— Record Construction ——————————————————————————————————————————————————————————

def _doc_index(mapping: Mapping[str, Any]) -> Optional[int]:
    """Positive integer id from the first doc index key present, else None"""
    for key in DOC_INDEX_KEYS:
        if key not in mapping:
            continue
        value = mapping.get(key)
        if isinstance(value, bool):
            return None
        try:
            if isinstance(value, float):
                doc_id = int(value) if value.is_integer() else 0
            else:
                doc_id = int(str(value).strip())
        except (TypeError, ValueError, OverflowError):
            return None
        return doc_id if doc_id > 0 else None
    return None


def _text_field(value: Any) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        value = str(value)
    return decode_unicode_escapes(value)


def _score(value: Any) -> float:
    try:
        score = float(value)
    except (TypeError, ValueError):
        return 0.0
    if score != score:  # NaN
        return 0.0
    return max(0.0, min(1.0, score))


def build_reference_record(mapping: Any, fallback_id: Optional[int] = None) -> Optional[ReferenceRecord]:
    """
    Build a ReferenceRecord from an untyped mapping.

    Never raises. Returns None when the mapping carries no usable document
    index (and no fallback_id was given).
    """
    if not isinstance(mapping, Mapping):
        return None

    doc_id = _doc_index(mapping)
    if doc_id is None:
        doc_id = fallback_id
    if doc_id is None:
        return None

    title = _text_field(mapping.get("title")) or DEFAULT_TITLE

    snippet = _text_field(mapping.get("snippet"))
    if not snippet:
        for key in SNIPPET_FALLBACK_KEYS:
            snippet = _text_field(mapping.get(key))
            if snippet:
                break
    snippet = snippet or ""

    url = None
    for key in URL_KEYS:
        url = _text_field(mapping.get(key))
        if url:
            break

    source = _text_field(mapping.get("source")) or DEFAULT_SOURCE

    return ReferenceRecord(
        id=doc_id,
        title=title,
        snippet=snippet,
        url=url or None,
        source=source,
        score=_score(mapping.get("score")),
    )


def _records_from(candidates: Iterable[Any]) -> List[ReferenceRecord]:
    records = []
    for candidate in candidates:
        record = build_reference_record(candidate)
        if record is not None:
            records.append(record)
    return records


# ——— Strategies ———————————————————————————————————————————————————————————————————

def _flatten(parsed: Any) -> List[Any]:
    if isinstance(parsed, dict):
        return [parsed]
    if not isinstance(parsed, list):
        return []
    items = []
    for item in parsed:
        items.extend(_flatten(item))
    return items


def bracket_wrap_strategy(payload: str) -> List[ReferenceRecord]:
    """Parse the whole payload once as a JSON list"""
    try:
        parsed = json.loads("[" + payload.strip().rstrip(",") + "]")
    except (json.JSONDecodeError, ValueError):
        return []
    return _records_from(_flatten(parsed))


def line_by_line_strategy(payload: str) -> List[ReferenceRecord]:
    """Parse each line on its own; a bad line is skipped, not fatal"""
    candidates = []
    for line_no, line in enumerate(payload.splitlines(), start=1):
        line = line.strip().rstrip(",")
        if not line or line in ("[", "]"):
            continue
        try:
            candidates.extend(_flatten(json.loads(line)))
        except (json.JSONDecodeError, ValueError) as e:
            logger.debug(f"Skipping unparsable reference line {line_no}: {e}")
    return _records_from(candidates)


def brace_scan_strategy(payload: str) -> List[ReferenceRecord]:
    """Parse every balanced {...} substring that mentions a doc index key"""
    candidates = []
    for start, end in iter_json_object_spans(payload):
        span = payload[start:end]
        if not any(f'"{key}"' in span for key in DOC_INDEX_KEYS):
            continue
        try:
            candidates.append(json.loads(span))
        except (json.JSONDecodeError, ValueError):
            # Nested objects may still parse on their own
            candidates.extend(_parse_inner_objects(span))
    return _records_from(candidates)


def _parse_inner_objects(span: str) -> List[Any]:
    inner = span[1:-1]
    found = []
    for start, end in iter_json_object_spans(inner):
        try:
            found.append(json.loads(inner[start:end]))
        except (json.JSONDecodeError, ValueError):
            continue
    return found


STRATEGIES: Tuple[Tuple[str, Callable[[str], List[ReferenceRecord]]], ...] = (
    ("bracket_wrap", bracket_wrap_strategy),
    ("line_by_line", line_by_line_strategy),
    ("brace_scan", brace_scan_strategy),
)


# ——— Public API ———————————————————————————————————————————————————————————————————

def parse_reference_block(payload: str) -> List[ReferenceRecord]:
    """
    Run the strategies in order over one block payload.

    Raises:
        ReferenceParseFailure: when no strategy yields a record
    """
    for name, strategy in STRATEGIES:
        records = strategy(payload)
        if records:
            logger.debug(f"Reference block parsed by {name}: {len(records)} records")
            return records
    raise ReferenceParseFailure(payload)


def iter_reference_blocks(buffer: str) -> Iterable[str]:
    """Payloads of every complete reference block, in buffer order"""
    for match in REFERENCE_BLOCK_PATTERN.finditer(buffer):
        yield match.group(1)


def extract_references(buffer: str, on_failure: Optional[Callable[[ReferenceParseFailure], None]] = None) -> List[ReferenceRecord]:
    """
    Extract reference records from every complete block in the buffer.

    A block that defeats every strategy contributes nothing; the other blocks
    and the answer text are unaffected.

    Args:
        buffer: Raw accumulated stream text
        on_failure: Optional hook called with each ReferenceParseFailure

    Returns:
        Records in discovery order (duplicates preserved)
    """
    records: List[ReferenceRecord] = []
    for payload in iter_reference_blocks(buffer):
        if not payload.strip():
            continue
        try:
            records.extend(parse_reference_block(payload))
        except ReferenceParseFailure as failure:
            logger.debug(f"Reference block unparsable ({len(payload)} chars), skipping")
            if on_failure is not None:
                on_failure(failure)
    return records


def records_from_search_response(payload: Any) -> List[ReferenceRecord]:
    """
    Normalize a multisearch JSON response into reference records.

    Accepts `{"results": {"reference": [...]}}` and the older
    `{"reference": [...]}` shape. Entries without a doc index get their
    1-based position as id.
    """
    if not isinstance(payload, Mapping):
        return []

    entries: Any = None
    results = payload.get("results")
    if isinstance(results, Mapping) and isinstance(results.get("reference"), list):
        entries = results["reference"]
    elif isinstance(payload.get("reference"), list):
        entries = payload["reference"]

    if not entries:
        return []

    records = []
    for position, entry in enumerate(entries, start=1):
        record = build_reference_record(entry, fallback_id=position)
        if record is not None:
            records.append(record)
    return records


def references_to_payload(records: Iterable[ReferenceRecord]) -> List[Dict[str, Any]]:
    return [record.to_dict() for record in records]
