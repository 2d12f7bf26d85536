# stream_utils/parsing/segment_extractor.py
"""
Splits an accumulated raw buffer into the reasoning span and the answer candidate.

The whole buffer is re-scanned on every call. A tag boundary is only known once
the tag has fully arrived, so incremental diffing would have to guess; a full
re-scan is a pure function of the buffer and therefore idempotent.

    "<think>"  absent              -> whole buffer is the answer candidate
    "<think>"  present, no close   -> reasoning still forming, candidate empty
    "<think>...</think>rest"       -> reasoning committed, candidate = rest

Text before the first "<think>" is dropped.
"""

import logging
from dataclasses import dataclass

from stream_utils.config import STREAMING_CONFIG
from stream_utils.parsing.sanitizer import hold_back_partial_marker

logger = logging.getLogger(__name__)

THINK_OPEN = STREAMING_CONFIG["think_open"]
THINK_CLOSE = STREAMING_CONFIG["think_close"]


@dataclass(frozen=True)
class Segments:
    think_text: str = ""
    content_candidate: str = ""
    reasoning_open: bool = False
    reasoning_closed: bool = False


def split_segments(buffer: str, streaming: bool = False) -> Segments:
    """
    Locate the reasoning span in a raw buffer.

    Args:
        buffer: Full raw text accumulated so far
        streaming: While True, a half-arrived close marker at the tail of an
                   open reasoning span is not shown as reasoning text

    Returns:
        Segments with the trimmed reasoning text and the unsanitized candidate
    """
    open_at = buffer.find(THINK_OPEN)
    if open_at == -1:
        return Segments(content_candidate=buffer)

    body_start = open_at + len(THINK_OPEN)
    close_at = buffer.find(THINK_CLOSE, body_start)

    if close_at == -1:
        forming = buffer[body_start:]
        if streaming:
            forming = hold_back_partial_marker(forming, (THINK_CLOSE,))
        return Segments(think_text=forming.strip(), reasoning_open=True)

    return Segments(
        think_text=buffer[body_start:close_at].strip(),
        content_candidate=buffer[close_at + len(THINK_CLOSE):],
        reasoning_open=True,
        reasoning_closed=True,
    )
