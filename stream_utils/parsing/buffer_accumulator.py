# stream_utils/parsing/buffer_accumulator.py
"""
Append-only raw buffer for one turn, re-parsed after every append.

Usage:
    accumulator = BufferAccumulator(turn_id="t-1")
    snapshot = accumulator.append("<think>reading Cap. 57")
    snapshot = accumulator.append("</think>The answer is ...")
    final = accumulator.finalize()
"""

import codecs
import logging
from typing import Callable, Optional

from stream_utils.parsing.errors import ReferenceParseFailure
from stream_utils.parsing.models import EMPTY_CONTENT, ParsedContent
from stream_utils.parsing.reference_extractor import extract_references
from stream_utils.parsing.sanitizer import sanitize_content
from stream_utils.parsing.segment_extractor import split_segments

logger = logging.getLogger(__name__)

FailureHook = Callable[[ReferenceParseFailure], None]


def parse_buffer(buffer: str, streaming: bool = False, on_reference_failure: Optional[FailureHook] = None) -> ParsedContent:
    """
    Derive ParsedContent from a raw buffer. Pure: same input, same output.

    Args:
        buffer: Full raw text accumulated so far
        streaming: True while the turn may still grow
        on_reference_failure: Optional hook for unparsable reference blocks
    """
    if not buffer:
        return EMPTY_CONTENT

    segments = split_segments(buffer, streaming=streaming)
    references = extract_references(buffer, on_failure=on_reference_failure)

    return ParsedContent(
        think_text=segments.think_text,
        main_text=sanitize_content(
            segments.content_candidate,
            streaming=streaming,
            after_reasoning=segments.reasoning_closed,
        ),
        references=tuple(references),
        reasoning_closed=segments.reasoning_closed,
    )


class BufferAccumulator:
    """
    Owns the RawBuffer of one turn.

    The buffer only grows; it is never edited in place. Every append triggers
    a full re-derivation of ParsedContent. Only the turn's read loop writes
    here; readers use `parsed`, which is an immutable snapshot.
    """

    def __init__(self, turn_id: Optional[str] = None, on_reference_failure: Optional[FailureHook] = None):
        self.turn_id = turn_id
        self._text = ""
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._on_reference_failure = on_reference_failure
        self._parsed: ParsedContent = EMPTY_CONTENT
        self._finalized = False
        self.appends = 0

    @property
    def text(self) -> str:
        return self._text

    @property
    def parsed(self) -> ParsedContent:
        return self._parsed

    @property
    def finalized(self) -> bool:
        return self._finalized

    def __len__(self) -> int:
        return len(self._text)

    def append(self, text: str) -> ParsedContent:
        """Append decoded text verbatim and re-parse the whole buffer"""
        if self._finalized:
            raise RuntimeError(f"Buffer for turn {self.turn_id} is finalized")
        if text:
            self._text += text
            self.appends += 1
            self._parsed = parse_buffer(self._text, streaming=True, on_reference_failure=self._on_reference_failure)
        return self._parsed

    def append_bytes(self, data: bytes) -> ParsedContent:
        """Decode bytes incrementally (split multi-byte characters are held) and append"""
        return self.append(self._decoder.decode(data))

    def freeze(self) -> ParsedContent:
        """
        Stop accepting text and keep the last computed snapshot as final.

        Used on cancellation: nothing is re-derived, so the final content is
        exactly what the consumer last saw.
        """
        self._finalized = True
        return self._parsed

    def finalize(self) -> ParsedContent:
        """Flush the decoder and parse once more without streaming hold-backs"""
        if self._finalized:
            return self._parsed

        tail = self._decoder.decode(b"", final=True)
        if tail:
            self._text += tail
        self._finalized = True
        self._parsed = parse_buffer(self._text, streaming=False, on_reference_failure=self._on_reference_failure)
        logger.debug(f"Turn {self.turn_id} finalized: {len(self._text)} chars, {len(self._parsed.references)} references")
        return self._parsed
