# stream_utils/parsing/stream_normalizer.py
"""
Event-stream framing and provider chunk normalization.

SINGLE PURPOSE: Turn upstream bytes into text deltas and lifecycle phases.

Usage:
    decoder = EventStreamDecoder()
    normalizer = StreamNormalizer()
    for line in decoder.feed(raw_bytes):
        event = normalizer.parse_line(line)       # may raise MalformedChunk
        if event and event.kind == "data":
            text = normalizer.extract_text(event.payload)
"""

import codecs
import json
import logging
from typing import Any, Dict, List, Mapping, Optional

from stream_utils.config import PHASE_STATUS_LABELS, STREAMING_CONFIG
from stream_utils.parsing.errors import MalformedChunk
from stream_utils.parsing.models import StreamEvent

logger = logging.getLogger(__name__)

DATA_PREFIX = "data:"
EVENT_PREFIX = "event:"


class EventStreamDecoder:
    """
    Reassembles complete lines from arbitrary network chunks.

    A line split across two chunks is held until its newline arrives, so a
    `data:` payload is never parsed half-received.
    """

    def __init__(self):
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""

    def feed(self, chunk: bytes) -> List[str]:
        """Return the complete lines contained in pending + chunk"""
        if not chunk:
            return []
        text = self._pending + self._decoder.decode(chunk)
        lines = text.split("\n")
        self._pending = lines.pop()
        return [line.rstrip("\r") for line in lines]

    def flush(self) -> List[str]:
        """Release a final unterminated line at end of stream"""
        tail = self._pending + self._decoder.decode(b"", final=True)
        self._pending = ""
        tail = tail.rstrip("\r")
        return [tail] if tail else []


class StreamNormalizer:
    """
    🎯 SINGLE RESPONSIBILITY: Classify event-stream lines and pull text out of them

    Does NOT handle:
    - Accumulating text (buffer_accumulator.py does this)
    - Reading from the network (stream_relay.py does this)

    ONLY handles:
    - `data:` / `event:` line classification and the terminal sentinel
    - Extracting text content from provider-specific chunk formats
    - Mapping lifecycle phase names to status strings
    """

    def __init__(self, phase_labels: Optional[Mapping[str, str]] = None, done_sentinel: str = STREAMING_CONFIG["done_sentinel"]):
        self.phase_labels = dict(PHASE_STATUS_LABELS if phase_labels is None else phase_labels)
        self.done_sentinel = done_sentinel

    # ——— Line Framing ———————————————————————————————————————————————————————————

    def parse_line(self, line: str) -> Optional[StreamEvent]:
        """
        Classify one event-stream line.

        Returns:
            StreamEvent of kind 'data', 'event' or 'done'; None for blank
            lines, comments and unknown fields

        Raises:
            MalformedChunk: if a `data:` payload is not valid JSON
        """
        if not line or line.startswith(":"):
            return None

        if line.startswith(DATA_PREFIX):
            data = line[len(DATA_PREFIX):].strip()
            if not data:
                return None
            if data == self.done_sentinel:
                return StreamEvent(kind="done", raw=data)
            try:
                payload = json.loads(data)
            except (json.JSONDecodeError, ValueError) as e:
                raise MalformedChunk(line, str(e)) from e
            return StreamEvent(kind="data", raw=data, payload=payload)

        if line.startswith(EVENT_PREFIX):
            phase = line[len(EVENT_PREFIX):].strip()
            return StreamEvent(kind="event", raw=phase, payload=phase) if phase else None

        return None

    def phase_label(self, phase: str) -> str:
        """Human-readable status for a lifecycle phase name"""
        return self.phase_labels.get(phase, phase.replace("_", " ").capitalize())

    # ——— Text Extraction ————————————————————————————————————————————————————————

    def extract_text(self, chunk: Any, provider: str = "openai") -> Optional[str]:
        """
        Extract text content from provider-specific chunk format.

        Args:
            chunk: Decoded JSON payload of one `data:` line
            provider: Provider name ("openai", "deepseek", "anthropic")

        Returns:
            Extracted text string or None if no text found
        """
        if not chunk:
            return None

        provider_lower = provider.lower()
        if provider_lower in ("openai", "deepseek", "hkgai"):
            return self._extract_openai_text(chunk)
        elif provider_lower == "anthropic":
            return self._extract_anthropic_text(chunk)

        logger.warning(f"Unknown provider: {provider}")
        return self._extract_fallback_text(chunk)

    def _extract_openai_text(self, chunk: Any) -> Optional[str]:
        """OpenAI-compatible: {"choices": [{"delta": {"content": "text"}}]}"""
        if isinstance(chunk, str):
            return chunk
        if not isinstance(chunk, dict):
            return None

        choices = chunk.get("choices")
        if isinstance(choices, list) and choices and isinstance(choices[0], dict):
            choice = choices[0]
            for container in ("delta", "message"):
                body = choice.get(container)
                if isinstance(body, dict) and isinstance(body.get("content"), str):
                    return body["content"]
            return None

        return self._extract_fallback_text(chunk)

    def _extract_anthropic_text(self, chunk: Any) -> Optional[str]:
        """Anthropic: {"delta": {"text": "content"}}"""
        if isinstance(chunk, str):
            return chunk
        if isinstance(chunk, dict):
            delta = chunk.get("delta")
            if isinstance(delta, dict) and isinstance(delta.get("text"), str):
                return delta["text"]
            if isinstance(chunk.get("text"), str):
                return chunk["text"]
        return None

    def _extract_fallback_text(self, chunk: Any) -> Optional[str]:
        """Fallback extraction for unknown providers"""
        if isinstance(chunk, str):
            return chunk
        if isinstance(chunk, dict):
            for field in ("text", "content", "message"):
                value = chunk.get(field)
                if isinstance(value, str):
                    return value
        return None

    # ——— Completion & Metadata ——————————————————————————————————————————————————

    def is_completion_chunk(self, chunk: Any) -> bool:
        """True if the chunk carries finish_reason == 'stop'"""
        if not isinstance(chunk, dict):
            return False
        choices = chunk.get("choices")
        if isinstance(choices, list) and choices and isinstance(choices[0], dict):
            return choices[0].get("finish_reason") == "stop"
        return False

    def extract_metadata(self, chunk: Any) -> Dict[str, Any]:
        """Model, usage and finish reason when present"""
        if not isinstance(chunk, dict):
            return {}

        metadata = {}
        for key in ("id", "model", "usage"):
            if chunk.get(key) is not None:
                metadata[key] = chunk[key]
        choices = chunk.get("choices")
        if isinstance(choices, list) and choices and isinstance(choices[0], dict):
            if choices[0].get("finish_reason"):
                metadata["finish_reason"] = choices[0]["finish_reason"]
        return metadata

    def extract_completion_text(self, body: Any) -> str:
        """Full answer text from a non-streaming chat completion body"""
        if not isinstance(body, dict):
            return ""
        choices = body.get("choices")
        if isinstance(choices, list) and choices and isinstance(choices[0], dict):
            message = choices[0].get("message")
            if isinstance(message, dict) and isinstance(message.get("content"), str):
                return message["content"]
        return ""
