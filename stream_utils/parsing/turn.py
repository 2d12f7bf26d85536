# stream_utils/parsing/turn.py

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Set

from stream_utils.config import STREAMING_CONFIG
from stream_utils.metrics import metrics
from stream_utils.parsing.buffer_accumulator import BufferAccumulator
from stream_utils.parsing.errors import ReferenceParseFailure
from stream_utils.parsing.models import EMPTY_CONTENT, CancellationToken, ParsedContent

logger = logging.getLogger(__name__)


@dataclass
class TurnContext:
    """
    State of one user-submitted exchange.

    Owned by the caller and passed into the relay; the relay's read loop is
    the only writer of `accumulator`.
    """
    turn_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    accumulator: Optional[BufferAccumulator] = None
    cancel_token: CancellationToken = field(default_factory=CancellationToken)
    streaming: bool = False
    last_parsed: ParsedContent = EMPTY_CONTENT
    status: Optional[str] = None
    error: Optional[Dict[str, Any]] = None
    chunks: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    failed_reference_payloads: Set[str] = field(default_factory=set, repr=False)

    def __post_init__(self):
        if self.accumulator is None:
            self.accumulator = BufferAccumulator(
                turn_id=self.turn_id,
                on_reference_failure=self._record_reference_failure,
            )

    def _record_reference_failure(self, failure: ReferenceParseFailure):
        # The same block fails again on every re-parse; count it once
        if failure.payload in self.failed_reference_payloads:
            return
        self.failed_reference_payloads.add(failure.payload)
        metrics.increment("reference_parse_failures")
        logger.warning(f"⚠️ Reference block unparsable in turn {self.turn_id} ({len(failure.payload)} chars), skipping")

    @property
    def cancelled(self) -> bool:
        return self.cancel_token.is_cancelled

    def display_main_text(self) -> str:
        """Answer text to show; the interrupted marker only when a cancelled turn produced nothing"""
        if self.cancelled and not self.last_parsed.main_text:
            return STREAMING_CONFIG["interrupted_marker"]
        return self.last_parsed.main_text

    def snapshot(self) -> Dict[str, Any]:
        """Consumer-facing view of the turn"""
        content = self.last_parsed.to_dict()
        content["main_text"] = self.display_main_text()
        snapshot = {
            "turn_id": self.turn_id,
            "streaming": self.streaming,
            "status": self.status,
            "content": content,
        }
        if self.error is not None:
            snapshot["error"] = self.error
        return snapshot
