# stream_utils/parsing/models.py

import asyncio
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Optional, Tuple


@dataclass(frozen=True)
class ReferenceRecord:
    """One search-result entry correlated to an inline [citation:N] marker"""
    id: int
    title: str = "search result"
    snippet: str = ""
    url: Optional[str] = None
    source: str = "Unknown"
    score: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ParsedContent:
    """Classified view of a raw buffer. Always rebuilt, never patched."""
    think_text: str = ""
    main_text: str = ""
    references: Tuple[ReferenceRecord, ...] = ()
    reasoning_closed: bool = False

    @property
    def is_empty(self) -> bool:
        return not (self.think_text or self.main_text or self.references)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "think_text": self.think_text,
            "main_text": self.main_text,
            "references": [r.to_dict() for r in self.references],
            "reasoning_closed": self.reasoning_closed,
        }


EMPTY_CONTENT = ParsedContent()


@dataclass(frozen=True)
class CitationLink:
    """A resolved [citation:N] marker; record is None when N is unknown"""
    citation_id: int
    record: Optional[ReferenceRecord] = None

    @property
    def resolved(self) -> bool:
        return self.record is not None


@dataclass
class StreamEvent:
    """One decoded event-stream line"""
    kind: str  # 'data', 'event' or 'done'
    raw: str
    payload: Any = None


@dataclass
class CancellationToken:
    """Cooperative cancellation flag for one in-flight turn"""
    reason: Optional[str] = None
    _event: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    def cancel(self, reason: str = "user_cancelled"):
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self):
        await self._event.wait()
