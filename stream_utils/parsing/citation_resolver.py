# stream_utils/parsing/citation_resolver.py
"""
Resolves inline [citation:N] markers against extracted reference records.

Render-time only: nothing here touches the raw buffer, so it is safe to call
from a refresh path while the turn is still streaming.

    segments = resolve_citations("see [citation:2]", references)
    for segment in segments:          # may be iterated again later
        if isinstance(segment, CitationLink): ...
"""

import re
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Union

from stream_utils.parsing.models import CitationLink, ReferenceRecord

CITATION_PATTERN = re.compile(r'\[citation:(\d+)\]')

Segment = Union[str, CitationLink]


def _index_by_id(references: Iterable[ReferenceRecord]) -> Dict[int, ReferenceRecord]:
    index: Dict[int, ReferenceRecord] = {}
    for record in references:
        # Ids are not unique upstream; the first record seen wins
        index.setdefault(record.id, record)
    return index


class CitationSegments:
    """
    Lazy, finite, restartable sequence of text runs and CitationLinks.

    Each iteration re-scans the text from the start; the inputs are held by
    reference and never modified.
    """

    def __init__(self, text: str, references: Sequence[ReferenceRecord]):
        self.text = text or ""
        self.references = tuple(references)

    def __iter__(self) -> Iterator[Segment]:
        index = _index_by_id(self.references)
        cursor = 0
        for match in CITATION_PATTERN.finditer(self.text):
            if match.start() > cursor:
                yield self.text[cursor:match.start()]
            citation_id = int(match.group(1))
            yield CitationLink(citation_id=citation_id, record=index.get(citation_id))
            cursor = match.end()
        if cursor < len(self.text):
            yield self.text[cursor:]

    def links(self) -> List[CitationLink]:
        return [segment for segment in self if isinstance(segment, CitationLink)]

    def unresolved_ids(self) -> List[int]:
        return [link.citation_id for link in self.links() if not link.resolved]


def resolve_citations(text: str, references: Sequence[ReferenceRecord]) -> CitationSegments:
    """Split answer text into plain runs and resolved citation links"""
    return CitationSegments(text, references)


def cited_ids(text: str) -> List[int]:
    """Marker ids in order of appearance (repeats kept)"""
    return [int(m.group(1)) for m in CITATION_PATTERN.finditer(text or "")]


def _link_markdown(link: CitationLink) -> str:
    url: Optional[str] = link.record.url if link.record else None
    if url:
        return f"[{link.citation_id}]({url})"
    return f"[{link.citation_id}]"


def render_markdown(text: str, references: Sequence[ReferenceRecord]) -> str:
    """
    Render markers as markdown links: [N](url) when the record has a url,
    plain [N] otherwise (unknown ids included).
    """
    parts = []
    for segment in resolve_citations(text, references):
        if isinstance(segment, CitationLink):
            parts.append(_link_markdown(segment))
        else:
            parts.append(segment)
    return "".join(parts)
