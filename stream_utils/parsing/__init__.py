# stream_utils/parsing/__init__.py
from .buffer_accumulator import BufferAccumulator, parse_buffer
from .citation_resolver import CitationSegments, cited_ids, render_markdown, resolve_citations
from .errors import (
    MalformedChunk,
    ReferenceParseFailure,
    RelayError,
    UpstreamHTTPError,
    UpstreamUnavailable,
    error_envelope,
    user_facing_message,
)
from .models import CancellationToken, CitationLink, ParsedContent, ReferenceRecord, StreamEvent
from .reference_extractor import extract_references, records_from_search_response
from .sanitizer import sanitize_content
from .segment_extractor import Segments, split_segments
from .stream_normalizer import EventStreamDecoder, StreamNormalizer
from .stream_relay import StreamRelay, normalized_stream_headers
from .turn import TurnContext
from .upstream_client import UpstreamClient

__all__ = [
    'BufferAccumulator',
    'parse_buffer',
    'CitationSegments',
    'cited_ids',
    'render_markdown',
    'resolve_citations',
    'MalformedChunk',
    'ReferenceParseFailure',
    'RelayError',
    'UpstreamHTTPError',
    'UpstreamUnavailable',
    'error_envelope',
    'user_facing_message',
    'CancellationToken',
    'CitationLink',
    'ParsedContent',
    'ReferenceRecord',
    'StreamEvent',
    'extract_references',
    'records_from_search_response',
    'sanitize_content',
    'Segments',
    'split_segments',
    'EventStreamDecoder',
    'StreamNormalizer',
    'StreamRelay',
    'normalized_stream_headers',
    'TurnContext',
    'UpstreamClient'
]
