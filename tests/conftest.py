"""Shared fixtures: event-stream builders and fake upstream responses."""

import asyncio
import json
from typing import Iterable, List, Optional

import httpx
import pytest

from stream_utils.metrics import metrics


def delta_line(text: str, finish_reason: Optional[str] = None) -> bytes:
    """One OpenAI-compatible `data:` line carrying a content delta"""
    chunk = {"choices": [{"delta": {"content": text}, "finish_reason": finish_reason}]}
    return f"data: {json.dumps(chunk, ensure_ascii=False)}\n\n".encode("utf-8")


DONE_LINE = b"data: [DONE]\n\n"


def event_stream(deltas: Iterable[str], done: bool = True) -> bytes:
    body = b"".join(delta_line(d) for d in deltas)
    return body + (DONE_LINE if done else b"")


def stream_response(chunks: List[bytes], status_code: int = 200, content_type: str = "text/event-stream") -> httpx.Response:
    """A streamed httpx.Response whose body arrives chunk by chunk"""
    async def body():
        for chunk in chunks:
            await asyncio.sleep(0)
            yield chunk

    return httpx.Response(status_code, headers={"content-type": content_type}, content=body())


@pytest.fixture
def make_delta():
    return delta_line


@pytest.fixture
def make_event_stream():
    return event_stream


@pytest.fixture
def make_stream_response():
    return stream_response


@pytest.fixture
def counter_delta():
    """Read how much a metrics counter moved during the test"""
    before = metrics.get_counters()

    def delta(name: str) -> int:
        return metrics.get_counters().get(name, 0) - before.get(name, 0)

    return delta
