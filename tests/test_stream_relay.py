import asyncio

import httpx
import pytest

from stream_utils.connection_pool import ConnectionPoolManager
from stream_utils.parsing.errors import UpstreamHTTPError, UpstreamUnavailable
from stream_utils.parsing.stream_relay import StreamRelay, normalized_stream_headers
from stream_utils.parsing.turn import TurnContext
from stream_utils.parsing.upstream_client import UpstreamClient


async def collect(relay, turn, response):
    return [parsed async for parsed in relay.iter_snapshots(turn, response)]


async def test_streams_snapshot_per_chunk_then_final(make_delta, make_stream_response):
    chunks = [
        make_delta("<think>checking Cap. 7"),
        make_delta("</think>The tenancy "),
        make_delta("ends [citation:1]."),
        b"data: [DONE]\n\n",
    ]
    turn = TurnContext(turn_id="relay-1")
    snapshots = await collect(StreamRelay(), turn, make_stream_response(chunks))

    assert len(snapshots) == 5  # four chunks plus the final snapshot
    assert snapshots[0].think_text == "checking Cap. 7"
    assert snapshots[0].main_text == ""
    assert snapshots[1].main_text == "The tenancy"
    assert snapshots[-1].main_text == "The tenancy ends [citation:1]."
    assert snapshots[-1].reasoning_closed
    assert not turn.streaming
    assert turn.status is None
    assert turn.error is None
    assert turn.chunks == 4


async def test_lines_split_across_chunks(make_delta, make_stream_response):
    line = make_delta("你好")
    chunks = [line[:11], line[11:20], line[20:], b"data: [DONE]\n\n"]
    turn = TurnContext()
    snapshots = await collect(StreamRelay(), turn, make_stream_response(chunks))
    assert snapshots[-1].main_text == "你好"


async def test_malformed_line_is_skipped(make_delta, make_stream_response, counter_delta):
    chunks = [make_delta("A"), b"data: {broken\n\n", make_delta("B"), b"data: [DONE]\n\n"]
    turn = TurnContext()
    snapshots = await collect(StreamRelay(), turn, make_stream_response(chunks))
    assert snapshots[-1].main_text == "AB"
    assert counter_delta("malformed_chunks") == 1
    assert turn.error is None


async def test_stream_ends_without_done_sentinel(make_delta, make_stream_response):
    # The last line has no trailing newline; it is released at end of stream
    chunks = [make_delta("complete"), make_delta(" answer").rstrip(b"\n")]
    turn = TurnContext()
    snapshots = await collect(StreamRelay(), turn, make_stream_response(chunks))
    assert snapshots[-1].main_text == "complete answer"


async def test_phase_events_set_status(make_delta, make_stream_response):
    relay = StreamRelay()
    turn = TurnContext()
    statuses = []
    chunks = [b"event: search\n\n", make_delta("answer"), b"data: [DONE]\n\n"]
    async for _ in relay.iter_snapshots(turn, make_stream_response(chunks)):
        statuses.append(turn.status)
    assert statuses[0] == relay.normalizer.phase_label("search")
    assert statuses[1] == relay.normalizer.phase_label("search")
    assert statuses[-1] is None


async def test_cancel_during_blocked_read_freezes_last_snapshot(make_delta, counter_delta):
    gate = asyncio.Event()
    first_seen = asyncio.Event()

    async def body():
        yield make_delta("Partial answer")
        await gate.wait()
        yield make_delta(" never shown")

    response = httpx.Response(200, headers={"content-type": "text/event-stream"}, content=body())
    turn = TurnContext(turn_id="cancel-1")
    seen = []

    async def consume():
        async for parsed in StreamRelay().iter_snapshots(turn, response):
            seen.append(parsed)
            first_seen.set()

    task = asyncio.create_task(consume())
    await asyncio.wait_for(first_seen.wait(), timeout=1)
    turn.cancel_token.cancel()
    await asyncio.wait_for(task, timeout=1)

    assert [p.main_text for p in seen] == ["Partial answer", "Partial answer"]
    assert turn.accumulator.finalized
    assert not turn.streaming
    assert turn.display_main_text() == "Partial answer"
    assert response.is_closed
    assert counter_delta("turns_cancelled") == 1


async def test_chunk_arriving_after_cancellation_is_discarded(make_delta):
    turn = TurnContext()

    async def body():
        yield make_delta("kept")
        turn.cancel_token.cancel()
        yield make_delta(" dropped")

    response = httpx.Response(200, headers={"content-type": "text/event-stream"}, content=body())
    snapshots = await collect(StreamRelay(), turn, response)
    assert snapshots[-1].main_text == "kept"
    assert "dropped" not in turn.accumulator.text


async def test_cancel_before_any_content_shows_interrupted_marker(make_delta):
    turn = TurnContext()
    turn.cancel_token.cancel()
    response = httpx.Response(200, content=make_delta("late"))
    snapshots = await collect(StreamRelay(), turn, response)
    assert snapshots[-1].main_text == ""
    assert turn.display_main_text() == "*Generation interrupted.*"
    assert turn.snapshot()["content"]["main_text"] == "*Generation interrupted.*"


async def test_mid_stream_failure_keeps_content(make_delta, counter_delta):
    async def body():
        yield make_delta("Under s. 6 the landlord")
        raise httpx.ReadError("connection reset")

    turn = TurnContext()
    response = httpx.Response(200, headers={"content-type": "text/event-stream"}, content=body())
    snapshots = await collect(StreamRelay(), turn, response)

    assert snapshots[-1].main_text == "Under s. 6 the landlord"
    assert turn.error["error"] == "Internal server error"
    assert "connection reset" in turn.error["details"]
    assert turn.status is not None
    assert counter_delta("turns_failed") == 1


async def test_reference_failure_counted_once_per_block(make_delta, make_stream_response, counter_delta):
    chunks = [
        make_delta("Answer <search_results>garbage</search_results>"),
        make_delta(" more"),
        make_delta(" text"),
        b"data: [DONE]\n\n",
    ]
    turn = TurnContext()
    snapshots = await collect(StreamRelay(), turn, make_stream_response(chunks))
    assert snapshots[-1].main_text == "Answer  more text"
    assert snapshots[-1].references == ()
    assert counter_delta("reference_parse_failures") == 1


def test_relay_non_streaming():
    body = {
        "model": "HKGAI-V1-RAG-Chat",
        "choices": [{"message": {"content": '<think>r</think>Final <search_results>{"doc_index": 1, "title": "A"}</search_results>'}, "finish_reason": "stop"}],
    }
    turn = TurnContext()
    parsed = StreamRelay().relay_non_streaming(turn, body)
    assert parsed.think_text == "r"
    assert parsed.main_text == "Final"
    assert [r.title for r in parsed.references] == ["A"]
    assert turn.metadata["model"] == "HKGAI-V1-RAG-Chat"
    assert not turn.streaming


async def test_raw_bytes_are_forwarded_verbatim(make_stream_response):
    chunks = [b"data: {\"x\": 1}\n\n", b": comment\n", b"data: [DONE]\n\n"]
    response = make_stream_response(chunks)
    forwarded = [chunk async for chunk in StreamRelay().iter_raw_bytes(response)]
    assert b"".join(forwarded) == b"".join(chunks)
    assert response.is_closed


@pytest.mark.parametrize("upstream,expected", [
    ({"content-type": "text/event-stream; charset=utf-8"}, "text/event-stream"),
    ({"content-type": "application/json"}, "application/json"),
    ({}, "text/event-stream"),
])
def test_normalized_stream_headers(upstream, expected):
    headers = normalized_stream_headers(httpx.Headers(upstream))
    assert headers["Content-Type"] == expected
    assert headers["Cache-Control"] == "no-cache"
    assert headers["Connection"] == "keep-alive"


def make_client(handler):
    pool = ConnectionPoolManager(transport=httpx.MockTransport(handler))
    return UpstreamClient(pool, api_key="secret"), pool


async def test_upstream_non_2xx_raises_http_error(counter_delta):
    client, pool = make_client(lambda request: httpx.Response(503, text="busy"))
    with pytest.raises(UpstreamHTTPError) as exc_info:
        await client.open_stream("https://upstream.test/v1/chat/completions", {"stream": True})
    assert exc_info.value.status_code == 503
    assert exc_info.value.body == "busy"
    assert "status: 503" in str(exc_info.value)
    assert counter_delta("upstream_errors") == 1
    await pool.close_all()


async def test_upstream_transport_failure_raises_unavailable():
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    client, pool = make_client(refuse)
    with pytest.raises(UpstreamUnavailable):
        await client.post_json("https://upstream.test/api/rag", {"query": "x"})
    assert pool.get_pool_stats()["stats"]["connection_errors"] == 1
    await pool.close_all()


async def test_upstream_sends_bearer_and_returns_json():
    seen = {}

    def handler(request):
        seen["auth"] = request.headers.get("authorization")
        return httpx.Response(200, json={"ok": True})

    client, pool = make_client(handler)
    assert await client.post_json("https://upstream.test/api/rag", {"query": "x"}) == {"ok": True}
    assert seen["auth"] == "Bearer secret"
    await pool.close_all()


async def test_consumer_task_cancelled_mid_read_counts_as_cancelled(make_delta, counter_delta):
    gate = asyncio.Event()
    first_seen = asyncio.Event()

    async def body():
        yield make_delta("Partial")
        await gate.wait()
        yield make_delta(" never read")

    response = httpx.Response(200, headers={"content-type": "text/event-stream"}, content=body())
    turn = TurnContext(turn_id="abandoned-1")

    async def consume():
        async for _ in StreamRelay().iter_snapshots(turn, response):
            first_seen.set()

    task = asyncio.create_task(consume())
    await asyncio.wait_for(first_seen.wait(), timeout=1)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert counter_delta("turns_cancelled") == 1
    assert counter_delta("turns_completed") == 0
    assert turn.accumulator.finalized
    assert turn.last_parsed.main_text == "Partial"
    assert not turn.streaming
    assert response.is_closed


async def test_generator_closed_early_counts_as_cancelled(make_delta, make_stream_response, counter_delta):
    chunks = [make_delta("first"), make_delta(" second"), b"data: [DONE]\n\n"]
    turn = TurnContext()
    snapshots = StreamRelay().iter_snapshots(turn, make_stream_response(chunks))

    assert (await snapshots.__anext__()).main_text == "first"
    await snapshots.aclose()

    assert counter_delta("turns_cancelled") == 1
    assert counter_delta("turns_completed") == 0
    assert turn.last_parsed.main_text == "first"


async def test_unparsable_reference_block_warns_once_per_turn(make_delta, make_stream_response, monkeypatch):
    from stream_utils.parsing import reference_extractor
    from stream_utils.parsing import turn as turn_module

    turn_warnings, extractor_warnings = [], []
    monkeypatch.setattr(turn_module.logger, "warning", turn_warnings.append)
    monkeypatch.setattr(reference_extractor.logger, "warning", extractor_warnings.append)

    chunks = [
        make_delta("Answer <search_results>garbage</search_results>"),
        make_delta(" more"),
        make_delta(" text"),
        b"data: [DONE]\n\n",
    ]
    await collect(StreamRelay(), TurnContext(), make_stream_response(chunks))

    assert len(turn_warnings) == 1
    assert "unparsable" in turn_warnings[0]
    assert extractor_warnings == []
