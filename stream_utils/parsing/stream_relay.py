# stream_utils/parsing/stream_relay.py
"""
Pumps an upstream response into a turn and emits ParsedContent snapshots.

Three sub-paths:
    iter_snapshots        streaming, parsed  -> one ParsedContent per chunk
    relay_non_streaming   full JSON body     -> one final ParsedContent
    iter_raw_bytes        streaming, raw     -> upstream bytes verbatim

Cancellation is cooperative. Each read races against the turn's cancellation
token, and the token is checked again when the read returns; a chunk that
arrives after cancellation is dropped and the last snapshot becomes final.
"""

import asyncio
import logging
import time
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional

import httpx

from stream_utils.metrics import metrics
from stream_utils.parsing.errors import (
    MalformedChunk,
    UpstreamUnavailable,
    error_envelope,
    user_facing_message,
)
from stream_utils.parsing.models import CancellationToken, ParsedContent
from stream_utils.parsing.stream_normalizer import EventStreamDecoder, StreamNormalizer
from stream_utils.parsing.turn import TurnContext

logger = logging.getLogger(__name__)

EVENT_STREAM_TYPE = "text/event-stream"


def normalized_stream_headers(upstream_headers: Mapping[str, str]) -> Dict[str, str]:
    """
    Headers for a raw pass-through response.

    Content type is text/event-stream when the upstream is an event stream,
    otherwise the upstream's own; cache and keep-alive are always set.
    """
    content_type = upstream_headers.get("content-type") or EVENT_STREAM_TYPE
    if content_type.split(";")[0].strip().lower() == EVENT_STREAM_TYPE:
        content_type = EVENT_STREAM_TYPE
    return {
        "Content-Type": content_type,
        "Cache-Control": "no-cache",
        "Connection": "keep-alive",
    }


async def _read_next(byte_iter) -> Optional[bytes]:
    try:
        return await byte_iter.__anext__()
    except StopAsyncIteration:
        return None


async def next_chunk(byte_iter, token: CancellationToken) -> Optional[bytes]:
    """
    Await the next upstream chunk unless cancellation comes first.

    Returns None at end of stream or when the token fired during the read.
    """
    if token.is_cancelled:
        return None

    read = asyncio.ensure_future(_read_next(byte_iter))
    waiter = asyncio.ensure_future(token.wait())
    try:
        done, _ = await asyncio.wait({read, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
        if not read.done():
            read.cancel()
            # Let the cancelled read unwind before the response is closed
            await asyncio.gather(read, return_exceptions=True)

    if read in done:
        return read.result()
    return None


async def close_quietly(response: httpx.Response, turn_id: Optional[str] = None):
    """Best-effort close of the upstream; never raises"""
    try:
        await response.aclose()
    except Exception as e:
        logger.warning(f"⚠️ Closing upstream for turn {turn_id} failed: {e}")


class StreamRelay:
    """
    🎯 SINGLE RESPONSIBILITY: Move upstream chunks into a turn's buffer

    Does NOT handle:
    - Opening the upstream request (upstream_client.py does this)
    - Delivering snapshots to consumers (relay_handlers do this)

    ONLY handles:
    - The read loop and its cancellation checks
    - Event-stream decoding into text deltas
    - Finalizing or freezing the turn when the loop ends
    """

    def __init__(self, normalizer: Optional[StreamNormalizer] = None, provider: str = "openai"):
        self.normalizer = normalizer or StreamNormalizer()
        self.provider = provider

    # ——— Streaming (parsed) ————————————————————————————————————————————————————————

    async def iter_snapshots(self, turn: TurnContext, response: httpx.Response) -> AsyncIterator[ParsedContent]:
        """
        Yield a ParsedContent after every processed chunk, then the final one.

        Malformed lines are skipped. A transport failure mid-stream is recorded
        on `turn.error` and ends the loop with the content kept. The response
        is closed on every exit path.
        """
        turn.streaming = True
        turn.status = self.normalizer.phase_label("start")
        metrics.increment("turns_started")
        logger.info(f"🌊 Streaming turn {turn.turn_id}")

        decoder = EventStreamDecoder()
        byte_iter = response.aiter_bytes()
        started = time.perf_counter()
        final_status = "completed"
        phase_seen = False

        try:
            while True:
                chunk = await next_chunk(byte_iter, turn.cancel_token)
                if turn.cancelled:
                    if chunk:
                        logger.debug(f"Discarding {len(chunk)} bytes read after cancellation of turn {turn.turn_id}")
                    break

                if chunk is None:
                    self._consume_lines(turn, decoder.flush(), phase_seen)
                    break

                if turn.chunks == 0:
                    metrics.record_first_chunk_time((time.perf_counter() - started) * 1000)
                turn.chunks += 1
                metrics.increment("chunks")

                done, phase_seen = self._consume_lines(turn, decoder.feed(chunk), phase_seen)
                turn.last_parsed = turn.accumulator.parsed
                yield turn.last_parsed

                if done:
                    break

        except (asyncio.CancelledError, GeneratorExit):
            # Consumer task cancelled or generator closed before the stream ended
            final_status = "cancelled"
            raise

        except (httpx.HTTPError, httpx.StreamError) as e:
            final_status = "failed"
            failure = UpstreamUnavailable(str(e) or e.__class__.__name__)
            metrics.increment("upstream_errors")
            turn.error = error_envelope(failure)
            turn.status = user_facing_message(failure)
            logger.error(f"❌ Upstream failed mid-stream for turn {turn.turn_id}: {e}")

        finally:
            if turn.cancelled:
                final_status = "cancelled"
            self._finish(turn, final_status, started)
            await close_quietly(response, turn.turn_id)

        yield turn.last_parsed

    def _consume_lines(self, turn: TurnContext, lines: List[str], phase_seen: bool):
        """
        Apply decoded lines to the turn.

        Returns:
            (done, phase_seen) where done is True once the terminal sentinel arrived
        """
        for line in lines:
            try:
                event = self.normalizer.parse_line(line)
            except MalformedChunk as e:
                metrics.increment("malformed_chunks")
                logger.warning(f"⚠️ Skipping malformed line in turn {turn.turn_id}: {e.reason}")
                continue

            if event is None:
                continue

            if event.kind == "done":
                return True, phase_seen

            if event.kind == "event":
                phase_seen = True
                turn.status = self.normalizer.phase_label(event.payload)
                continue

            turn.metadata.update(self.normalizer.extract_metadata(event.payload))
            text = self.normalizer.extract_text(event.payload, provider=self.provider)
            if text:
                parsed = turn.accumulator.append(text)
                if not phase_seen:
                    turn.status = self._derived_status(parsed)

        return False, phase_seen

    def _derived_status(self, parsed: ParsedContent) -> str:
        if parsed.think_text and not parsed.reasoning_closed:
            return self.normalizer.phase_label("thinking")
        if parsed.main_text:
            return self.normalizer.phase_label("answering")
        return self.normalizer.phase_label("start")

    def _finish(self, turn: TurnContext, final_status: str, started: float):
        turn.streaming = False
        if final_status == "cancelled":
            turn.last_parsed = turn.accumulator.freeze()
            turn.status = None
            logger.info(f"🛑 Turn {turn.turn_id} cancelled ({turn.cancel_token.reason or 'consumer gone'}) after {turn.chunks} chunks")
        else:
            turn.last_parsed = turn.accumulator.finalize()
            if final_status == "completed":
                turn.status = None
                logger.info(f"✅ Turn {turn.turn_id} completed: {turn.chunks} chunks, {len(turn.accumulator)} chars")

        metrics.record_turn_metrics(
            turn_id=turn.turn_id,
            final_status=final_status,
            chunks=turn.chunks,
            characters=len(turn.accumulator),
            references=len(turn.last_parsed.references),
            total_time_ms=(time.perf_counter() - started) * 1000,
        )

    # ——— Non-streaming ——————————————————————————————————————————————————————————————

    def relay_non_streaming(self, turn: TurnContext, body: Any) -> ParsedContent:
        """Parse a complete chat completion body as one final snapshot"""
        started = time.perf_counter()
        metrics.increment("turns_started")
        turn.metadata.update(self.normalizer.extract_metadata(body))

        text = self.normalizer.extract_completion_text(body)
        if text:
            turn.accumulator.append(text)
        self._finish(turn, "completed", started)
        return turn.last_parsed

    # ——— Raw pass-through ——————————————————————————————————————————————————————————

    async def iter_raw_bytes(self, response: httpx.Response, cancel_token: Optional[CancellationToken] = None) -> AsyncIterator[bytes]:
        """Forward upstream bytes verbatim until end of stream or cancellation"""
        token = cancel_token or CancellationToken()
        byte_iter = response.aiter_bytes()
        forwarded = 0
        try:
            while True:
                chunk = await next_chunk(byte_iter, token)
                if chunk is None or token.is_cancelled:
                    break
                forwarded += len(chunk)
                yield chunk
        except (httpx.HTTPError, httpx.StreamError) as e:
            metrics.increment("upstream_errors")
            logger.error(f"❌ Raw pass-through interrupted after {forwarded} bytes: {e}")
        finally:
            await close_quietly(response)
            logger.debug(f"Raw pass-through closed after {forwarded} bytes")
