# chat_relay/relay_handlers/handlers.py

import json
import logging
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, Optional

import httpx

from stream_utils.parsing.stream_relay import StreamRelay
from stream_utils.parsing.turn import TurnContext
from .turn_manager import TurnManager

logger = logging.getLogger(__name__)

def format_sse(event: str, data: Dict[str, Any]) -> str:
    """One event-stream frame"""
    return f"event: {event}\ndata: {json.dumps(data, ensure_ascii=False)}\n\n"

async def publish_snapshot(redis_pub, turn_id: str, message_type: str, snapshot: Dict[str, Any]):
    """Broadcast a turn snapshot to `chat:{turn_id}` when Redis is configured"""
    if redis_pub is None:
        return

    try:
        await redis_pub.publish(f"chat:{turn_id}", json.dumps({
            "type": message_type,
            **snapshot,
            "timestamp": datetime.now(timezone.utc).isoformat()
        }, ensure_ascii=False))
        logger.debug(f"📡 PUBLISHED {message_type} to chat:{turn_id}")
    except Exception as e:
        logger.warning(f"⚠️ Broadcast failed: {e}")

async def stream_turn_events(
    turn: TurnContext,
    response: httpx.Response,
    relay: StreamRelay,
    turn_manager: TurnManager,
    redis_pub=None,
) -> AsyncIterator[str]:
    """
    Drive the relay for one turn and render its snapshots as SSE frames.

    Emits `event: snapshot` per processed chunk and a final `event: done`.
    If the consumer goes away mid-stream the turn is cancelled, so its last
    snapshot is kept as final and the upstream is closed.
    """
    snapshots = relay.iter_snapshots(turn, response)
    try:
        async for _ in snapshots:
            frame = turn.snapshot()
            await publish_snapshot(redis_pub, turn.turn_id, "snapshot", frame)
            yield format_sse("snapshot", frame)

        done = turn.snapshot()
        await publish_snapshot(redis_pub, turn.turn_id, "done", done)
        yield format_sse("done", done)

    finally:
        if turn.streaming:
            turn.cancel_token.cancel("client_disconnected")
            logger.info(f"🔌 Consumer disconnected from turn {turn.turn_id}")
        await snapshots.aclose()
        turn_manager.release(turn.turn_id)

def build_chat_payload(messages, model: str, stream: bool, extra: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """OpenAI-compatible chat completion request body"""
    payload = dict(extra or {})
    payload.update({
        "model": model,
        "messages": messages,
        "stream": stream
    })
    return payload
