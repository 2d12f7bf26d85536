# chat_relay/relay_handlers/endpoints.py

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import Body, FastAPI, HTTPException
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict

from stream_utils.config import (
    DEFAULT_MODEL,
    LAW_MULTISEARCH_BASE_URL,
    LAW_RAG_BASE_URL,
    MODEL_OPTIONS,
    RAG_BASE_URL,
)
from stream_utils.connection_pool import ConnectionPoolManager
from stream_utils.metrics import metrics
from stream_utils.parsing.errors import RelayError, error_envelope, user_facing_message
from stream_utils.parsing.reference_extractor import records_from_search_response, references_to_payload
from stream_utils.parsing.stream_relay import StreamRelay, normalized_stream_headers
from stream_utils.parsing.upstream_client import UpstreamClient
from .handlers import build_chat_payload, publish_snapshot, stream_turn_events
from .turn_manager import TurnManager, manager

logger = logging.getLogger(__name__)

CHAT_COMPLETIONS_PATH = "v1/chat/completions"

class ChatMessage(BaseModel):
    model_config = ConfigDict(extra="allow")

    role: str
    content: Any

class ChatCompletionRequest(BaseModel):
    """OpenAI-compatible body; unknown fields are forwarded untouched"""
    model_config = ConfigDict(extra="allow")

    model: str = DEFAULT_MODEL
    messages: List[ChatMessage]
    stream: bool = False

class TurnRequest(BaseModel):
    messages: List[ChatMessage]
    model: str = DEFAULT_MODEL
    turn_id: Optional[str] = None
    stream: bool = True
    temperature: Optional[float] = None

class RagQueryRequest(BaseModel):
    query: str
    generate_overview: bool = False
    streaming: bool = False
    recalls: Optional[Dict[str, Any]] = None

def _error_response(exc: RelayError) -> JSONResponse:
    """Uniform 500 envelope for failures before any byte was streamed"""
    return JSONResponse(status_code=500, content=error_envelope(exc))

def setup_relay_routes(
    app: FastAPI,
    redis_pub=None,
    pool: Optional[ConnectionPoolManager] = None,
    turn_manager: TurnManager = manager,
    relay: Optional[StreamRelay] = None,
):
    """Setup all relay routes on the FastAPI app
    redis_pub: optional redis.asyncio client; snapshots are broadcast to `chat:{turn_id}`
    """
    pool = pool or ConnectionPoolManager()
    upstream = UpstreamClient(pool)
    relay = relay or StreamRelay()

    # ——— Pass-through relay ————————————————————————————————————————————————————————

    @app.post("/api/law/rag/v1/chat/completions")
    async def law_rag_chat_completions(request: ChatCompletionRequest):
        """
        Chat completion relay.

        stream=true  -> upstream bytes forwarded verbatim as they arrive
        stream=false -> upstream JSON returned as-is
        """
        payload = request.model_dump(exclude_none=True)
        url = f"{LAW_RAG_BASE_URL}/{CHAT_COMPLETIONS_PATH}"
        logger.info(f"📡 Chat completion relay (model={request.model}, stream={request.stream})")

        try:
            if not request.stream:
                return JSONResponse(content=await upstream.post_json(url, payload))
            response = await upstream.open_stream(url, payload)
        except RelayError as e:
            logger.error(f"❌ Chat completion relay failed: {e}")
            return _error_response(e)

        return StreamingResponse(
            relay.iter_raw_bytes(response),
            status_code=response.status_code,
            headers=normalized_stream_headers(response.headers),
        )

    @app.post("/api/law/rag/{path:path}")
    async def law_rag_proxy(path: str, payload: Dict[str, Any] = Body(...)):
        """JSON pass-through to the legal RAG service"""
        try:
            return JSONResponse(content=await upstream.post_json(f"{LAW_RAG_BASE_URL}/{path}", payload))
        except RelayError as e:
            logger.error(f"❌ Law RAG relay to /{path} failed: {e}")
            return _error_response(e)

    @app.post("/api/law/multisearch/{path:path}")
    async def law_multisearch_proxy(path: str, payload: Dict[str, Any] = Body(...), normalize: bool = False):
        """
        JSON pass-through to the legal multi-source search service.

        With ?normalize=true the response is `{references, raw}` where
        references are ReferenceRecords built from the search results.
        """
        try:
            data = await upstream.post_json(f"{LAW_MULTISEARCH_BASE_URL}/{path}", payload)
        except RelayError as e:
            logger.error(f"❌ Multisearch relay to /{path} failed: {e}")
            return _error_response(e)

        if not normalize:
            return JSONResponse(content=data)

        records = records_from_search_response(data)
        logger.info(f"🔍 Multisearch returned {len(records)} references")
        return {"references": references_to_payload(records), "raw": data}

    @app.post("/api/rag")
    async def rag_query(request: RagQueryRequest):
        """General RAG query relay"""
        try:
            return JSONResponse(content=await upstream.post_json(f"{RAG_BASE_URL}/api/rag", request.model_dump()))
        except RelayError as e:
            logger.error(f"❌ RAG relay failed: {e}")
            return _error_response(e)

    # ——— Parsed turns ——————————————————————————————————————————————————————————————

    @app.post("/api/turns")
    async def start_turn(request: TurnRequest):
        """
        Parsed chat turn.

        Streams `event: snapshot` frames with {turn_id, streaming, status,
        content} after every upstream chunk, then one `event: done` frame.
        With stream=false the final snapshot is returned as JSON.
        """
        try:
            turn = turn_manager.start_turn(request.turn_id)
        except ValueError as e:
            raise HTTPException(status_code=409, detail=str(e))

        extra = {"temperature": request.temperature} if request.temperature is not None else None
        messages = [m.model_dump() for m in request.messages]
        payload = build_chat_payload(messages, request.model, request.stream, extra)
        url = f"{LAW_RAG_BASE_URL}/{CHAT_COMPLETIONS_PATH}"

        try:
            if not request.stream:
                body = await upstream.post_json(url, payload)
                relay.relay_non_streaming(turn, body)
                snapshot = turn.snapshot()
                await publish_snapshot(redis_pub, turn.turn_id, "done", snapshot)
                turn_manager.release(turn.turn_id)
                return snapshot

            response = await upstream.open_stream(url, payload)
        except RelayError as e:
            turn.error = error_envelope(e)
            turn.status = user_facing_message(e)
            metrics.increment("turns_failed")
            turn_manager.release(turn.turn_id)
            logger.error(f"❌ Turn {turn.turn_id} failed before streaming: {e}")
            return _error_response(e)

        return StreamingResponse(
            stream_turn_events(turn, response, relay, turn_manager, redis_pub),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "Connection": "keep-alive", "X-Turn-Id": turn.turn_id},
        )

    @app.post("/api/turns/{turn_id}/cancel")
    async def cancel_turn(turn_id: str):
        """Cancel an in-flight turn; its last snapshot becomes final"""
        if not turn_manager.cancel(turn_id):
            raise HTTPException(status_code=404, detail=f"Turn {turn_id} not found")
        return {"turn_id": turn_id, "cancelled": True}

    @app.get("/api/turns/{turn_id}")
    async def get_turn(turn_id: str):
        """Latest snapshot of a live turn"""
        turn = turn_manager.get(turn_id)
        if turn is None:
            raise HTTPException(status_code=404, detail=f"Turn {turn_id} not found")
        return turn.snapshot()

    # ——— Info ——————————————————————————————————————————————————————————————————————

    @app.get("/api/models")
    async def list_models():
        """Model options with their capability strings"""
        return {
            "default": DEFAULT_MODEL,
            "models": [
                {"name": name, "capabilities": capabilities}
                for name, capabilities in MODEL_OPTIONS.items()
            ]
        }

    @app.get("/health")
    async def health():
        """Health check for the relay"""
        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            **turn_manager.get_stats(),
            "relay": metrics.get_counters(),
            "pool": pool.get_pool_stats()
        }
