# chat_relay/relay_handlers/__init__.py
from .turn_manager import TurnManager, manager
from .endpoints import setup_relay_routes
from .handlers import (
    build_chat_payload,
    format_sse,
    publish_snapshot,
    stream_turn_events
)

__all__ = [
    'TurnManager',
    'manager',
    'setup_relay_routes',
    'build_chat_payload',
    'format_sse',
    'publish_snapshot',
    'stream_turn_events'
]
