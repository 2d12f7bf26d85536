# chat_relay/relay_handlers/turn_manager.py

import logging
from typing import Dict, Optional

from stream_utils.parsing.turn import TurnContext

logger = logging.getLogger(__name__)

class TurnManager:
    """Registry of live turns, keyed by turn id, for lookup and cancellation"""

    def __init__(self):
        self.active_turns: Dict[str, TurnContext] = {}
        self.cancel_requests = 0

    def start_turn(self, turn_id: Optional[str] = None) -> TurnContext:
        """Create and register a fresh TurnContext"""
        turn = TurnContext(turn_id=turn_id) if turn_id else TurnContext()
        if turn.turn_id in self.active_turns:
            raise ValueError(f"Turn {turn.turn_id} is already active")

        self.active_turns[turn.turn_id] = turn
        logger.info(f"✅ Turn {turn.turn_id} registered ({len(self.active_turns)} active)")
        return turn

    def get(self, turn_id: str) -> Optional[TurnContext]:
        return self.active_turns.get(turn_id)

    def cancel(self, turn_id: str, reason: str = "user_cancelled") -> bool:
        """Fire the turn's cancellation token; False when the turn is unknown"""
        turn = self.active_turns.get(turn_id)
        if turn is None:
            logger.warning(f"⚠️ Cancel requested for unknown turn {turn_id}")
            return False

        self.cancel_requests += 1
        turn.cancel_token.cancel(reason)
        logger.info(f"🛑 Cancel requested for turn {turn_id} ({reason})")
        return True

    def release(self, turn_id: str):
        """Forget a finished turn"""
        if self.active_turns.pop(turn_id, None) is not None:
            logger.info(f"❌ Turn {turn_id} released")

    def get_stats(self):
        """Get turn statistics"""
        streaming = sum(1 for turn in self.active_turns.values() if turn.streaming)
        return {
            "active_turns": len(self.active_turns),
            "streaming_turns": streaming,
            "cancel_requests": self.cancel_requests
        }

# Global turn manager instance
manager = TurnManager()
