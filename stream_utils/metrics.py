"""
# metrics.py
Relay telemetry: per-turn history, stream counters and server metrics
"""

import time
import threading
from datetime import datetime, timezone, timedelta
from typing import Dict, Any
from collections import defaultdict, deque
import psutil
import logging

logger = logging.getLogger(__name__)

class Timer:
    """High-precision timer for performance measurements"""

    def __init__(self):
        self.start_time = None
        self.end_time = None
        self.elapsed_ms = 0.0

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.end_time = time.perf_counter()
        self.elapsed_ms = (self.end_time - self.start_time) * 1000

class MetricsCollector:
    """Relay metrics collection with thread safety"""

    def __init__(self, max_history: int = 1000):
        self.max_history = max_history
        self._lock = threading.Lock()

        # Finished turns
        self.turn_metrics = deque(maxlen=max_history)

        # Counters
        self.counters = defaultdict(int)

        # Upstream time-to-first-chunk samples
        self.first_chunk_times = deque(maxlen=max_history)

    def increment(self, name: str, amount: int = 1):
        """Increment a named counter"""
        with self._lock:
            self.counters[name] += amount

    def record_first_chunk_time(self, time_ms: float):
        """Record latency between opening the upstream and its first chunk"""
        with self._lock:
            self.first_chunk_times.append({
                'timestamp': datetime.now(timezone.utc),
                'time_ms': time_ms
            })

    def record_turn_metrics(self, turn_id: str, final_status: str, chunks: int,
                            characters: int, references: int, total_time_ms: float):
        """Record one finished turn (completed, cancelled or failed)"""
        with self._lock:
            metric = {
                'timestamp': datetime.now(timezone.utc),
                'turn_id': turn_id,
                'final_status': final_status,
                'chunks': chunks,
                'characters': characters,
                'references': references,
                'total_time_ms': total_time_ms,
                'chars_per_second': characters / (total_time_ms / 1000) if total_time_ms > 0 else 0,
                'success': final_status == 'completed'
            }
            self.turn_metrics.append(metric)
            self.counters[f'turns_{final_status}'] += 1

    def get_recent_performance_metrics(self, minutes: int = 60) -> Dict[str, Any]:
        """Get turn metrics from the last N minutes"""
        cutoff_time = datetime.now(timezone.utc) - timedelta(minutes=minutes)

        with self._lock:
            recent_turns = [
                m for m in self.turn_metrics
                if m['timestamp'] > cutoff_time
            ]
            recent_first_chunks = [
                m for m in self.first_chunk_times
                if m['timestamp'] > cutoff_time
            ]

            if not recent_turns:
                return {'no_data': True}

            avg_turn_time = sum(m['total_time_ms'] for m in recent_turns) / len(recent_turns)
            avg_chars_per_sec = sum(m['chars_per_second'] for m in recent_turns) / len(recent_turns)
            avg_first_chunk = (
                sum(m['time_ms'] for m in recent_first_chunks) / len(recent_first_chunks)
                if recent_first_chunks else 0
            )

            successful_turns = sum(1 for m in recent_turns if m['success'])
            success_rate = successful_turns / len(recent_turns) * 100

            return {
                'avg_turn_time_ms': avg_turn_time,
                'avg_chars_per_sec': avg_chars_per_sec,
                'avg_first_chunk_ms': avg_first_chunk,
                'success_rate': success_rate,
                'total_turns': len(recent_turns),
                'malformed_chunks': self.counters.get('malformed_chunks', 0),
                'reference_parse_failures': self.counters.get('reference_parse_failures', 0),
                'upstream_errors': self.counters.get('upstream_errors', 0)
            }

    def get_counters(self) -> Dict[str, int]:
        with self._lock:
            return dict(self.counters)

    def get_system_stats(self) -> Dict[str, Any]:
        """Get current system statistics"""
        return {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'cpu_percent': psutil.cpu_percent(),
            'memory_percent': psutil.virtual_memory().percent,
            'turns_started_total': self.counters.get('turns_started', 0),
            'chunks_total': self.counters.get('chunks', 0),
            'upstream_errors_total': self.counters.get('upstream_errors', 0)
        }

# Process-wide collector shared by the relay and the endpoints
metrics = MetricsCollector()
