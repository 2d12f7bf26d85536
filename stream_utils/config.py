# stream_utils/config.py

"""
Environment-driven configuration for the relay and the stream parser.

Everything is a module-level constant so callers can import what they need:

    from stream_utils.config import STREAMING_CONFIG, PHASE_STATUS_LABELS
"""

import json
import logging
import os
import sys

from dotenv import load_dotenv

# ——— Env Load ————————————————————————————————————————————————————————————————————
load_dotenv()
logger = logging.getLogger(__name__)

# ——— Upstream Endpoints ——————————————————————————————————————————————————————————

LAW_RAG_BASE_URL = os.getenv("LAW_RAG_BASE_URL", "https://lexihkrag-test.hkgai.asia").rstrip("/")
LAW_MULTISEARCH_BASE_URL = os.getenv("LAW_MULTISEARCH_BASE_URL", "https://lexihk-search-test.hkgai.asia").rstrip("/")
RAG_BASE_URL = os.getenv("RAG_BASE_URL", "https://ragtest.hkgai.asia").rstrip("/")
UPSTREAM_API_KEY = os.getenv("UPSTREAM_API_KEY")  # Optional bearer token

# Snapshot broadcast (optional, disabled when unset)
REDIS_URL = os.getenv("REDIS_URL")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# ——— HTTP Pool ————————————————————————————————————————————————————————————————————

HTTP_POOL_CONFIG = {
    "timeout": float(os.getenv("UPSTREAM_TIMEOUT_SECONDS", "120")),
    "max_connections": int(os.getenv("UPSTREAM_MAX_CONNECTIONS", "100")),
    "max_keepalive_connections": 20,
}

# ——— Streaming Configuration ——————————————————————————————————————————————————————

STREAMING_CONFIG = {
    "think_open": "<think>",
    "think_close": "</think>",
    "reference_open": "<search_results>",
    "reference_close": "</search_results>",
    "done_sentinel": "[DONE]",
    "interrupted_marker": "*Generation interrupted.*",
    "unwrap_outer_code_fence": os.getenv("UNWRAP_OUTER_CODE_FENCE", "true").lower() == "true",
}

# Lifecycle phase names (from `event:` lines) -> human-readable status strings
_DEFAULT_PHASE_STATUS_LABELS = {
    "start": "Connecting to the legal assistant...",
    "search": "Searching legal sources...",
    "searching": "Searching legal sources...",
    "retrieve": "Reading retrieved documents...",
    "thinking": "Thinking...",
    "answer": "Writing the answer...",
    "answering": "Writing the answer...",
    "done": "Done",
    "error": "Something went wrong",
}


def _load_phase_labels() -> dict:
    """Default table, overlaid with PHASE_STATUS_LABELS_JSON when it is set"""
    labels = dict(_DEFAULT_PHASE_STATUS_LABELS)
    raw = os.getenv("PHASE_STATUS_LABELS_JSON")
    if not raw:
        return labels

    try:
        overrides = json.loads(raw)
    except json.JSONDecodeError as e:
        logger.warning(f"⚠️ Ignoring invalid PHASE_STATUS_LABELS_JSON: {e}")
        return labels

    if isinstance(overrides, dict):
        labels.update({str(k): str(v) for k, v in overrides.items()})
    return labels


PHASE_STATUS_LABELS = _load_phase_labels()

# ——— Model Options ———————————————————————————————————————————————————————————————

# model name -> capability string advertised to the UI
MODEL_OPTIONS = {
    "HKGAI-V1-Thinking-RAG-Chat": "thinking-websearch-reflink",
    "HKGAI-V1-Thinking-RAG-NOSEARCH-Chat": "thinking",
    "HKGAI-V1-RAG-Chat": "websearch-reflink",
    "HKGAI-V1-RAG-NOSEARCH-Chat": "",
}
DEFAULT_MODEL = os.getenv("DEFAULT_MODEL", "HKGAI-V1-Thinking-RAG-Chat")

# ——— Logging Configuration ———————————————————————————————————————————————————————

PROJECT_LOGGERS = ["stream_utils", "chat_relay"]


def configure_logging(level: str = LOG_LEVEL):
    """Attach a stdout handler to the project loggers"""
    formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    for module_name in PROJECT_LOGGERS:
        module_logger = logging.getLogger(module_name)
        if not any(isinstance(h, logging.StreamHandler) for h in module_logger.handlers):
            module_logger.addHandler(handler)
        module_logger.setLevel(getattr(logging, level, logging.INFO))
        module_logger.propagate = False

    logger.info(f"✅ Logging configured at {level}")
