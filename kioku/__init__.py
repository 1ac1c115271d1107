"""Kioku: conversational memory retrieval and prompt context assembly."""

import logging
import os
import sys
import warnings

__version__ = "0.1.0"

# Log to stderr so `kioku context --messages` output stays pipeable
_log_level = os.environ.get("KIOKU_LOG_LEVEL", "WARNING").upper()
logging.basicConfig(
    level=getattr(logging, _log_level, logging.WARNING),
    format="%(levelname)s: %(name)s: %(message)s",
    stream=sys.stderr,
)

# Embedding requests go through LiteLLM, which logs every call at INFO
logging.getLogger("LiteLLM").setLevel(max(logging.WARNING, logging.getLogger().level))

# Suppress LiteLLM's harmless async cleanup warning
warnings.filterwarnings("ignore", message=".*close_litellm_async_clients.*", category=RuntimeWarning)
