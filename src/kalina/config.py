# kalina: Centralize environment-driven configuration constants so every module (client, orchestrator, enrichment) imports them from one place without circular dependencies.

import os
import pathlib

# Model ids (the API key is resolved by the client: settings, then OPENAI_API_KEY)
AI_MODEL = os.environ.get("AI_MODEL", "gpt-5-mini")  # default chat model id
# kalina: Image generation/edit uses its own model id; the chat model cannot produce images.
AI_IMAGE_MODEL = os.environ.get("AI_IMAGE_MODEL", "gpt-image-1")

# Output token budget
MAX_COMPLETION_TOKENS = int(os.environ.get("KALINA_MAX_COMPLETION_TOKENS", "8192"))

# HTTP timeout for a single request (seconds)
HTTP_TIMEOUT_SEC = int(os.environ.get("KALINA_HTTP_TIMEOUT_SEC", "240"))

# Data directory for conversations, LTM and code memory
KALINA_HOME = pathlib.Path(os.environ.get("KALINA_HOME", str(pathlib.Path.home() / ".kalina"))).expanduser()

# Context assembly: number of raw turns replayed before the current one
HISTORY_TURNS = int(os.environ.get("KALINA_HISTORY_TURNS", "4"))

# Summarization runs when the message count is a multiple of this value
SUMMARY_INTERVAL = int(os.environ.get("KALINA_SUMMARY_INTERVAL", "6"))
# ... and summarizes this many trailing messages
SUMMARY_WINDOW = int(os.environ.get("KALINA_SUMMARY_WINDOW", "6"))

# First-turn title extraction gives up after this many characters without a TITLE: directive
TITLE_SCAN_CHARS = 50

# Duration ticker period (seconds)
THINKING_TICK_SEC = 0.1

# Root log level for the CLI (settings.yaml logging.level wins when present)
LOG_LEVEL = os.environ.get("KALINA_LOG_LEVEL", "WARNING")
