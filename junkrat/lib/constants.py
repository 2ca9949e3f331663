"""Shared constants for junkrat."""

import re

# Providers are tried in this order when falling back
PROVIDER_PRIORITY = ["ollama", "gemini", "openrouter", "custom"]

# Estimated context budget (tokens) per provider
PROVIDER_CONTEXT_TOKENS = {
    "ollama": 4000,
    "gemini": 100000,
    "openrouter": 8000,
}
DEFAULT_CONTEXT_TOKENS = 4000

# Token estimation: ceil(len / 4) + per-message overhead, plus framing per message in totals
CHARS_PER_TOKEN = 4
MESSAGE_TOKEN_OVERHEAD = 5
MESSAGE_FRAMING_TOKENS = 10

SUMMARY_TRIGGER_RATIO = 0.7
SLIDING_WINDOW_SIZE = 10
SUMMARY_MESSAGE_ID = "conversation-summary"

HEALTH_CACHE_TTL_SECONDS = 30.0

# Readiness predicate
READINESS_PHRASES = ["that's all", "ready for plan", "generate phases", "start planning"]
READINESS_CHAR_THRESHOLD = 400
READINESS_MIN_USER_TURNS = 2

# Plan limits
MAX_PHASES = 1000
PHASE_ID_PATTERN = re.compile(r'^phase-\d{3,}$')

# Conversation titles
TITLE_MAX_LEN = 50
TITLE_CUT_LEN = 47
TITLE_MIN_WORD_CUT = 20
DEFAULT_CONVERSATION_TITLE = "New Conversation"

# Autonomous loop
DEFAULT_MAX_ITERATIONS = 50
CONFIDENCE_THRESHOLD = 30
DEFAULT_CONFIDENCE = 50
COMBO_STEP = 0.1
COMBO_MAX = 2.0
PAUSE_POLL_INTERVAL = 1.0

COMPLETION_MARKERS = [
    "<promise>COMPLETE</promise>",
    "<promise>PHASE_COMPLETE</promise>",
    "<promise>TASK_COMPLETE</promise>",
    "<promise>TASK_VERIFIED</promise>",
    "<promise>VERIFIED</promise>",
    "<promise>DONE</promise>",
    "<promise>FIXED</promise>",
    "<promise>REFACTORED</promise>",
]

FAILURE_MARKERS = [
    "<promise>FAILED</promise>",
    "<promise>BLOCKED</promise>",
]

# Persistence
SAVE_DEBOUNCE_SECONDS = 0.3
