"""Named constants for values that appear in multiple places or need explanation.

Each constant has a comment explaining what depends on it, so a change can be
judged without grepping for side-effects.
"""

from __future__ import annotations

# ---------------------------------------------------------------------------
# Chunking
# ---------------------------------------------------------------------------

# Character budget for one chunk's formatted text.  Sized so a chunk, the
# system prompt and a few rounds of tool results fit a 32k-token context.
DEFAULT_CHUNK_BUDGET: int = 8_000

# ---------------------------------------------------------------------------
# Session liveness
# ---------------------------------------------------------------------------

# Consecutive finalized turns in one phase before the corrective prompt
# escalates (planning: "move to working now"; working: "produce output now";
# review: "close the task").
MAX_CONSECUTIVE_PHASE_TURNS: int = 2

# Re-submissions of one turn after degenerate output before the chunk fails.
MAX_DEGENERATION_RETRIES: int = 2

# Default turn ceiling per session.  ``None`` in LoopConfig disables it.
DEFAULT_MAX_TURNS: int = 40

# ---------------------------------------------------------------------------
# Degeneration detection
# ---------------------------------------------------------------------------

# Trailing run of one character that counts as degenerate output.
REPEAT_THRESHOLD: int = 80

# Only the last N characters of the output are examined on each fragment.
REPEAT_CHECK_WINDOW: int = 100

# Trailing repetitions of a 2-5 character pattern that count as degenerate.
PATTERN_REPEAT_THRESHOLD: int = 30

# A repeated pattern is tolerated when the source has a block of the same
# pattern at least this fraction of the repeated output's length.
SOURCE_PATTERN_SIMILARITY_RATIO: float = 0.75

# Output this many times longer than the source ignores source similarity.
RUNAWAY_OUTPUT_RATIO: float = 3.0

# ---------------------------------------------------------------------------
# Stream scanning
# ---------------------------------------------------------------------------

# The guard re-scans the buffer for phase/content tokens only after it has
# grown by more than this many characters, bounding regex cost on long streams.
STREAM_CHECK_INCREMENT: int = 50

# Buffers shorter than this cannot hold a complete token and are not scanned.
STREAM_MIN_SCAN_LENGTH: int = 20

# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------

# Maximum entries accepted in a single add_translation_batch call.
MAX_BATCH_SIZE: int = 100

# Maximum characters of one tool result recorded in the planning digest.
# The full result stays in the conversation; only the digest copy is capped.
MAX_DIGEST_TOOL_RESULT_CHARS: int = 2_000

# ---------------------------------------------------------------------------
# Transport / run log
# ---------------------------------------------------------------------------

# Default HTTP read timeout for one streamed chat-completions call.  The real
# value comes from ModelConfig.timeout_s.
LLM_CHAT_DEFAULT_TIMEOUT_S: float = 120.0

# Maximum characters stored from an LLM response's text in the run log.
MAX_LLM_CONTENT_IN_RUNLOG_CHARS: int = 2_000
