"""Configuration schema. Defaults point at Ollama; any OpenAI-compatible backend works via base_url + model."""

from __future__ import annotations

from typing import Dict, List, Optional

from pydantic import BaseModel, Field, model_validator

from .constants import (
    DEFAULT_CHUNK_BUDGET,
    DEFAULT_MAX_TURNS,
    MAX_CONSECUTIVE_PHASE_TURNS,
    MAX_DEGENERATION_RETRIES,
    PATTERN_REPEAT_THRESHOLD,
    REPEAT_CHECK_WINDOW,
    REPEAT_THRESHOLD,
    STREAM_CHECK_INCREMENT,
    STREAM_MIN_SCAN_LENGTH,
)

DEFAULT_TOOL_LIMITS: Dict[str, int] = {
    "list_terms": 3,
    "list_characters": 3,
    "list_memories": 3,
    "get_book_info": 2,
    "list_chapters": 2,
}

DEFAULT_PRODUCTIVE_TOOLS: List[str] = [
    "list_terms",
    "list_characters",
    "list_memories",
    "search_memory_by_keywords",
    "get_chapter_info",
    "get_book_info",
    "get_term",
    "get_character",
    "get_memory",
    "get_recent_memories",
]

DEFAULT_DIGEST_TOOLS: List[str] = [
    "list_terms",
    "list_characters",
    "search_memory_by_keywords",
    "get_chapter_info",
    "get_book_info",
    "list_chapters",
]


class ModelConfig(BaseModel):
    """LLM endpoint and model name (OpenAI chat-completions API). Defaults: Ollama."""
    base_url: str = Field(..., description="e.g. http://localhost:11434/v1 or http://localhost:8000/v1")
    model: str = Field(..., description="Model name (e.g. qwen2.5:7b for Ollama, or your server's model id)")
    api_key: str = Field("", description="Bearer token; empty for local backends (no header sent), set for cloud.")
    backend: str = Field(
        "ollama",
        description=(
            "Streaming client backend. "
            "'ollama' (default): retries once with a minimal payload on HTTP 400 and "
            "detects 'does not support tools'. "
            "'generic': bare OpenAI-compatible streaming client (OpenAI, vLLM, LM Studio, ...)."
        ),
    )
    temperature: float = 0.1
    top_p: float = 0.9
    max_tokens: int = 4096
    timeout_s: float = Field(default=360.0, description="HTTP read timeout for one streamed request.")


class GuardConfig(BaseModel):
    """Stream guard thresholds."""
    repeat_threshold: int = Field(REPEAT_THRESHOLD, gt=0)
    window: int = Field(REPEAT_CHECK_WINDOW, gt=0, description="Trailing characters examined per check.")
    pattern_repeat_threshold: int = Field(PATTERN_REPEAT_THRESHOLD, gt=0)
    check_increment: int = Field(
        STREAM_CHECK_INCREMENT,
        ge=0,
        description="Buffer growth (chars) between phase/content token scans.",
    )
    min_scan_length: int = Field(STREAM_MIN_SCAN_LENGTH, ge=0)


class LoopConfig(BaseModel):
    """Task loop session policy defaults."""
    max_turns: Optional[int] = Field(
        DEFAULT_MAX_TURNS,
        description="Turn ceiling per session; None disables it (not recommended for paid backends).",
    )
    max_consecutive_phase_turns: int = Field(MAX_CONSECUTIVE_PHASE_TURNS, ge=1)
    max_degeneration_retries: int = Field(MAX_DEGENERATION_RETRIES, ge=0)
    chunk_budget: int = Field(DEFAULT_CHUNK_BUDGET, gt=0)
    tool_limits: Dict[str, int] = Field(
        default_factory=lambda: dict(DEFAULT_TOOL_LIMITS),
        description="Per-tool call budget within one session. Tools not listed are unbounded.",
    )
    productive_tools: List[str] = Field(
        default_factory=lambda: list(DEFAULT_PRODUCTIVE_TOOLS),
        description="Tools whose successful use resets every stall counter.",
    )
    digest_tools: List[str] = Field(
        default_factory=lambda: list(DEFAULT_DIGEST_TOOLS),
        description="Tools whose planning-phase results are kept in the planning digest.",
    )

    @model_validator(mode="after")
    def _check_limits_positive(self) -> "LoopConfig":
        bad = sorted(name for name, limit in self.tool_limits.items() if limit < 0)
        if bad:
            raise ValueError(f"Negative tool limits are not allowed: {bad}")
        if self.max_turns is not None and self.max_turns < 1:
            raise ValueError("max_turns must be >= 1 or None")
        return self


class TelemetryConfig(BaseModel):
    """Optional OpenTelemetry tracing configuration."""
    enabled: bool = False
    service_name: str = "docloop"
    exporter: str = Field(
        "none",
        description="Span exporter: 'none' (default), 'console' (stdout), or 'otlp' (gRPC endpoint).",
    )
    otlp_endpoint: str = Field(
        "",
        description="OTLP gRPC endpoint, e.g. 'http://localhost:4317'. Required when exporter='otlp'.",
    )


class DocloopConfig(BaseModel):
    """Root config: models, loop policy, guard thresholds, telemetry."""
    models: Dict[str, ModelConfig]
    default_model_key: str = "quality"
    loop: LoopConfig = Field(default_factory=LoopConfig)
    guard: GuardConfig = Field(default_factory=GuardConfig)
    telemetry: Optional[TelemetryConfig] = None

    @model_validator(mode="after")
    def _check_default_model(self) -> "DocloopConfig":
        if self.default_model_key not in self.models:
            raise ValueError(
                f"default_model_key {self.default_model_key!r} is not in models "
                f"({sorted(self.models)})"
            )
        return self

    def model_for(self, key: Optional[str] = None) -> ModelConfig:
        """Return the model config for *key*, or the default model."""
        if key and key in self.models:
            return self.models[key]
        return self.models[self.default_model_key]


DEFAULT_CONFIG = DocloopConfig(
    models={
        "fast": ModelConfig(
            base_url="http://localhost:11434/v1",
            model="qwen2.5:7b",
            temperature=0.1,
            max_tokens=2048,
        ),
        "quality": ModelConfig(
            base_url="http://localhost:11434/v1",
            model="qwen2.5:14b",
            temperature=0.1,
            max_tokens=4096,
        ),
    },
)
