"""hybridlm: local-first LLM completion orchestration with tool calling and cloud fallback."""

from hybridlm.agent.router import ExecutionMode, FallbackRouter
from hybridlm.errors import (
    AuthError,
    EmptyPromptError,
    EngineError,
    FormatError,
    HybridLMError,
    InvalidModeError,
    NetworkError,
    SessionReleasedError,
    ToolExecutionError,
)
from hybridlm.inference.engine import CompletionParams, CompletionResult, EmbeddingResult
from hybridlm.lm import HybridLM
from hybridlm.tools.registry import ToolDefinition, ToolRegistry, tool

__all__ = [
    "AuthError",
    "CompletionParams",
    "CompletionResult",
    "EmbeddingResult",
    "EmptyPromptError",
    "EngineError",
    "ExecutionMode",
    "FallbackRouter",
    "FormatError",
    "HybridLM",
    "HybridLMError",
    "InvalidModeError",
    "NetworkError",
    "SessionReleasedError",
    "ToolDefinition",
    "ToolExecutionError",
    "ToolRegistry",
    "tool",
]
