"""Inference engine abstraction: protocol and shared types."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Protocol

if TYPE_CHECKING:
    from hybridlm.inference.events import TokenBus


@dataclass
class ToolCall:
    """A tool call requested by the model."""

    id: str
    name: str
    arguments: Any

    def to_message(self) -> dict[str, Any]:
        """Render in the OpenAI wire shape used inside assistant messages.

        Arguments that are already a JSON string are passed through as is.
        """
        arguments = self.arguments
        if not isinstance(arguments, str):
            arguments = json.dumps(arguments)
        return {
            "id": self.id,
            "type": "function",
            "function": {
                "name": self.name,
                "arguments": arguments,
            },
        }


@dataclass
class Timings:
    """Engine-reported timing figures. Zeroed when the provider does not report them."""

    prompt_n: int = 0
    prompt_ms: float = 0.0
    prompt_per_second: float = 0.0
    predicted_n: int = 0
    predicted_ms: float = 0.0
    predicted_per_second: float = 0.0


@dataclass
class CompletionResult:
    """Canonical completion result, shared by the local and remote paths."""

    text: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    tokens_predicted: int = 0
    tokens_evaluated: int = 0
    stop_reason: str = "stop"
    timings: Timings = field(default_factory=Timings)


@dataclass
class EmbeddingResult:
    embedding: list[float] = field(default_factory=list)


@dataclass
class TokenEvent:
    """One streamed token, tagged with the session that produced it."""

    session_id: int | None
    token: str
    probabilities: list[dict[str, Any]] | None = None


TokenCallback = Callable[[TokenEvent], None]


@dataclass
class CompletionParams:
    """Caller-facing completion parameters.

    ``messages`` always win over ``prompt``. ``tools`` holds OpenAI function
    schemas; executable tools live in a ``ToolRegistry``.
    """

    messages: list[dict[str, Any]] | None = None
    prompt: str = ""
    chat_template: str | None = None
    jinja: bool = False
    tools: list[dict[str, Any]] | None = None
    tool_choice: str | None = None
    parallel_tool_calls: Any = None
    response_format: dict[str, Any] | None = None
    n_predict: int = -1
    temperature: float = 0.8
    top_k: int = 40
    top_p: float = 0.95
    min_p: float = 0.05
    penalty_repeat: float = 1.0
    seed: int = -1
    n_probs: int = 0
    stop: list[str] = field(default_factory=list)
    grammar: str | None = None
    images: list[str] = field(default_factory=list)


@dataclass
class CompletionRequest:
    """Engine-ready request. Built fresh for every attempt."""

    prompt: str
    n_predict: int = -1
    temperature: float = 0.8
    top_k: int = 40
    top_p: float = 0.95
    min_p: float = 0.05
    penalty_repeat: float = 1.0
    seed: int = -1
    n_probs: int = 0
    stop: list[str] = field(default_factory=list)
    grammar: str | None = None
    grammar_lazy: bool | None = None
    grammar_triggers: list[dict[str, Any]] | None = None
    preserved_tokens: list[str] | None = None
    chat_format: int | None = None
    json_schema: str | None = None
    emit_partial_completion: bool = False


@dataclass
class FormattedChat:
    """Structured chat-template output (jinja templates with tools or schemas)."""

    prompt: str
    grammar: str | None = None
    grammar_lazy: bool | None = None
    grammar_triggers: list[dict[str, Any]] | None = None
    preserved_tokens: list[str] | None = None
    additional_stops: list[str] = field(default_factory=list)
    chat_format: int | None = None


@dataclass
class FormatOptions:
    jinja: bool = False
    json_schema: str | None = None
    tools: str | None = None  # JSON-encoded schema list
    parallel_tool_calls: str | None = None
    tool_choice: str | None = None


@dataclass
class SessionConfig:
    """Parameters for opening an engine session."""

    model: str
    n_ctx: int = 2048
    n_batch: int = 512
    n_threads: int = 0
    n_gpu_layers: int = 0
    embedding: bool = False
    mmproj: str = ""
    lora: str = ""
    lora_scale: float = 1.0


@dataclass
class ModelInfo:
    """Metadata about the model bound to a session."""

    desc: str = ""
    size: int = 0
    n_params: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)
    llama_chat: bool = False  # model ships a chat template
    jinja_default: bool = False
    jinja_tool_use: bool = False


@dataclass
class SessionInfo:
    """What the engine reports when a session is opened."""

    gpu: bool = False
    reason_no_gpu: str = ""
    model: ModelInfo = field(default_factory=ModelInfo)


@dataclass
class SessionLoadResult:
    tokens_loaded: int = 0
    prompt: str = ""


class InferenceEngine(Protocol):
    """Request/response contract of a native inference engine.

    Token events produced while ``complete`` runs are published on ``events``,
    tagged with the session id that produced them.
    """

    events: TokenBus

    async def init_session(
        self,
        session_id: int,
        config: SessionConfig,
        on_progress: Callable[[int], None] | None = None,
    ) -> SessionInfo: ...

    async def complete(self, session_id: int, request: CompletionRequest) -> CompletionResult: ...

    async def multimodal_complete(
        self,
        session_id: int,
        messages: list[dict[str, Any]],
        media_paths: list[str],
        request: CompletionRequest,
    ) -> CompletionResult: ...

    async def stop(self, session_id: int) -> None: ...

    async def rewind(self, session_id: int) -> None: ...

    async def release(self, session_id: int) -> None: ...

    async def tokenize(self, session_id: int, text: str) -> list[int]: ...

    async def detokenize(self, session_id: int, tokens: list[int]) -> str: ...

    async def embedding(
        self, session_id: int, text: str, params: dict[str, Any] | None = None
    ) -> EmbeddingResult: ...

    async def format_chat(
        self,
        session_id: int,
        messages: list[dict[str, Any]],
        template: str | None,
        options: FormatOptions,
    ) -> str | FormattedChat: ...

    async def save_session(self, session_id: int, path: str, token_size: int = -1) -> int: ...

    async def load_session(self, session_id: int, path: str) -> SessionLoadResult: ...
