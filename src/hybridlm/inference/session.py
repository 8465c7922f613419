"""Engine session handle: one opaque id bound to one loaded model instance."""

from __future__ import annotations

import itertools
import logging
import random
from dataclasses import replace
from typing import Any, Awaitable, Callable, TypeVar

from hybridlm.errors import EngineError, HybridLMError, SessionReleasedError
from hybridlm.inference.engine import (
    CompletionRequest,
    CompletionResult,
    EmbeddingResult,
    FormatOptions,
    FormattedChat,
    InferenceEngine,
    ModelInfo,
    SessionConfig,
    SessionInfo,
    SessionLoadResult,
)
from hybridlm.inference.events import TokenBus
from hybridlm.telemetry import Telemetry

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Process-unique ids; the random offset keeps ids distinct across restarts
_session_ids = itertools.count(random.randint(1, 100_000))


def _strip_file_scheme(path: str) -> str:
    return path[7:] if path.startswith("file://") else path


class EngineSession:
    """Routes typed requests for one session to the engine.

    Engine failures surface as ``EngineError`` with the engine's exception
    chained. Every call after ``release()`` raises ``SessionReleasedError``.
    """

    def __init__(
        self,
        engine: InferenceEngine,
        session_id: int,
        config: SessionConfig,
        info: SessionInfo,
        telemetry: Telemetry | None = None,
    ) -> None:
        self.engine = engine
        self.id = session_id
        self.config = config
        self.gpu = info.gpu
        self.reason_no_gpu = info.reason_no_gpu
        self.model: ModelInfo = info.model
        self.telemetry = telemetry
        self.released = False

    def __repr__(self) -> str:
        state = "released" if self.released else "open"
        return f"<EngineSession id={self.id} gpu={self.gpu} {state}>"

    @property
    def events(self) -> TokenBus:
        return self.engine.events

    def is_llama_chat_supported(self) -> bool:
        return self.model.llama_chat

    def is_jinja_supported(self) -> bool:
        return self.model.jinja_tool_use or self.model.jinja_default

    # ── engine calls ──────────────────────────────────────────────────

    async def _call(self, operation: str, fn: Callable[[], Awaitable[T]]) -> T:
        if self.released:
            raise SessionReleasedError(f"Session {self.id} has been released")
        try:
            return await fn()
        except HybridLMError:
            raise
        except Exception as e:
            raise EngineError(f"{operation} failed for session {self.id}: {e}") from e

    async def format_chat(
        self,
        messages: list[dict[str, Any]],
        template: str | None,
        options: FormatOptions,
    ) -> str | FormattedChat:
        return await self._call(
            "format_chat",
            lambda: self.engine.format_chat(self.id, messages, template, options),
        )

    async def complete(self, request: CompletionRequest) -> CompletionResult:
        return await self._call("completion", lambda: self.engine.complete(self.id, request))

    async def multimodal_complete(
        self,
        messages: list[dict[str, Any]],
        media_paths: list[str],
        request: CompletionRequest,
    ) -> CompletionResult:
        paths = [_strip_file_scheme(p) for p in media_paths]
        return await self._call(
            "multimodal completion",
            lambda: self.engine.multimodal_complete(self.id, messages, paths, request),
        )

    async def stop(self) -> None:
        """Ask the engine to end the running completion. Advisory only."""
        await self._call("stop", lambda: self.engine.stop(self.id))

    async def rewind(self) -> None:
        """Drop cached prompt state so the next completion starts fresh."""
        await self._call("rewind", lambda: self.engine.rewind(self.id))

    async def tokenize(self, text: str) -> list[int]:
        return await self._call("tokenize", lambda: self.engine.tokenize(self.id, text))

    async def detokenize(self, tokens: list[int]) -> str:
        return await self._call("detokenize", lambda: self.engine.detokenize(self.id, tokens))

    async def embedding(self, text: str, params: dict[str, Any] | None = None) -> EmbeddingResult:
        return await self._call(
            "embedding", lambda: self.engine.embedding(self.id, text, params or {})
        )

    async def save_session(self, path: str, token_size: int = -1) -> int:
        """Save cached prompt and completion state. Returns the number of tokens saved."""
        path = _strip_file_scheme(path)
        return await self._call(
            "save_session", lambda: self.engine.save_session(self.id, path, token_size)
        )

    async def load_session(self, path: str) -> SessionLoadResult:
        """Load cached prompt and completion state from a file."""
        path = _strip_file_scheme(path)
        return await self._call("load_session", lambda: self.engine.load_session(self.id, path))

    async def release(self) -> None:
        if self.released:
            return
        await self._call("release", lambda: self.engine.release(self.id))
        self.released = True
        logger.info("Released session %d", self.id)


async def init_session(
    engine: InferenceEngine,
    config: SessionConfig,
    on_progress: Callable[[int], None] | None = None,
    telemetry: Telemetry | None = None,
) -> EngineSession:
    """Open a session, retrying once on CPU if GPU offload fails.

    Each failed attempt is reported to telemetry. Raises ``EngineError``
    carrying the last failure when no attempt succeeds.
    """
    config = replace(
        config,
        model=_strip_file_scheme(config.model),
        lora=_strip_file_scheme(config.lora),
        mmproj=_strip_file_scheme(config.mmproj),
    )
    attempts = [config]
    if config.n_gpu_layers != 0:
        attempts.append(replace(config, n_gpu_layers=0))

    last_exc: Exception | None = None
    for attempt in attempts:
        session_id = next(_session_ids)
        try:
            info = await engine.init_session(session_id, attempt, on_progress)
        except Exception as e:
            last_exc = e
            if telemetry is not None:
                telemetry.error(e, attempt)
            logger.warning(
                "Session init failed (n_gpu_layers=%d): %s", attempt.n_gpu_layers, e,
            )
            continue

        if not info.gpu and attempt.n_gpu_layers != 0:
            logger.info("GPU requested but not used: %s", info.reason_no_gpu or "unknown reason")
        logger.info("Opened session %d for %s", session_id, attempt.model)
        return EngineSession(engine, session_id, attempt, info, telemetry)

    raise EngineError(f"Failed to initialize session for {config.model}: {last_exc}") from last_exc
