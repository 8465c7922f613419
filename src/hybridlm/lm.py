"""High-level entry point: one local session, an optional remote provider, and a router."""

from __future__ import annotations

import logging
from typing import Any, Callable

from hybridlm.agent.router import ExecutionMode, FallbackRouter
from hybridlm.config import HybridLMConfig
from hybridlm.errors import EngineError
from hybridlm.inference.engine import (
    CompletionParams,
    CompletionResult,
    EmbeddingResult,
    InferenceEngine,
    SessionConfig,
    TokenCallback,
)
from hybridlm.inference.remote import RemoteCredential, RemoteProvider
from hybridlm.inference.session import EngineSession, init_session
from hybridlm.telemetry import Telemetry
from hybridlm.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)


class HybridLM:
    """Chat completions and embeddings over a local model with optional cloud fallback.

    Build with ``await HybridLM.init(config)``. A local model that fails to
    load leaves ``session`` as None, so remote-only use keeps working.
    """

    def __init__(
        self,
        config: HybridLMConfig,
        router: FallbackRouter,
        credential: RemoteCredential,
        telemetry: Telemetry,
    ) -> None:
        self.config = config
        self.router = router
        self.credential = credential
        self.telemetry = telemetry
        self.mode = ExecutionMode.parse(config.engine.mode)

    @classmethod
    async def init(
        cls,
        config: HybridLMConfig | None = None,
        engine: InferenceEngine | None = None,
        tools: ToolRegistry | None = None,
        on_progress: Callable[[int], None] | None = None,
    ) -> HybridLM:
        config = config or HybridLMConfig()
        ExecutionMode.parse(config.engine.mode)  # reject bad config before loading anything
        telemetry = Telemetry(config.telemetry)
        credential = RemoteCredential(config.remote.token or None)

        session: EngineSession | None = None
        local_error: EngineError | None = None
        if config.model.path:
            if engine is None:
                from hybridlm.inference.llama import LlamaCppEngine

                engine = LlamaCppEngine()
            m = config.model
            session_config = SessionConfig(
                model=m.path,
                n_ctx=m.n_ctx,
                n_batch=m.n_batch,
                n_threads=m.n_threads,
                n_gpu_layers=m.n_gpu_layers,
                embedding=m.embedding,
                mmproj=m.mmproj,
                lora=m.lora,
                lora_scale=m.lora_scale,
            )
            try:
                session = await init_session(engine, session_config, on_progress, telemetry)
            except EngineError as e:
                logger.warning("Local model unavailable: %s", e)
                local_error = e

        remote = None
        if config.remote.project_id:
            remote = RemoteProvider(config.remote, credential)

        if session is None and remote is None:
            raise local_error or EngineError(
                "Nothing to run on: set [model] path or [remote] project_id"
            )

        router = FallbackRouter(
            session=session,
            remote=remote,
            tools=tools,
            tool_limit=config.agent.tool_recursion_limit,
        )
        return cls(config, router, credential, telemetry)

    @property
    def session(self) -> EngineSession | None:
        return self.router.session

    def default_params(self) -> CompletionParams:
        c = self.config.completion
        return CompletionParams(
            n_predict=c.n_predict,
            temperature=c.temperature,
            top_p=c.top_p,
            penalty_repeat=c.penalty_repeat,
            stop=list(c.stop),
        )

    async def completion(
        self,
        messages: list[dict[str, Any]],
        params: CompletionParams | None = None,
        on_token: TokenCallback | None = None,
        mode: ExecutionMode | str | None = None,
    ) -> CompletionResult:
        return await self.router.complete(
            mode if mode is not None else self.mode,
            messages,
            params or self.default_params(),
            on_token,
        )

    async def embedding(
        self,
        text: str,
        params: dict[str, Any] | None = None,
        mode: ExecutionMode | str | None = None,
    ) -> EmbeddingResult:
        return await self.router.embed(mode if mode is not None else self.mode, text, params)

    async def stop(self) -> None:
        if self.session is not None:
            await self.session.stop()

    async def rewind(self) -> None:
        if self.session is not None:
            await self.session.rewind()

    async def release(self) -> None:
        """Release the local session and close HTTP clients. Safe to call twice."""
        if self.session is not None:
            await self.session.release()
        if self.router.remote is not None:
            await self.router.remote.close()
            self.router.remote = None
        await self.telemetry.close()

    async def __aenter__(self) -> HybridLM:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.release()
