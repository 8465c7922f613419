"""Per-call choice between local and remote inference, with optional failover."""

from __future__ import annotations

import logging
from dataclasses import replace
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, TypeVar

from hybridlm.agent.loop import DEFAULT_TOOL_LIMIT, complete_with_tools
from hybridlm.errors import EngineError, InvalidModeError, NetworkError, ToolExecutionError
from hybridlm.inference import driver
from hybridlm.inference.engine import (
    CompletionParams,
    CompletionResult,
    EmbeddingResult,
    TokenCallback,
    TokenEvent,
)
from hybridlm.inference.events import deliver
from hybridlm.tools.registry import ToolRegistry

if TYPE_CHECKING:
    from hybridlm.inference.remote import RemoteProvider
    from hybridlm.inference.session import EngineSession

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Provider(Enum):
    LOCAL = "local"
    REMOTE = "remote"


class ExecutionMode(Enum):
    """Where a call runs, and what it falls back to."""

    LOCAL = "local"
    REMOTE = "remote"
    LOCAL_FIRST = "local-first"
    REMOTE_FIRST = "remote-first"

    @classmethod
    def parse(cls, value: ExecutionMode | str) -> ExecutionMode:
        """Convert an external mode string. Raises InvalidModeError naming the value."""
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            raise InvalidModeError(value) from None

    @property
    def primary(self) -> Provider:
        if self in (ExecutionMode.LOCAL, ExecutionMode.LOCAL_FIRST):
            return Provider.LOCAL
        return Provider.REMOTE

    @property
    def secondary(self) -> Provider | None:
        if self is ExecutionMode.LOCAL_FIRST:
            return Provider.REMOTE
        if self is ExecutionMode.REMOTE_FIRST:
            return Provider.LOCAL
        return None


class FallbackRouter:
    """Run completions and embeddings on the provider an ExecutionMode selects.

    ``local`` and ``remote`` use exactly one provider. The first-preference
    modes try the other provider once when the preferred one fails; if that
    fails too, the preferred provider's error is raised. Tool failures are
    never retried elsewhere.
    """

    def __init__(
        self,
        session: EngineSession | None = None,
        remote: RemoteProvider | None = None,
        tools: ToolRegistry | None = None,
        tool_limit: int = DEFAULT_TOOL_LIMIT,
    ) -> None:
        self.session = session
        self.remote = remote
        self.tools = tools
        self.tool_limit = tool_limit

    async def complete(
        self,
        mode: ExecutionMode | str,
        messages: list[dict[str, Any]],
        params: CompletionParams | None = None,
        on_token: TokenCallback | None = None,
    ) -> CompletionResult:
        mode = ExecutionMode.parse(mode)
        params = replace(params or CompletionParams(), messages=list(messages))
        return await self._route(
            mode,
            "completion",
            lambda sink: self._local_completion(params, sink),
            lambda sink: self._remote_completion(params, sink),
            on_token,
        )

    async def embed(
        self,
        mode: ExecutionMode | str,
        text: str,
        params: dict[str, Any] | None = None,
    ) -> EmbeddingResult:
        mode = ExecutionMode.parse(mode)
        return await self._route(
            mode,
            "embedding",
            lambda _: self._require_session().embedding(text, params),
            lambda _: self._require_remote().embedding(text),
        )

    async def _route(
        self,
        mode: ExecutionMode,
        operation: str,
        local: Callable[[TokenCallback | None], Awaitable[T]],
        remote: Callable[[TokenCallback | None], Awaitable[T]],
        on_token: TokenCallback | None = None,
    ) -> T:
        legs = {Provider.LOCAL: local, Provider.REMOTE: remote}
        primary, secondary = mode.primary, mode.secondary

        # Primary tokens are held until it succeeds; a failed attempt leaves nothing on the sink
        held: list[TokenEvent] = []
        primary_sink = on_token
        if on_token is not None and secondary is not None:
            primary_sink = held.append

        try:
            result = await legs[primary](primary_sink)
        except ToolExecutionError:
            raise
        except Exception as e:
            if secondary is None:
                raise
            primary_error = e
        else:
            for event in held:
                deliver(on_token, event)
            return result

        if held:
            logger.debug(
                "Discarding %d tokens from the failed %s attempt", len(held), primary.value
            )

        logger.warning(
            "%s %s failed (%s); falling back to %s",
            primary.value, operation, primary_error, secondary.value,
        )
        try:
            return await legs[secondary](on_token)
        except Exception as e:
            logger.warning("Fallback %s %s failed too: %s", secondary.value, operation, e)
        # Callers reason about the provider they asked for
        raise primary_error

    def _require_session(self) -> EngineSession:
        if self.session is None:
            raise EngineError("No local session available")
        return self.session

    def _require_remote(self) -> RemoteProvider:
        if self.remote is None:
            raise NetworkError("Remote provider is not configured")
        return self.remote

    async def _local_completion(
        self, params: CompletionParams, on_token: TokenCallback | None
    ) -> CompletionResult:
        session = self._require_session()
        if params.images:
            return await driver.complete_multimodal(session, params, on_token)
        return await complete_with_tools(session, params, self.tools, on_token, self.tool_limit)

    async def _remote_completion(
        self, params: CompletionParams, on_token: TokenCallback | None
    ) -> CompletionResult:
        remote = self._require_remote()
        image = params.images[0] if params.images else None
        return await remote.chat_completion(params.messages or [], image=image, on_token=on_token)
