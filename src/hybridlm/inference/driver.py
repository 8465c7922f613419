"""Streaming completion driver.

One call issues one completion against a session. Streamed tokens reach the
caller through a subscription on the engine's token bus, keyed by the
session id, so concurrent sessions never see each other's tokens.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import replace
from typing import TYPE_CHECKING, Awaitable, Callable

from hybridlm.errors import EmptyPromptError, FormatError
from hybridlm.inference.chat_format import (
    apply_formatted,
    format_chat,
    get_json_schema,
    normalize_messages,
)
from hybridlm.inference.engine import (
    CompletionParams,
    CompletionRequest,
    CompletionResult,
    TokenCallback,
    TokenEvent,
)

if TYPE_CHECKING:
    from hybridlm.inference.session import EngineSession

logger = logging.getLogger(__name__)


def request_from_params(params: CompletionParams, emit_partial: bool = False) -> CompletionRequest:
    return CompletionRequest(
        prompt=params.prompt or "",
        n_predict=params.n_predict,
        temperature=params.temperature,
        top_k=params.top_k,
        top_p=params.top_p,
        min_p=params.min_p,
        penalty_repeat=params.penalty_repeat,
        seed=params.seed,
        n_probs=params.n_probs,
        stop=list(params.stop),
        grammar=params.grammar,
        emit_partial_completion=emit_partial,
    )


async def build_request(
    session: EngineSession, params: CompletionParams, emit_partial: bool = False
) -> CompletionRequest:
    """Resolve ``params`` into a fresh engine request. Messages win over ``prompt``."""
    request = request_from_params(params, emit_partial)

    if params.messages is not None:
        formatted = await format_chat(
            session,
            params.messages,
            params.chat_template,
            jinja=params.jinja,
            tools=params.tools,
            tool_choice=params.tool_choice,
            parallel_tool_calls=params.parallel_tool_calls,
            response_format=None if params.grammar else params.response_format,
        )
        request = apply_formatted(request, formatted)

    if params.response_format and not request.grammar:
        schema = get_json_schema(params.response_format)
        if schema is not None:
            request = replace(request, json_schema=json.dumps(schema))

    return request


async def complete(
    session: EngineSession,
    params: CompletionParams,
    on_token: TokenCallback | None = None,
) -> CompletionResult:
    """Run one completion, forwarding streamed tokens to ``on_token``.

    Engine failures propagate unchanged; nothing is retried here.
    """
    request = await build_request(session, params, emit_partial=on_token is not None)
    return await _run(session, on_token, lambda: _checked_complete(session, request))


async def complete_multimodal(
    session: EngineSession,
    params: CompletionParams,
    on_token: TokenCallback | None = None,
) -> CompletionResult:
    """Run one completion over ``params.messages`` with ``params.images`` attached."""
    if not params.messages:
        raise FormatError("Multimodal completion requires messages")
    messages = normalize_messages(params.messages)
    request = request_from_params(params, emit_partial=on_token is not None)
    return await _run(
        session,
        on_token,
        lambda: session.multimodal_complete(messages, params.images, request),
    )


async def _checked_complete(session: EngineSession, request: CompletionRequest) -> CompletionResult:
    if not request.prompt:
        raise EmptyPromptError("Prompt is required")
    return await session.complete(request)


async def _run(
    session: EngineSession,
    on_token: TokenCallback | None,
    call: Callable[[], Awaitable[CompletionResult]],
) -> CompletionResult:
    start = time.monotonic()
    first_token_at: float | None = None

    def _forward(event: TokenEvent) -> None:
        nonlocal first_token_at
        if first_token_at is None:
            first_token_at = time.monotonic()
        on_token(event)

    # Subscribe before the request goes out so early tokens are not lost
    subscription = session.events.subscribe(session.id, _forward) if on_token else None
    try:
        result = await call()
    finally:
        if subscription is not None:
            subscription.remove()

    ttft_ms = (first_token_at - start) * 1000 if first_token_at is not None else None
    logger.debug(
        "Session %d completion: %d tokens, %.1f tok/s, ttft=%s ms",
        session.id,
        result.tokens_predicted,
        result.timings.predicted_per_second,
        f"{ttft_ms:.0f}" if ttft_ms is not None else "n/a",
    )
    if session.telemetry is not None:
        session.telemetry.track(
            {
                "event": "completion",
                "tok_per_sec": result.timings.predicted_per_second,
                "toks_generated": result.timings.predicted_n,
                "ttft": ttft_ms,
            },
            session.config,
        )
    return result
