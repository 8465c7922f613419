"""Bounded tool-call loop: complete, run the requested tool, feed its output back."""

from __future__ import annotations

import json
import logging
from dataclasses import replace
from typing import TYPE_CHECKING, Any

from hybridlm.errors import ToolExecutionError
from hybridlm.inference import driver
from hybridlm.inference.engine import CompletionParams, CompletionResult, TokenCallback, ToolCall
from hybridlm.tools.registry import ToolRegistry

if TYPE_CHECKING:
    from hybridlm.inference.session import EngineSession

logger = logging.getLogger(__name__)

DEFAULT_TOOL_LIMIT = 3


def parse_tool_call(result: CompletionResult) -> ToolCall | None:
    """Return the first tool call of a result, or None.

    Only the first call is ever executed. A call missing its id or name
    counts as no call at all.
    """
    if not result.tool_calls:
        return None
    if len(result.tool_calls) > 1:
        logger.warning(
            "Model returned %d tool calls; only the first (%s) is executed",
            len(result.tool_calls), result.tool_calls[0].name,
        )
    call = result.tool_calls[0]
    if not call.id or not call.name:
        logger.debug("Ignoring incomplete tool call: %r", call)
        return None

    arguments = call.arguments
    if isinstance(arguments, str):
        try:
            arguments = json.loads(arguments) if arguments.strip() else {}
        except json.JSONDecodeError as e:
            raise ToolExecutionError(
                f"Unparseable arguments for tool {call.name}: {e}", tool_name=call.name
            ) from e
        call = replace(call, arguments=arguments)
    return call


def assistant_message(result: CompletionResult, call: ToolCall) -> dict[str, Any]:
    """The assistant turn that requested the tool.

    The first entry is the call as executed, with decoded arguments; any
    further requested calls are carried unchanged.
    """
    return {
        "role": "assistant",
        "content": result.text,
        "tool_calls": [call.to_message()] + [tc.to_message() for tc in result.tool_calls[1:]],
    }


def tool_message(call: ToolCall, output: Any) -> dict[str, Any]:
    return {
        "role": "tool",
        "content": json.dumps(output),
        "tool_call_id": call.id,
    }


async def complete_with_tools(
    session: EngineSession,
    params: CompletionParams,
    tools: ToolRegistry | None,
    on_token: TokenCallback | None = None,
    limit: int = DEFAULT_TOOL_LIMIT,
) -> CompletionResult:
    """Complete, letting the model call tools from ``tools`` up to ``limit`` times.

    Issues at most ``limit + 1`` completions. The caller's message list is
    never modified; each step extends its own copy. Tool failures raise
    ToolExecutionError and end the loop.
    """
    if params.messages is None or not tools:
        return await driver.complete(session, params, on_token)

    schemas = tools.get_tool_schemas()
    messages = list(params.messages)
    depth = 0

    while True:
        step = replace(params, messages=messages, jinja=True, tools=schemas)
        result = await driver.complete(session, step, on_token)

        if depth >= limit:
            # The model saw the schemas but no further tool runs are allowed
            logger.info("Tool call limit reached (%d/%d); returning last completion", depth, limit)
            return result

        call = parse_tool_call(result)
        if call is None:
            return result

        output = await tools.execute(call.name, call.arguments)
        logger.debug("Tool %s returned %s", call.name, output)

        messages = [*messages, assistant_message(result, call), tool_message(call, output)]
        depth += 1
