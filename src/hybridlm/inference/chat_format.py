"""Turn role-tagged chat messages into an engine-ready prompt."""

from __future__ import annotations

import json
import logging
from dataclasses import replace
from typing import TYPE_CHECKING, Any

from hybridlm.errors import FormatError
from hybridlm.inference.engine import CompletionRequest, FormatOptions, FormattedChat

if TYPE_CHECKING:
    from hybridlm.inference.session import EngineSession

logger = logging.getLogger(__name__)

ROLES = ("system", "user", "assistant", "tool")

# Template used when the model ships no chat template of its own
FALLBACK_TEMPLATE = "chatml"


def normalize_messages(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Return copies of ``messages`` with content flattened to plain text.

    List-of-parts content keeps only its text parts, joined by newlines;
    image parts are handled by the multimodal path, not the template.
    """
    normalized = []
    for i, msg in enumerate(messages):
        if not isinstance(msg, dict):
            raise FormatError(f"Message {i} is not a mapping: {msg!r}")
        role = msg.get("role")
        if role not in ROLES:
            raise FormatError(f"Message {i} has invalid role: {role!r}")

        content = msg.get("content")
        if isinstance(content, list):
            texts = []
            for part in content:
                if isinstance(part, dict) and part.get("type") == "text":
                    texts.append(str(part.get("text", "")))
                elif isinstance(part, str):
                    texts.append(part)
            content = "\n".join(texts)
        elif content is None:
            content = ""
        elif not isinstance(content, str):
            raise FormatError(f"Message {i} has unsupported content type: {type(content).__name__}")

        out = {**msg, "content": content}
        normalized.append(out)
    return normalized


def get_json_schema(response_format: dict[str, Any] | None) -> dict[str, Any] | None:
    """Extract the JSON schema a response format asks for, if any."""
    if not response_format:
        return None
    kind = response_format.get("type")
    if kind == "json_schema":
        return (response_format.get("json_schema") or {}).get("schema")
    if kind == "json_object":
        return response_format.get("schema") or {}
    return None


async def format_chat(
    session: EngineSession,
    messages: list[dict[str, Any]],
    template: str | None = None,
    *,
    jinja: bool = False,
    tools: list[dict[str, Any]] | None = None,
    tool_choice: str | None = None,
    parallel_tool_calls: Any = None,
    response_format: dict[str, Any] | None = None,
) -> str | FormattedChat:
    """Format ``messages`` with the session model's template.

    The model's own template is used when it ships one (or jinja is on);
    otherwise chatml. An explicit ``template`` always wins. Jinja mode is
    honoured only when the model's template supports it.
    """
    if not messages:
        raise FormatError("Cannot format an empty message list")

    chat = normalize_messages(messages)
    use_jinja = session.is_jinja_supported() and jinja
    tmpl = None if (session.is_llama_chat_supported() or use_jinja) else FALLBACK_TEMPLATE
    if template:
        tmpl = template

    schema = get_json_schema(response_format)
    options = FormatOptions(
        jinja=use_jinja,
        json_schema=json.dumps(schema) if schema is not None else None,
        tools=json.dumps(tools) if tools else None,
        parallel_tool_calls=(
            json.dumps(parallel_tool_calls) if parallel_tool_calls is not None else None
        ),
        tool_choice=tool_choice,
    )
    logger.debug("Formatting %d messages (template=%s, jinja=%s)", len(chat), tmpl, use_jinja)
    return await session.format_chat(chat, tmpl, options)


def merge_stops(stop: list[str], additional: list[str]) -> list[str]:
    """Union of two stop lists, caller entries first, without duplicates."""
    merged = list(stop)
    for s in additional:
        if s not in merged:
            merged.append(s)
    return merged


def apply_formatted(
    request: CompletionRequest, formatted: str | FormattedChat
) -> CompletionRequest:
    """Return a copy of ``request`` carrying the formatter's output."""
    if isinstance(formatted, str):
        return replace(request, prompt=formatted or "")

    updates: dict[str, Any] = {"prompt": formatted.prompt or ""}
    if formatted.chat_format is not None:
        updates["chat_format"] = formatted.chat_format
    if formatted.grammar:
        updates["grammar"] = formatted.grammar
    if formatted.grammar_lazy is not None:
        updates["grammar_lazy"] = formatted.grammar_lazy
    if formatted.grammar_triggers:
        updates["grammar_triggers"] = formatted.grammar_triggers
    if formatted.preserved_tokens:
        updates["preserved_tokens"] = formatted.preserved_tokens
    if formatted.additional_stops:
        updates["stop"] = merge_stops(request.stop, formatted.additional_stops)
    return replace(request, **updates)
