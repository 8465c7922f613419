"""Headless (non-interactive) mode: single-shot CLI completion.

Usage: hybridlm --mode local-first "summarize this" | tee out.txt

Generated text goes to stdout (pipeable), everything else to stderr.
"""

from __future__ import annotations

import json
import sys

from hybridlm.agent.router import ExecutionMode
from hybridlm.errors import HybridLMError
from hybridlm.inference.engine import CompletionParams, TokenEvent
from hybridlm.lm import HybridLM


async def run_headless(
    lm: HybridLM,
    prompt: str,
    system: str | None = None,
    params: CompletionParams | None = None,
    mode: ExecutionMode | str | None = None,
) -> int:
    """Run a single prompt, streaming tokens to stdout.

    Returns:
        Exit code (0 = success, 1 = error).
    """
    messages = []
    if system:
        messages.append({"role": "system", "content": system})
    messages.append({"role": "user", "content": prompt})

    streamed = False

    def _on_token(event: TokenEvent) -> None:
        nonlocal streamed
        streamed = True
        sys.stdout.write(event.token)
        sys.stdout.flush()

    try:
        result = await lm.completion(messages, params, on_token=_on_token, mode=mode)
    except HybridLMError as e:
        _err(f"[error] {type(e).__name__}: {e}")
        return 1

    if not streamed:
        sys.stdout.write(result.text)
    print(flush=True)

    t = result.timings
    _err(
        f"[stats] {result.tokens_predicted} tokens, {t.predicted_per_second:.1f} tok/s, "
        f"stop={result.stop_reason}"
    )
    return 0


async def run_embedding(lm: HybridLM, text: str, mode: ExecutionMode | str | None = None) -> int:
    """Print the embedding of ``text`` as a JSON array."""
    try:
        result = await lm.embedding(text, mode=mode)
    except HybridLMError as e:
        _err(f"[error] {type(e).__name__}: {e}")
        return 1
    print(json.dumps(result.embedding), flush=True)
    _err(f"[stats] {len(result.embedding)} dimensions")
    return 0


def _err(msg: str) -> None:
    """Print a message to stderr."""
    print(msg, file=sys.stderr, flush=True)
