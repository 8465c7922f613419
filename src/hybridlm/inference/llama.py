"""Local inference engine using llama-cpp-python."""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import math
import os
import pickle
import re
import threading
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterable

from hybridlm.inference.engine import (
    CompletionRequest,
    CompletionResult,
    EmbeddingResult,
    FormatOptions,
    FormattedChat,
    ModelInfo,
    SessionConfig,
    SessionInfo,
    SessionLoadResult,
    Timings,
    TokenEvent,
    ToolCall,
)
from hybridlm.inference.events import TokenBus
from hybridlm.inference.remote import detect_mime_type

logger = logging.getLogger(__name__)

# Regex to match <tool_call>{"name": ..., "arguments": ...}</tool_call> blocks
_TOOL_CALL_RE = re.compile(r"<tool_call>\s*(\{.*?\})\s*</tool_call>", re.DOTALL)
# Regex to match <think>...</think> blocks (including empty ones)
_THINK_RE = re.compile(r"<think>.*?</think>", re.DOTALL)
# Regex to match unclosed <think> blocks (truncated responses)
_THINK_UNCLOSED_RE = re.compile(r"<think>(?:(?!</think>).)*$", re.DOTALL)

CHATML = "chatml"

Emit = Callable[[str, list[dict[str, Any]] | None], None]


def parse_generated_text(text: str) -> tuple[str, list[ToolCall]]:
    """Split generated text into visible content and tool calls.

    Qwen-style models emit tool calls as ``<tool_call>`` JSON blocks inside
    the text; those are extracted and removed together with ``<think>``
    blocks.
    """
    tool_calls: list[ToolCall] = []
    for match in _TOOL_CALL_RE.finditer(text):
        try:
            parsed = json.loads(match.group(1))
            arguments = parsed.get("arguments", {})
            if isinstance(arguments, str):
                arguments = json.loads(arguments)
            tool_calls.append(
                ToolCall(
                    id=f"call_{uuid.uuid4().hex[:8]}",
                    name=parsed.get("name", ""),
                    arguments=arguments,
                )
            )
        except (json.JSONDecodeError, AttributeError):
            logger.warning("Failed to parse tool_call from content: %s", match.group(0))

    content = _THINK_RE.sub("", text)
    content = _THINK_UNCLOSED_RE.sub("", content)
    content = _TOOL_CALL_RE.sub("", content)
    return content.strip(), tool_calls


def _stops(stop: str | list[str] | None) -> list[str]:
    if not stop:
        return []
    return [stop] if isinstance(stop, str) else list(stop)


def _top_probabilities(choice: dict[str, Any]) -> list[dict[str, Any]] | None:
    logprobs = choice.get("logprobs") or {}
    top = logprobs.get("top_logprobs") or []
    if not top or not top[0]:
        return None
    return [
        {
            "content": choice.get("text", ""),
            "probs": [
                {"tok_str": tok, "prob": math.exp(lp)}
                for tok, lp in sorted(top[0].items(), key=lambda kv: kv[1], reverse=True)
            ],
        }
    ]


@dataclass
class _LlamaSession:
    llm: Any
    config: SessionConfig
    chat_template: str | None = None
    bos_token: str = ""
    eos_token: str = ""
    stop_requested: threading.Event = field(default_factory=threading.Event)


class LlamaCppEngine:
    """Inference engine backed by llama.cpp (llama-cpp-python).

    Each session owns one ``Llama`` instance. Blocking calls run in worker
    threads; streamed tokens are handed back to the event loop and published
    on ``events`` tagged with their session id.
    """

    def __init__(self) -> None:
        self.events = TokenBus()
        self._sessions: dict[int, _LlamaSession] = {}

    def _get(self, session_id: int) -> _LlamaSession:
        try:
            return self._sessions[session_id]
        except KeyError:
            raise KeyError(f"Unknown session {session_id}") from None

    # ── lifecycle ─────────────────────────────────────────────────────

    async def init_session(
        self,
        session_id: int,
        config: SessionConfig,
        on_progress: Callable[[int], None] | None = None,
    ) -> SessionInfo:
        from llama_cpp import Llama

        llama_kwargs: dict[str, Any] = {
            "model_path": config.model,
            "n_ctx": config.n_ctx,
            "n_batch": config.n_batch,
            "n_threads": config.n_threads or os.cpu_count() or 4,
            "n_gpu_layers": config.n_gpu_layers,
            "embedding": config.embedding,
            "verbose": False,
        }
        if config.lora:
            llama_kwargs["lora_path"] = config.lora
            llama_kwargs["lora_scale"] = config.lora_scale
        if config.mmproj:
            from llama_cpp.llama_chat_format import Llava15ChatHandler

            # The projector stays on CPU; GPU clip has been unreliable
            llama_kwargs["chat_handler"] = Llava15ChatHandler(
                clip_model_path=config.mmproj, verbose=False
            )

        if on_progress:
            on_progress(0)
        llm = await asyncio.to_thread(Llama, **llama_kwargs)
        if on_progress:
            on_progress(100)

        metadata = dict(getattr(llm, "metadata", None) or {})
        template = metadata.get("tokenizer.chat_template") or None
        session = _LlamaSession(
            llm=llm,
            config=config,
            chat_template=template,
            bos_token=self._token_text(llm, "token_bos"),
            eos_token=self._token_text(llm, "token_eos"),
        )
        self._sessions[session_id] = session

        gpu, reason_no_gpu = self._gpu_status(config.n_gpu_layers)
        model_path = Path(config.model)
        info = SessionInfo(
            gpu=gpu,
            reason_no_gpu=reason_no_gpu,
            model=ModelInfo(
                desc=metadata.get("general.name", model_path.name),
                size=model_path.stat().st_size if model_path.is_file() else 0,
                n_params=int(metadata.get("general.parameter_count", 0) or 0),
                metadata=metadata,
                llama_chat=template is not None,
                jinja_default=template is not None,
                jinja_tool_use=bool(template and "tools" in template),
            ),
        )
        logger.info(
            "Loaded model: %s (ctx=%d, gpu_layers=%d, session=%d)",
            config.model, config.n_ctx, config.n_gpu_layers, session_id,
        )
        return info

    async def release(self, session_id: int) -> None:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return
        session.stop_requested.set()
        close = getattr(session.llm, "close", None)
        if close is not None:
            await asyncio.to_thread(close)

    async def stop(self, session_id: int) -> None:
        # Checked between tokens by the running completion
        self._get(session_id).stop_requested.set()

    async def rewind(self, session_id: int) -> None:
        await asyncio.to_thread(self._get(session_id).llm.reset)

    # ── completion ────────────────────────────────────────────────────

    async def complete(self, session_id: int, request: CompletionRequest) -> CompletionResult:
        session = self._get(session_id)
        session.stop_requested.clear()
        emit = self._emitter(session_id) if request.emit_partial_completion else None
        return await asyncio.to_thread(self._run_completion, session, request, emit)

    async def multimodal_complete(
        self,
        session_id: int,
        messages: list[dict[str, Any]],
        media_paths: list[str],
        request: CompletionRequest,
    ) -> CompletionResult:
        session = self._get(session_id)
        if not session.config.mmproj:
            raise RuntimeError(f"Session {session_id} was opened without a multimodal projector")
        session.stop_requested.clear()
        parts = await asyncio.to_thread(self._image_parts, media_paths)
        messages = self._attach_images(messages, parts)
        emit = self._emitter(session_id) if request.emit_partial_completion else None
        return await asyncio.to_thread(self._run_chat_completion, session, messages, request, emit)

    def _emitter(self, session_id: int) -> Emit:
        loop = asyncio.get_running_loop()

        def emit(token: str, probabilities: list[dict[str, Any]] | None) -> None:
            event = TokenEvent(session_id=session_id, token=token, probabilities=probabilities)
            loop.call_soon_threadsafe(self.events.publish, event)

        return emit

    def _sampling_kwargs(self, request: CompletionRequest) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "max_tokens": request.n_predict,
            "temperature": request.temperature,
            "top_k": request.top_k,
            "top_p": request.top_p,
            "min_p": request.min_p,
            "repeat_penalty": request.penalty_repeat,
            "stop": request.stop or None,
            "stream": True,
        }
        if request.seed >= 0:
            kwargs["seed"] = request.seed
        grammar = self._grammar(request)
        if grammar is not None:
            kwargs["grammar"] = grammar
        return kwargs

    @staticmethod
    def _grammar(request: CompletionRequest) -> Any:
        if not request.grammar and not request.json_schema:
            return None
        from llama_cpp import LlamaGrammar

        if request.grammar:
            if request.grammar_lazy:
                logger.debug("Lazy grammars are not supported; applying grammar eagerly")
            return LlamaGrammar.from_string(request.grammar, verbose=False)
        return LlamaGrammar.from_json_schema(request.json_schema, verbose=False)

    def _run_completion(
        self, session: _LlamaSession, request: CompletionRequest, emit: Emit | None
    ) -> CompletionResult:
        llm = session.llm
        kwargs = self._sampling_kwargs(request)
        if request.n_probs > 0:
            kwargs["logprobs"] = request.n_probs
        prompt_n = len(llm.tokenize(request.prompt.encode("utf-8"), special=True))

        start = time.perf_counter()
        chunks = llm.create_completion(prompt=request.prompt, **kwargs)
        return self._consume(
            session,
            chunks,
            lambda choice: choice.get("text") or "",
            emit,
            start,
            prompt_n,
            with_probabilities=request.n_probs > 0,
        )

    def _run_chat_completion(
        self,
        session: _LlamaSession,
        messages: list[dict[str, Any]],
        request: CompletionRequest,
        emit: Emit | None,
    ) -> CompletionResult:
        start = time.perf_counter()
        chunks = session.llm.create_chat_completion(
            messages=messages, **self._sampling_kwargs(request)
        )
        return self._consume(
            session,
            chunks,
            lambda choice: (choice.get("delta") or {}).get("content") or "",
            emit,
            start,
            prompt_n=0,
        )

    @staticmethod
    def _consume(
        session: _LlamaSession,
        chunks: Iterable[dict[str, Any]],
        token_of: Callable[[dict[str, Any]], str],
        emit: Emit | None,
        start: float,
        prompt_n: int,
        with_probabilities: bool = False,
    ) -> CompletionResult:
        pieces: list[str] = []
        finish_reason = "stop"
        first_token_at: float | None = None
        predicted_n = 0

        for chunk in chunks:
            if session.stop_requested.is_set():
                finish_reason = "abort"
                break
            choice = chunk["choices"][0]
            token = token_of(choice)
            if token:
                if first_token_at is None:
                    first_token_at = time.perf_counter()
                predicted_n += 1
                pieces.append(token)
                if emit is not None:
                    emit(token, _top_probabilities(choice) if with_probabilities else None)
            if choice.get("finish_reason"):
                finish_reason = choice["finish_reason"]

        end = time.perf_counter()
        first = first_token_at if first_token_at is not None else end
        prompt_ms = (first - start) * 1000
        predicted_ms = (end - first) * 1000

        text, tool_calls = parse_generated_text("".join(pieces))
        return CompletionResult(
            text=text,
            tool_calls=tool_calls,
            tokens_predicted=predicted_n,
            tokens_evaluated=prompt_n,
            stop_reason=finish_reason,
            timings=Timings(
                prompt_n=prompt_n,
                prompt_ms=prompt_ms,
                prompt_per_second=(
                    prompt_n / (prompt_ms / 1000) if prompt_n and prompt_ms > 0 else 0.0
                ),
                predicted_n=predicted_n,
                predicted_ms=predicted_ms,
                predicted_per_second=(
                    predicted_n / (predicted_ms / 1000) if predicted_n and predicted_ms > 0 else 0.0
                ),
            ),
        )

    @staticmethod
    def _image_parts(media_paths: list[str]) -> list[dict[str, Any]]:
        parts = []
        for path in media_paths:
            data = base64.b64encode(Path(path).read_bytes()).decode("ascii")
            parts.append({
                "type": "image_url",
                "image_url": {"url": f"data:{detect_mime_type(path)};base64,{data}"},
            })
        return parts

    @staticmethod
    def _attach_images(
        messages: list[dict[str, Any]], parts: list[dict[str, Any]]
    ) -> list[dict[str, Any]]:
        """Put image parts in front of the text of the last user message."""
        messages = list(messages)
        for i in range(len(messages) - 1, -1, -1):
            if messages[i]["role"] == "user":
                text = {"type": "text", "text": messages[i]["content"]}
                messages[i] = {**messages[i], "content": [*parts, text]}
                break
        return messages

    # ── text utilities ────────────────────────────────────────────────

    async def tokenize(self, session_id: int, text: str) -> list[int]:
        llm = self._get(session_id).llm
        return list(llm.tokenize(text.encode("utf-8"), add_bos=False, special=True))

    async def detokenize(self, session_id: int, tokens: list[int]) -> str:
        llm = self._get(session_id).llm
        return llm.detokenize(tokens).decode("utf-8", errors="replace")

    async def embedding(
        self, session_id: int, text: str, params: dict[str, Any] | None = None
    ) -> EmbeddingResult:
        session = self._get(session_id)
        if not session.config.embedding:
            raise RuntimeError(f"Session {session_id} was not opened with embedding enabled")
        response = await asyncio.to_thread(session.llm.create_embedding, text)
        vector = response["data"][0]["embedding"]
        if vector and isinstance(vector[0], list):
            # Per-token vectors (no pooling): mean-pool them
            vector = [sum(col) / len(vector) for col in zip(*vector)]
        vector = [float(v) for v in vector]
        if (params or {}).get("normalize"):
            norm = math.sqrt(sum(v * v for v in vector)) or 1.0
            vector = [v / norm for v in vector]
        return EmbeddingResult(embedding=vector)

    async def format_chat(
        self,
        session_id: int,
        messages: list[dict[str, Any]],
        template: str | None,
        options: FormatOptions,
    ) -> str | FormattedChat:
        from llama_cpp import llama_chat_format

        session = self._get(session_id)
        source = template or session.chat_template
        if not source or source == CHATML:
            response = llama_chat_format.format_chatml(messages=messages)
        else:
            formatter = llama_chat_format.Jinja2ChatFormatter(
                template=source,
                eos_token=session.eos_token,
                bos_token=session.bos_token,
            )
            tools = json.loads(options.tools) if options.tools else None
            response = formatter(
                messages=messages, tools=tools, tool_choice=options.tool_choice,
            )

        grammar = None
        if options.json_schema:
            from llama_cpp.llama_grammar import json_schema_to_gbnf

            grammar = json_schema_to_gbnf(options.json_schema)

        stops = _stops(response.stop)
        if not options.jinja and not stops and grammar is None:
            return response.prompt
        return FormattedChat(prompt=response.prompt, grammar=grammar, additional_stops=stops)

    # ── state files ───────────────────────────────────────────────────

    async def save_session(self, session_id: int, path: str, token_size: int = -1) -> int:
        session = self._get(session_id)
        if token_size > 0:
            logger.debug("token_size=%d ignored; the full state is saved", token_size)
        state = await asyncio.to_thread(session.llm.save_state)
        await asyncio.to_thread(self._write_state, path, state)
        return int(state.n_tokens)

    async def load_session(self, session_id: int, path: str) -> SessionLoadResult:
        # State files are pickles: only load files this process wrote
        session = self._get(session_id)
        state = await asyncio.to_thread(self._read_state, path)
        await asyncio.to_thread(session.llm.load_state, state)
        n_tokens = int(state.n_tokens)
        tokens = [int(t) for t in list(state.input_ids)[:n_tokens]]
        prompt = session.llm.detokenize(tokens).decode("utf-8", errors="replace")
        return SessionLoadResult(tokens_loaded=n_tokens, prompt=prompt)

    @staticmethod
    def _write_state(path: str, state: Any) -> None:
        with open(path, "wb") as f:
            pickle.dump(state, f)

    @staticmethod
    def _read_state(path: str) -> Any:
        with open(path, "rb") as f:
            return pickle.load(f)

    # ── helpers ───────────────────────────────────────────────────────

    @staticmethod
    def _token_text(llm: Any, accessor: str) -> str:
        try:
            token_id = getattr(llm, accessor)()
            return llm.detokenize([token_id], special=True).decode("utf-8", errors="ignore")
        except Exception as exc:
            logger.debug("Could not read %s text: %s", accessor, exc)
            return ""

    @staticmethod
    def _gpu_status(n_gpu_layers: int) -> tuple[bool, str]:
        if n_gpu_layers == 0:
            return False, "GPU offload disabled (n_gpu_layers=0)"
        try:
            from llama_cpp import llama_supports_gpu_offload
        except ImportError:
            return False, "llama-cpp-python cannot report GPU support"
        if not llama_supports_gpu_offload():
            logger.warning(
                "GPU layers requested but llama-cpp-python has no GPU support; running on CPU"
            )
            return False, "llama-cpp-python was built without GPU support"
        return True, ""
