"""Remote inference backend for Vertex-AI style generateContent / predict endpoints.

Responses are mapped onto the same CompletionResult / EmbeddingResult the
local engine produces. One attempt per call; failover is the router's job.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import mimetypes
import os
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

import httpx

from hybridlm.config import RemoteConfig
from hybridlm.errors import AuthError, FormatError, NetworkError
from hybridlm.inference.chat_format import normalize_messages
from hybridlm.inference.engine import (
    CompletionResult,
    EmbeddingResult,
    Timings,
    TokenCallback,
    TokenEvent,
)
from hybridlm.inference.events import deliver

logger = logging.getLogger(__name__)

_REPLAY_UNIT_RE = re.compile(r"\S+\s*|\s+")
_DATA_URI_RE = re.compile(r"^data:(?P<mime>[\w/+.-]+);base64,(?P<data>.*)$", re.DOTALL)

_IMAGE_MIME_TYPES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".webp": "image/webp",
}

_FINISH_REASONS = {
    "STOP": "stop",
    "MAX_TOKENS": "length",
}


@dataclass
class RemoteCredential:
    """Bearer token for the remote service, owned by whoever builds the provider.

    The provider invalidates it when the service rejects it, so every
    component sharing this object sees the rejection.
    """

    token: str | None = None

    @property
    def is_set(self) -> bool:
        return bool(self.token)

    def set(self, token: str | None) -> None:
        self.token = token or None

    def invalidate(self) -> None:
        self.token = None


def detect_mime_type(path: str) -> str:
    """Guess an image mime type from a file extension, defaulting to JPEG."""
    suffix = Path(path).suffix.lower()
    if suffix in _IMAGE_MIME_TYPES:
        return _IMAGE_MIME_TYPES[suffix]
    guessed, _ = mimetypes.guess_type(path)
    if guessed and guessed.startswith("image/"):
        return guessed
    return "image/jpeg"


def messages_to_prompt(messages: list[dict[str, Any]]) -> str:
    """Render a conversation as ``role: content`` lines for text-only endpoints."""
    if not messages:
        raise FormatError("Cannot build a remote prompt from an empty message list")
    return "\n".join(f"{m['role']}: {m['content']}" for m in normalize_messages(messages))


def replay_units(text: str) -> list[str]:
    """Split text into word units whose concatenation is the original text."""
    return _REPLAY_UNIT_RE.findall(text)


class RemoteProvider:
    """Remote text, vision and embedding inference behind a bearer token."""

    def __init__(
        self,
        config: RemoteConfig,
        credential: RemoteCredential,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.config = config
        self.credential = credential
        self.client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(connect=30.0, read=config.timeout, write=30.0, pool=30.0),
        )
        logger.info("Remote provider: model=%s project=%s", config.model, config.project_id)

        parsed = urlparse(config.base_url)
        if parsed.scheme == "http" and parsed.hostname not in ("localhost", "127.0.0.1", "::1"):
            logger.warning(
                "Remote endpoint %s is not HTTPS; the token will be sent in plaintext.",
                config.base_url,
            )

    @property
    def completion_url(self) -> str:
        c = self.config
        return (
            f"{c.base_url.rstrip('/')}/projects/{c.project_id}/locations/{c.location}"
            f"/publishers/google/models/{c.model}:generateContent"
        )

    @property
    def embedding_url(self) -> str:
        c = self.config
        return (
            f"{c.embedding_base_url.rstrip('/')}/projects/{c.project_id}"
            f"/locations/{c.embedding_location}"
            f"/publishers/google/models/{c.embedding_model}:predict"
        )

    async def completion(
        self,
        prompt: str,
        image: str | None = None,
        mime_type: str | None = None,
        on_token: TokenCallback | None = None,
    ) -> CompletionResult:
        """Generate text for ``prompt``, optionally about one image.

        ``image`` is a file path, a ``data:`` URI or raw base64 data.
        """
        parts: list[dict[str, Any]] = []
        if image:
            detected_mime, data = await self._load_image(image, mime_type)
            parts.append({"inlineData": {"mimeType": detected_mime, "data": data}})
        parts.append({"text": prompt})
        body = {"contents": {"role": "user", "parts": parts}}

        start = time.monotonic()
        data = await self._post(self.completion_url, body)
        elapsed_ms = (time.monotonic() - start) * 1000

        result = self._parse_completion(data, elapsed_ms)
        if on_token is not None:
            for unit in replay_units(result.text):
                deliver(on_token, TokenEvent(session_id=None, token=unit))
        return result

    async def chat_completion(
        self,
        messages: list[dict[str, Any]],
        image: str | None = None,
        on_token: TokenCallback | None = None,
    ) -> CompletionResult:
        return await self.completion(messages_to_prompt(messages), image=image, on_token=on_token)

    async def embedding(self, text: str) -> EmbeddingResult:
        data = await self._post(self.embedding_url, {"instances": [{"content": text}]})
        predictions = data.get("predictions")
        if not predictions:
            raise NetworkError("No predictions in response")
        try:
            values = predictions[0]["embeddings"]["values"]
        except (KeyError, TypeError) as e:
            raise NetworkError(f"Malformed embedding response: missing {e}") from e
        return EmbeddingResult(embedding=[float(v) for v in values])

    async def close(self) -> None:
        await self.client.aclose()

    # ── helpers ────────────────────────────────────────────────────────

    async def _post(self, url: str, body: dict[str, Any]) -> dict[str, Any]:
        token = self.credential.token
        if not token:
            raise AuthError("Remote token not set. Configure [remote] token or HYBRIDLM_TOKEN.")

        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }
        try:
            response = await self.client.post(url, json=body, headers=headers)
        except httpx.TimeoutException as e:
            raise NetworkError(f"Request to {url} timed out ({type(e).__name__}).") from e
        except httpx.HTTPError as e:
            raise NetworkError(f"Cannot reach remote endpoint: {e}") from e

        if response.status_code == 401:
            # Any holder of this credential must re-configure before retrying
            self.credential.invalidate()
            logger.warning("Remote endpoint rejected the token; credential invalidated")
            raise AuthError("Authentication failed. Please update your token.")
        if not response.is_success:
            raise NetworkError(
                f"HTTP {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise NetworkError(f"Invalid JSON from remote endpoint: {e}") from e
        if not isinstance(data, dict):
            raise NetworkError(
                f"Unexpected response format: received {type(data).__name__} instead of object"
            )
        if data.get("error"):
            error = data["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise NetworkError(f"API Error: {message}")
        return data

    @staticmethod
    def _parse_completion(data: dict[str, Any], elapsed_ms: float) -> CompletionResult:
        candidates = data.get("candidates")
        if not candidates:
            raise NetworkError("No candidates in response")
        candidate = candidates[0]
        parts = (candidate.get("content") or {}).get("parts")
        if not parts:
            raise NetworkError("No parts in response")
        text = parts[0].get("text") or ""

        usage = data.get("usageMetadata") or {}
        predicted = int(usage.get("candidatesTokenCount", 0))
        evaluated = int(usage.get("promptTokenCount", 0))
        timings = Timings(
            prompt_n=evaluated,
            predicted_n=predicted,
            predicted_ms=elapsed_ms,
            predicted_per_second=(
                predicted / (elapsed_ms / 1000) if predicted and elapsed_ms > 0 else 0.0
            ),
        )
        return CompletionResult(
            text=text,
            tokens_predicted=predicted,
            tokens_evaluated=evaluated,
            stop_reason=_FINISH_REASONS.get(candidate.get("finishReason", "STOP"), "stop"),
            timings=timings,
        )

    @staticmethod
    async def _load_image(image: str, mime_type: str | None) -> tuple[str, str]:
        match = _DATA_URI_RE.match(image)
        if match:
            return mime_type or match.group("mime"), match.group("data")

        path = image[7:] if image.startswith("file://") else image
        if os.path.isfile(path):
            raw = await asyncio.to_thread(Path(path).read_bytes)
            return mime_type or detect_mime_type(path), base64.b64encode(raw).decode("ascii")

        # Anything else is taken to be base64 data already
        return mime_type or "image/jpeg", image
