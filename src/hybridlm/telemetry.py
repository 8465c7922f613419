"""Fire-and-forget usage and error reporting.

Records are POSTed to a PostgREST-style endpoint (``{url}/rest/v1/{table}``).
Nothing here may raise into the caller: every failure is logged at debug
level and dropped.
"""

from __future__ import annotations

import asyncio
import logging
import platform
import traceback
from datetime import datetime, timezone
from pathlib import PurePath
from typing import Any

import httpx

from hybridlm.config import TelemetryConfig
from hybridlm.inference.engine import SessionConfig

logger = logging.getLogger(__name__)


def _package_version() -> str:
    from importlib.metadata import PackageNotFoundError, version

    try:
        return version("hybridlm")
    except PackageNotFoundError:
        return "unknown"


def model_filename(path: str | None) -> str:
    """Return the file name of a model path, or 'unknown'."""
    if not path:
        return "unknown"
    if path.startswith("file://"):
        path = path[7:]
    return PurePath(path.replace("\\", "/")).name or "unknown"


class Telemetry:
    """Telemetry sink keyed by model filename, context size and GPU-layer count."""

    def __init__(self, config: TelemetryConfig, client: httpx.AsyncClient | None = None) -> None:
        self.config = config
        self._client = client
        self._pending: set[asyncio.Task] = set()

    @property
    def enabled(self) -> bool:
        return bool(self.config.url)

    def track(self, payload: dict[str, Any], context: SessionConfig | None = None) -> None:
        record = self._base_record(context)
        record["telemetry_payload"] = payload
        self._dispatch(record)

    def error(self, exc: BaseException, context: SessionConfig | None = None) -> None:
        record = self._base_record(context)
        record["error_payload"] = {
            "message": str(exc),
            "name": type(exc).__name__,
            "stack": "".join(traceback.format_exception(exc)),
        }
        self._dispatch(record)

    async def flush(self) -> None:
        """Wait for records still in flight. Used on shutdown and in tests."""
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)

    async def close(self) -> None:
        await self.flush()
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _base_record(self, context: SessionConfig | None) -> dict[str, Any]:
        return {
            "os": platform.system(),
            "os_version": platform.release(),
            "framework": "python",
            "framework_version": _package_version(),
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "model_filename": model_filename(context.model if context else None),
            "n_ctx": context.n_ctx if context else None,
            "n_gpu_layers": context.n_gpu_layers if context else None,
        }

    def _dispatch(self, record: dict[str, Any]) -> None:
        if not self.enabled:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop; dropping telemetry record")
            return
        task = loop.create_task(self._send(record))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _send(self, record: dict[str, Any]) -> None:
        try:
            if self._client is None:
                self._client = httpx.AsyncClient(timeout=10.0)
            url = f"{self.config.url.rstrip('/')}/rest/v1/{self.config.table}"
            await self._client.post(
                url,
                json=[record],
                headers={
                    "apikey": self.config.key,
                    "Authorization": f"Bearer {self.config.key}",
                    "Prefer": "return=minimal",
                },
            )
        except Exception as exc:
            logger.debug("Telemetry send failed: %s", exc)
