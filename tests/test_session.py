"""Tests for engine session lifecycle and error wrapping."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from hybridlm.errors import EngineError, SessionReleasedError
from hybridlm.inference.engine import SessionConfig
from hybridlm.inference.session import init_session

from fakes import ScriptedEngine


# ─── init_session ────────────────────────────────────────────────────────────


class TestInitSession:
    async def test_gpu_session(self):
        engine = ScriptedEngine()
        session = await init_session(engine, SessionConfig(model="/m.gguf", n_gpu_layers=99))
        assert session.gpu is True
        assert len(engine.init_configs) == 1

    async def test_falls_back_to_cpu(self):
        engine = ScriptedEngine()
        engine.init_failures = 1
        telemetry = MagicMock()

        session = await init_session(
            engine, SessionConfig(model="/m.gguf", n_gpu_layers=99), telemetry=telemetry
        )

        assert [c.n_gpu_layers for c in engine.init_configs] == [99, 0]
        assert session.gpu is False
        assert session.config.n_gpu_layers == 0
        telemetry.error.assert_called_once()
        exc, context = telemetry.error.call_args.args
        assert isinstance(exc, RuntimeError)
        assert context.n_gpu_layers == 99

    async def test_cpu_only_config_tried_once(self):
        engine = ScriptedEngine()
        engine.init_failures = 1
        with pytest.raises(EngineError):
            await init_session(engine, SessionConfig(model="/m.gguf", n_gpu_layers=0))
        assert len(engine.init_configs) == 1

    async def test_all_attempts_fail(self):
        engine = ScriptedEngine()
        engine.init_failures = 2
        telemetry = MagicMock()
        with pytest.raises(EngineError, match="/m.gguf") as exc_info:
            await init_session(
                engine, SessionConfig(model="/m.gguf", n_gpu_layers=20), telemetry=telemetry
            )
        assert "n_gpu_layers=0" in str(exc_info.value.__cause__)
        assert telemetry.error.call_count == 2

    async def test_file_scheme_stripped(self):
        engine = ScriptedEngine()
        session = await init_session(
            engine,
            SessionConfig(
                model="file:///models/m.gguf",
                lora="file:///models/adapter.gguf",
                mmproj="file:///models/mmproj.gguf",
            ),
        )
        assert session.config.model == "/models/m.gguf"
        assert session.config.lora == "/models/adapter.gguf"
        assert session.config.mmproj == "/models/mmproj.gguf"

    async def test_ids_are_unique(self, make_session):
        engine = ScriptedEngine()
        ids = {(await make_session(engine)).id for _ in range(5)}
        assert len(ids) == 5


# ─── Session operations ──────────────────────────────────────────────────────


class TestEngineSession:
    async def test_capabilities_follow_model(self, session):
        assert session.is_llama_chat_supported()
        assert session.is_jinja_supported()

    async def test_passthrough_operations(self, engine, session):
        assert await session.tokenize("hi") == [104, 105]
        assert await session.detokenize([104, 105]) == "hi"
        assert (await session.embedding("hi")).embedding == [0.25, 0.5, 0.25]
        assert await session.save_session("file:///tmp/state.bin") == 42
        loaded = await session.load_session("file:///tmp/state.bin")
        assert loaded.prompt == "/tmp/state.bin"
        await session.stop()
        assert engine.stopped == [session.id]

    async def test_engine_failure_wrapped(self, engine, session):
        engine.tokenize = MagicMock(side_effect=OSError("vocab missing"))
        with pytest.raises(EngineError, match="tokenize failed") as exc_info:
            await session.tokenize("x")
        assert isinstance(exc_info.value.__cause__, OSError)

    async def test_release_is_idempotent(self, engine, session):
        await session.release()
        await session.release()
        assert engine.released == [session.id]
        assert session.released

    async def test_calls_after_release_rejected(self, engine, session):
        await session.release()
        with pytest.raises(SessionReleasedError):
            await session.tokenize("x")
        with pytest.raises(EngineError):
            await session.stop()
        assert engine.stopped == []
