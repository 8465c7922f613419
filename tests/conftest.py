"""Shared fixtures for engine sessions."""

from __future__ import annotations

from typing import Any

import pytest

from hybridlm.inference.engine import SessionConfig
from hybridlm.inference.session import init_session

from fakes import ScriptedEngine


@pytest.fixture
def engine() -> ScriptedEngine:
    return ScriptedEngine()


@pytest.fixture
async def session(engine):
    return await init_session(engine, SessionConfig(model="/models/test-1B-Q4.gguf"))


@pytest.fixture
def make_session():
    """Factory for sessions over a given engine."""

    async def _make(engine: ScriptedEngine, **config: Any):
        config.setdefault("model", "/models/test-1B-Q4.gguf")
        return await init_session(engine, SessionConfig(**config))

    return _make
