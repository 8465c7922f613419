"""Configuration loading and management for hybridlm."""

from __future__ import annotations

import logging
import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)


def config_dir() -> Path:
    return Path.home() / ".config" / "hybridlm"


@dataclass
class ModelConfig:
    path: str = ""
    n_ctx: int = 2048
    n_batch: int = 512
    n_threads: int = 0  # 0 = os.cpu_count()
    n_gpu_layers: int = 99
    embedding: bool = False
    mmproj: str = ""  # multimodal projector for vision models
    lora: str = ""
    lora_scale: float = 1.0


@dataclass
class RemoteConfig:
    base_url: str = "https://aiplatform.googleapis.com/v1"
    project_id: str = ""
    location: str = "global"
    model: str = "gemini-2.5-flash-lite"
    embedding_base_url: str = "https://us-central1-aiplatform.googleapis.com/v1"
    embedding_location: str = "us-central1"
    embedding_model: str = "text-embedding-005"
    token: str = ""
    timeout: float = 60.0


@dataclass
class AgentConfig:
    tool_recursion_limit: int = 3


@dataclass
class CompletionConfig:
    n_predict: int = 256
    temperature: float = 0.7
    top_p: float = 0.9
    penalty_repeat: float = 1.05
    stop: list[str] = field(default_factory=list)


@dataclass
class EngineConfig:
    mode: str = "local"  # "local", "remote", "local-first" or "remote-first"


@dataclass
class TelemetryConfig:
    url: str = ""  # empty = disabled
    key: str = ""
    table: str = "telemetry"


@dataclass
class HybridLMConfig:
    model: ModelConfig = field(default_factory=ModelConfig)
    remote: RemoteConfig = field(default_factory=RemoteConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)
    completion: CompletionConfig = field(default_factory=CompletionConfig)
    engine: EngineConfig = field(default_factory=EngineConfig)
    telemetry: TelemetryConfig = field(default_factory=TelemetryConfig)


_SECTIONS = ("model", "remote", "agent", "completion", "engine", "telemetry")


def load_config(config_path: str | Path | None = None) -> HybridLMConfig:
    """Load configuration from a TOML file, falling back to defaults.

    Search order:
    1. Explicit config_path argument
    2. ~/.config/hybridlm/config.toml
    3. Built-in defaults
    """
    config = HybridLMConfig()

    if config_path:
        user_path = Path(config_path)
    else:
        user_path = config_dir() / "config.toml"

    if user_path.exists():
        _merge_toml(config, user_path)

    # HYBRIDLM_TOKEN takes precedence over a token stored in the file
    env_token = os.environ.get("HYBRIDLM_TOKEN")
    if env_token:
        config.remote.token = env_token

    if config.remote.token and user_path.exists():
        try:
            perms = user_path.stat().st_mode & 0o777
            if perms & 0o077:
                logger.warning(
                    "Config file %s has permissive permissions (%04o) and contains a token. "
                    "Run: chmod 600 %s",
                    user_path,
                    perms,
                    user_path,
                )
        except OSError:
            pass

    return config


def _merge_toml(config: HybridLMConfig, path: Path) -> None:
    """Merge a TOML file into the config, overwriting only specified fields."""
    with open(path, "rb") as f:
        data = tomllib.load(f)

    for section in _SECTIONS:
        if section not in data:
            continue
        target = getattr(config, section)
        for key, value in data[section].items():
            if hasattr(target, key):
                setattr(target, key, value)
            else:
                logger.debug("Ignoring unknown config key [%s] %s", section, key)


_HEADER_RE = re.compile(r"^\s*\[([^\]]+)\]")
_MODE_LINE_RE = re.compile(r"^\s*#?\s*mode\s*=")


def save_execution_mode(mode: str) -> Path:
    """Write ``mode`` into the [engine] section of the user config file.

    The file is edited line by line so comments and other sections survive.
    A commented-out ``mode`` line in [engine] is replaced. Returns the path.
    """
    path = config_dir() / "config.toml"
    path.parent.mkdir(parents=True, exist_ok=True)
    lines = path.read_text().splitlines() if path.exists() else []
    entry = f'mode = "{mode}"'

    section = None
    engine_end = None
    for i, line in enumerate(lines):
        header = _HEADER_RE.match(line)
        if header:
            if section == "engine" and engine_end is None:
                engine_end = i
            section = header.group(1).strip()
        elif section == "engine" and _MODE_LINE_RE.match(line):
            lines[i] = entry
            break
    else:
        if engine_end is not None:
            lines.insert(engine_end, entry)
        elif section == "engine":
            lines.append(entry)
        else:
            lines.extend(["", "[engine]", entry])

    path.write_text("\n".join(lines) + "\n")
    logger.info("Saved execution mode %r to %s", mode, path)
    return path
