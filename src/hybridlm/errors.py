"""Exception taxonomy for completion orchestration."""

from __future__ import annotations


class HybridLMError(Exception):
    """Base class for every error raised by hybridlm."""


class FormatError(HybridLMError):
    """Chat input could not be turned into a prompt (empty or malformed messages)."""


class EmptyPromptError(HybridLMError):
    """The resolved prompt was empty at completion time."""


class EngineError(HybridLMError):
    """The inference engine failed. The engine's own exception is chained as __cause__."""


class SessionReleasedError(EngineError):
    """A session was used after release()."""


class ToolExecutionError(HybridLMError):
    """A tool invocation failed or produced output that cannot be serialized."""

    def __init__(self, message: str, tool_name: str = "") -> None:
        super().__init__(message)
        self.tool_name = tool_name


class InvalidModeError(HybridLMError, ValueError):
    """An execution-mode string outside local/remote/local-first/remote-first."""

    def __init__(self, value: object) -> None:
        super().__init__(
            f"Invalid execution mode: {value!r} "
            "(expected one of 'local', 'remote', 'local-first', 'remote-first')"
        )
        self.value = value


class AuthError(HybridLMError):
    """The remote credential is missing or was rejected."""


class NetworkError(HybridLMError, ConnectionError):
    """The remote call failed at the transport or protocol level."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
