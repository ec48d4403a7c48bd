"""Exception hierarchy shared by provider transports, phases, and the CLI."""

from __future__ import annotations

__all__ = [
    "AuthenticationError",
    "ConfigError",
    "KeysExhaustedError",
    "PhaseFailure",
    "ProtocolError",
    "RateLimitError",
    "RelayError",
    "TransportError",
]


class RelayError(RuntimeError):
    """Base error raised by the orchestration engine."""


class TransportError(RelayError):
    """Raised when a provider endpoint cannot be reached or answers with an HTTP error."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class RateLimitError(TransportError):
    """Raised when a provider throttles the current credential."""


class AuthenticationError(TransportError):
    """Raised when a provider rejects the credential outright (401/403)."""


class ProtocolError(RelayError):
    """Raised when a provider answers with a body that cannot be interpreted."""


class KeysExhaustedError(RelayError):
    """Raised once every configured credential has been rate limited or none exist."""

    def __init__(self, message: str, *, original_error: BaseException | None = None) -> None:
        super().__init__(message)
        self.original_error = original_error


class ConfigError(RelayError):
    """Raised when the configuration file cannot be read or does not validate."""


class PhaseFailure(RelayError):
    """Raised when a pipeline phase cannot produce the structure it promised."""

    def __init__(self, phase: str, message: str) -> None:
        super().__init__(f"{phase} phase failed: {message}")
        self.phase = phase
