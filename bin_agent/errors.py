"""Error taxonomy for the publishing pipeline."""
from __future__ import annotations


class AgentError(Exception):
    """Base class for every error raised by the agent."""


class ConnectError(AgentError):
    """The broker could not be reached within the connect budget."""

    def __init__(self, broker: str, elapsed_seconds: float, attempts: int, cause: str | None = None) -> None:
        self.broker = broker
        self.elapsed_seconds = elapsed_seconds
        self.attempts = attempts
        self.cause = cause
        message = (
            f"mqtt connection to {broker} failed after trying for {elapsed_seconds:.1f} seconds "
            f"({attempts} attempts)"
        )
        if cause:
            message = f"{message}: {cause}"
        super().__init__(message)


class CertificateError(AgentError):
    """TLS material is missing, unreadable or not valid PEM."""


class PublishError(AgentError):
    """A single publish attempt failed."""


class ReadError(AgentError):
    """The value provider could not produce a measurement."""


class WatchError(AgentError):
    """The filesystem watch mechanism failed."""
