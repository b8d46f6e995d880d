"""
Error taxonomy for the orchestration engine.

WHAT THIS FILE DOES:
-------------------
Defines the exceptions raised by provider connections and collaborators,
classified by WHERE a failure happened:

- TransportError: the channel to a provider broke (spawn failure, closed
  stream, dead subprocess). The connection is no longer usable.
- ProtocolError: the provider answered, but the response was malformed.
- ProviderError: the provider reported a business error (unknown symbol,
  rate limit, unknown operation).
- SchemaValidationError: a language-model collaborator produced a document
  that does not match its schema.
- OperationTimeoutError: an operation exceeded its time bound.

Step-level errors never escape the orchestrator loop; they are recorded as
step results. Only NoProvidersAvailableError is fatal to a session.
"""

from typing import Optional


class OrchestrationError(Exception):
    """Base class for engine errors, optionally tagged with a provider name."""

    kind = "internal"

    def __init__(self, message: str, provider: Optional[str] = None):
        super().__init__(message)
        self.provider = provider

    def __str__(self):
        message = super().__str__()
        if self.provider:
            return f"[{self.provider}] {message}"
        return message


class TransportError(OrchestrationError):
    """Raised when the subprocess channel to a provider fails.

    THROW when:
    - The provider process cannot be spawned
    - The handshake does not complete
    - The stream is closed or the process died mid-call
    """

    kind = "transport"


class ProtocolError(OrchestrationError):
    """Raised when a provider response does not match the expected shape."""

    kind = "protocol"


class ProviderError(OrchestrationError):
    """Raised when the remote side reports an error for a well-formed request."""

    kind = "provider"


class SchemaValidationError(OrchestrationError):
    """Raised when planner, analyzer or synthesizer output fails validation."""

    kind = "validation"


class OperationTimeoutError(OrchestrationError, TimeoutError):
    """Raised when a provider operation exceeds its time bound."""

    kind = "timeout"


class NoProvidersAvailableError(OrchestrationError):
    """Raised at session start when not a single provider could be connected."""

    kind = "fatal"

    def __init__(self, failures: dict[str, str]):
        details = "; ".join(f"{name}: {error}" for name, error in failures.items())
        super().__init__(f"No tool provider could be connected ({details or 'none configured'})")
        self.failures = failures
