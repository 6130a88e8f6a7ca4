"""Error taxonomy shared by providers, the job poller and the orchestrator."""

from typing import Optional


class GenBridgeError(Exception):
    """Base class for all errors raised by genbridge."""


class CredentialError(GenBridgeError):
    """The API key is missing, invalid, or was rejected by the backend."""


class ValidationError(GenBridgeError, ValueError):
    """The request is malformed (e.g. a required image is missing)."""


class ConfigurationError(GenBridgeError, ValueError):
    """The library was wired up incorrectly (unknown provider, empty key...)."""


class UpstreamError(GenBridgeError, RuntimeError):
    """A backend answered with a non-2xx status or an unusable payload.

    Attributes:
        status_code: HTTP status returned by the backend, if any
    """

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class JobTimeoutError(GenBridgeError, TimeoutError):
    """An async job did not reach a terminal state within its ceiling."""
