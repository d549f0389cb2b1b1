"""
Custom exception hierarchy for magnet-stream.
Every error carries a machine-readable kind and the HTTP status the server
maps it to, plus the torrent/file/backend context it was raised in.
"""


class StreamCoreError(Exception):
    """Base exception for all magnet-stream errors."""

    kind = "Internal"
    http_status = 500

    def __init__(
        self,
        message: str,
        details: str | None = None,
        info_hash: str | None = None,
        file_index: int | None = None,
        backend: str | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.details = details
        self.info_hash = info_hash
        self.file_index = file_index
        self.backend = backend

    def __str__(self) -> str:
        if self.details:
            return f"{self.message}: {self.details}"
        return self.message

    def context(self) -> dict:
        """Non-empty context fields, for logging and error payloads."""
        ctx = {
            "info_hash": self.info_hash,
            "file_index": self.file_index,
            "backend": self.backend,
        }
        return {k: v for k, v in ctx.items() if v is not None}


class InternalError(StreamCoreError):
    """Raised on an unexpected failure inside an engine or adapter."""

    pass


# Input errors
class InvalidIdentifierError(StreamCoreError):
    """Raised when a magnet or hash cannot be parsed."""

    kind = "InvalidIdentifier"
    http_status = 400


class NotFoundError(StreamCoreError):
    """Raised when a torrent, file or cloud job does not exist."""

    kind = "NotFound"
    http_status = 404


# Engine errors
class AcquisitionTimeoutError(StreamCoreError):
    """Raised when torrent metadata is not obtained in time."""

    kind = "AcquisitionTimeout"
    http_status = 504

    def __init__(self, message: str, timeout: float | None = None, **kwargs):
        super().__init__(message, **kwargs)
        self.timeout = timeout


class NetworkUnreachableError(StreamCoreError):
    """Raised when an engine cannot reach the network or its daemon."""

    kind = "NetworkUnreachable"
    http_status = 503


class EngineNotReadyError(StreamCoreError):
    """Raised when an operation needs a running engine and none is up."""

    kind = "NotReady"
    http_status = 503


class InvalidConfigurationError(StreamCoreError):
    """Raised when an engine kind or setting is not recognised."""

    kind = "InvalidConfiguration"
    http_status = 400


# Cloud cache (debrid) errors
class DebridError(StreamCoreError):
    """Base exception for debrid service errors."""

    pass


class AuthInvalidError(DebridError):
    """Raised when the debrid credential is rejected."""

    kind = "AuthInvalid"
    http_status = 401


class PremiumRequiredError(DebridError):
    """Raised when the account lacks the plan needed for an endpoint."""

    kind = "PremiumRequired"
    http_status = 403


class AccessDeniedError(PremiumRequiredError):
    """Raised on a 403 that is not about the account plan."""

    pass


class RateLimitedError(DebridError):
    """Raised when the debrid service answers 429."""

    kind = "RateLimited"
    http_status = 429

    def __init__(self, message: str, retry_after: float | None = None, **kwargs):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class NoSeedersError(DebridError):
    """Raised when a cloud job is dead with no peers to fetch from."""

    kind = "NoSeeders"
    http_status = 503


class ServiceUnreachableError(DebridError):
    """Raised on 502/503 or a transport failure talking to the service."""

    kind = "ServiceUnreachable"
    http_status = 503


class MalformedResponseError(DebridError):
    """Raised when the service returns a body that cannot be parsed."""

    kind = "MalformedResponse"
    http_status = 502


class RateLimitTimeoutError(DebridError):
    """Raised when the rate limiter times out waiting for a token."""

    kind = "RateLimited"
    http_status = 429

    def __init__(self, message: str, timeout: float | None = None):
        super().__init__(message)
        self.timeout = timeout


# Persistence errors
class PersistenceError(StreamCoreError):
    """Base exception for persistence/database errors."""

    pass
