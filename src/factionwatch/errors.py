from __future__ import annotations


class FactionWatchError(Exception):
    """Base class for every error raised by the collection core."""


class ApiError(FactionWatchError):
    """The API answered with an application error that retrying cannot fix."""

    def __init__(self, message: str, code: int | None = None) -> None:
        super().__init__(message)
        self.code = code


class CredentialError(ApiError):
    """A key was rejected (bad, expired, paused or banned) on every attempt made."""


class IpBannedError(ApiError):
    """The calling IP is banned upstream. Never retried."""


class UpstreamRateLimitError(ApiError):
    """The provider kept answering with its global rate limit code."""


class TransportError(FactionWatchError):
    """Network failure, timeout or non-2xx response that outlived the retry ceiling."""


class NoCredentialAvailableError(FactionWatchError):
    """No key left to try for this request."""


class StorageError(FactionWatchError):
    """A snapshot write failed and its transaction was rolled back."""
