from __future__ import annotations


class DamSyncError(Exception):
    """Base class for every error raised by the Imageshop provider."""


class RemoteApiError(DamSyncError):
    def __init__(self, code: int, message: str):
        super().__init__(f"imageshop_error: code={code} msg={message}")
        self.code = code
        self.message = message


class TransientRemoteError(RemoteApiError):
    """Network failure, timeout or 5xx; retried on the next scheduled run, never inline."""


class NotFoundError(RemoteApiError):
    """A document or attachment reference no longer resolves."""


class SizeValidationError(DamSyncError, ValueError):
    """A malformed size request, rejected before any remote call."""


class ConflictError(DamSyncError):
    """A sync run was requested while a job for the same direction is still queued."""

    def __init__(self, direction: str, message: str):
        super().__init__(message)
        self.direction = direction
        self.message = message


class DegenerateGeometryError(DamSyncError):
    """Both computed dimensions collapsed to zero."""
