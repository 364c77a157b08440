from __future__ import annotations


class ServiceError(Exception):
    """Base class for client level exceptions."""


class MissingFopsError(ServiceError):
    """Raised when a write names a pipeline without operations, or the reverse."""


class ClientNotConfiguredError(ServiceError):
    """Raised when settings lack the credentials or bucket a client needs."""


class ClientNotInitializedError(ServiceError):
    """Raised when the default client is used before it is initialised."""
