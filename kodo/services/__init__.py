from .base import (
    ClientNotConfiguredError,
    ClientNotInitializedError,
    MissingFopsError,
    ServiceError,
)
from .client import (
    DEFAULT_RETURN_BODY,
    Client,
    ClientOptions,
    FopOptions,
    FopResult,
    FopState,
    ListOptions,
    State,
    WriteOptions,
    get_default_client,
    init_default_client,
)

__all__ = [
    "Client",
    "ClientOptions",
    "WriteOptions",
    "ListOptions",
    "FopOptions",
    "State",
    "FopState",
    "FopResult",
    "DEFAULT_RETURN_BODY",
    "init_default_client",
    "get_default_client",
    "ServiceError",
    "MissingFopsError",
    "ClientNotConfiguredError",
    "ClientNotInitializedError",
]
