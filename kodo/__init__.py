"""
Convenience client for Qiniu Kodo object storage.
"""

from kodo.common.config import ZoneConf
from kodo.infra.storage.client import StorageError
from kodo.services import (
    DEFAULT_RETURN_BODY,
    Client,
    ClientOptions,
    FopOptions,
    FopResult,
    FopState,
    ListOptions,
    MissingFopsError,
    ServiceError,
    State,
    WriteOptions,
    get_default_client,
    init_default_client,
)

__all__ = [
    "Client",
    "ClientOptions",
    "ZoneConf",
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
    "StorageError",
]
