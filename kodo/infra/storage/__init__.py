"""Object storage abstraction layer.

This module provides protocol-based abstractions for the delegates the Kodo
client forwards to, with implementations backed by the Qiniu SDK.
"""

from .client import (
    BucketManager,
    Endpoints,
    FormUploader,
    ListItem,
    ListPage,
    OperationManager,
    PrefopItem,
    PrefopStatus,
    Signer,
    StorageError,
    UploadPolicy,
)

__all__ = [
    "BucketManager",
    "Endpoints",
    "FormUploader",
    "ListItem",
    "ListPage",
    "OperationManager",
    "PrefopItem",
    "PrefopStatus",
    "Signer",
    "StorageError",
    "UploadPolicy",
]
