"""Storage capability protocols and data types.

This module defines the interfaces the Kodo client delegates to: a bucket
manager for listing and stat calls, a form uploader, a persistent-operation
(pfop) manager, and a signer for upload tokens and private download URLs.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, BinaryIO, Mapping, Protocol

if TYPE_CHECKING:
    from kodo.common.config import ZoneConf


class StorageError(RuntimeError):
    """Raised when object storage operations fail."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        request_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.request_id = request_id


def _with_scheme(host: str, scheme: str) -> str:
    host = host.strip()
    if not host or "://" in host:
        return host
    return f"{scheme}://{host}"


@dataclass(frozen=True, slots=True)
class Endpoints:
    """Host set a client's managers are routed to."""

    up_hosts: tuple[str, ...]
    rs_host: str
    rsf_host: str
    api_host: str
    io_host: str
    scheme: str = "http"

    @classmethod
    def from_zone_conf(
        cls, zone: "ZoneConf", *, use_https: bool, use_cdn: bool
    ) -> "Endpoints":
        """Resolve a zone override into concrete, scheme-qualified hosts.

        CDN upload hosts are used when ``use_cdn`` is set, origin hosts otherwise.
        Hosts that already carry a scheme are kept as given.
        """
        scheme = "https" if use_https else "http"
        up_hosts = zone.cdn_up_hosts if use_cdn else zone.src_up_hosts
        return cls(
            up_hosts=tuple(_with_scheme(h, scheme) for h in up_hosts if h.strip()),
            rs_host=_with_scheme(zone.rs_host, scheme),
            rsf_host=_with_scheme(zone.rsf_host, scheme),
            api_host=_with_scheme(zone.api_host, scheme),
            io_host=_with_scheme(zone.io_vip_host, scheme),
            scheme=scheme,
        )


@dataclass(frozen=True, slots=True)
class ListItem:
    """A single entry of a list page."""

    key: str
    hash: str | None = None
    fsize: int | None = None
    mime_type: str | None = None
    put_time: int | None = None


@dataclass(frozen=True, slots=True)
class ListPage:
    """One page of a prefix listing."""

    items: tuple[ListItem, ...]
    next_marker: str
    has_next: bool
    common_prefixes: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class UploadPolicy:
    """Upload authorization policy, signed into an upload token.

    With a ``key`` the scope is ``bucket:key`` and an existing object under that
    key is replaced; without one the scope is the whole bucket.
    """

    bucket: str
    return_body: str
    key: str | None = None
    callback_url: str = ""
    callback_body: str = ""
    persistent_ops: str = ""
    persistent_pipeline: str = ""

    @property
    def scope(self) -> str:
        if self.key is None:
            return self.bucket
        return f"{self.bucket}:{self.key}"

    def to_policy(self) -> dict[str, str]:
        """Render the non-scope fields under the backend's policy names."""
        fields = {
            "returnBody": self.return_body,
            "callbackUrl": self.callback_url,
            "callbackBody": self.callback_body,
            "persistentOps": self.persistent_ops,
            "persistentPipeline": self.persistent_pipeline,
        }
        return {name: value for name, value in fields.items() if value}


@dataclass(frozen=True, slots=True)
class PrefopItem:
    """Status of one command inside a persistent-operation job."""

    code: int
    desc: str = ""
    key: str = ""
    cmd: str = ""
    error: str = ""


@dataclass(frozen=True, slots=True)
class PrefopStatus:
    """Status snapshot of a persistent-operation job."""

    id: str
    code: int
    desc: str = ""
    items: tuple[PrefopItem, ...] = field(default_factory=tuple)


class BucketManager(Protocol):
    """Listing and metadata operations against a bucket."""

    def list_files(
        self,
        *,
        bucket: str,
        prefix: str,
        delimiter: str,
        marker: str,
        limit: int,
    ) -> ListPage:
        """Fetch one page of keys under ``prefix`` starting at ``marker``.

        Raises:
            StorageError: If the backend rejects the request or is unreachable.
        """
        ...

    def stat(self, *, bucket: str, key: str) -> dict:
        """Return the object's metadata.

        Raises:
            StorageError: If the object doesn't exist or the operation fails.
        """
        ...


class FormUploader(Protocol):
    """Form (single request) upload of an object."""

    def put(
        self,
        *,
        token: str,
        key: str,
        stream: BinaryIO,
        size: int,
        params: Mapping[str, str],
    ) -> dict:
        """Upload ``size`` bytes read from ``stream`` under ``key``.

        Returns:
            The decoded return body sent back by the backend.

        Raises:
            StorageError: If the upload fails.
        """
        ...


class OperationManager(Protocol):
    """Submission and status query of persistent operations."""

    def pfop(
        self,
        *,
        bucket: str,
        key: str,
        fops: str,
        pipeline: str,
        notify_url: str,
        force: bool,
    ) -> str:
        """Submit a processing job and return its persistent id."""
        ...

    def prefop(self, persistent_id: str) -> PrefopStatus:
        """Fetch the current status of a processing job."""
        ...


class Signer(Protocol):
    """Credential-bound signing of upload tokens and download URLs."""

    def upload_token(self, policy: UploadPolicy) -> str:
        ...

    def private_url(self, base_url: str, expires_in: int) -> str:
        ...

