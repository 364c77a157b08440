"""Kodo object storage client.

This module provides the facade applications use to write objects, list and
check keys, build signed download URLs, and trigger or query persistent
operations. Every call is forwarded to a delegate manager; the facade only
fills in defaults and reshapes the delegate's responses.
"""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass, field
from typing import Any, BinaryIO, Mapping
from urllib.parse import quote

from kodo.common.config import Settings, ZoneConf, get_settings
from kodo.infra.storage.client import (
    BucketManager,
    Endpoints,
    FormUploader,
    OperationManager,
    Signer,
    StorageError,
    UploadPolicy,
)
from kodo.infra.storage.qiniu_client import (
    QiniuBucketManager,
    QiniuFormUploader,
    QiniuOperationManager,
    QiniuSigner,
    build_auth,
)
from kodo.services.base import (
    ClientNotConfiguredError,
    ClientNotInitializedError,
    MissingFopsError,
)

logger = logging.getLogger("kodo.client")

DEFAULT_RETURN_BODY = (
    '{"key":"$(key)","hash":"$(etag)","fsize":"$(fsize)",'
    '"bucket":"$(bucket)","name":"$(x:name)"}'
)
# Upload parameter the default return body echoes back as "name".
NAME_PARAM = "x:name"
DEFAULT_LIST_LIMIT = 1000
URL_EXPIRES_IN = 60 * 60


@dataclass(frozen=True, slots=True)
class ClientOptions:
    """Construction settings for a client.

    ``use_https`` and ``use_cdn`` apply with or without a ``zone``.
    """

    use_https: bool = False
    use_cdn: bool = False
    zone: ZoneConf | None = None


@dataclass(frozen=True, slots=True)
class WriteOptions:
    """Optional settings for a write.

    ``pipeline`` and ``fops`` go together: give both or neither.
    """

    pipeline: str | None = None
    fops: str | None = None
    extra_params: Mapping[str, str] = field(default_factory=dict)
    return_body: str | None = None
    callback_url: str = ""


@dataclass(frozen=True, slots=True)
class ListOptions:
    """Optional settings for a prefix listing.

    ``max_keys`` of None lists everything under the prefix.
    """

    max_keys: int | None = None
    limit: int = DEFAULT_LIST_LIMIT
    marker: str = ""
    delimiter: str = ""

    def __post_init__(self) -> None:
        if self.max_keys is not None and self.max_keys < 1:
            raise ValueError(f"max_keys must be at least 1, got {self.max_keys}")


@dataclass(frozen=True, slots=True)
class FopOptions:
    """Optional settings for a processing job submission."""

    notify_url: str = ""
    force: bool = True


@dataclass(frozen=True, slots=True)
class State:
    """Outcome of a successful write."""

    key: str
    hash: str
    fsize: str
    bucket: str
    name: str


@dataclass(frozen=True, slots=True)
class FopResult:
    code: int
    desc: str
    res_key: str
    cmd: str
    err: str


@dataclass(frozen=True, slots=True)
class FopState:
    """Point-in-time status of a processing job."""

    id: str
    code: int
    desc: str
    res: tuple[FopResult, ...]


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    return str(value)


class Client:
    """Client bound to one bucket and its download domain.

    The delegates default to Qiniu SDK adapters routed to the zone override in
    ``options`` (or the SDK's public hosts), using the client's scheme. Substitute delegates can be
    passed explicitly. Nothing here touches the network until a method runs.
    """

    def __init__(
        self,
        access_key: str,
        secret_key: str,
        bucket: str,
        domain: str,
        options: ClientOptions | None = None,
        *,
        bucket_manager: BucketManager | None = None,
        uploader: FormUploader | None = None,
        operation_manager: OperationManager | None = None,
        signer: Signer | None = None,
    ) -> None:
        self._access_key = access_key
        self._secret_key = secret_key
        self._bucket = bucket
        self._domain = domain
        self._options = options or ClientOptions()
        self._endpoints = (
            Endpoints.from_zone_conf(
                self._options.zone,
                use_https=self._options.use_https,
                use_cdn=self._options.use_cdn,
            )
            if self._options.zone is not None
            else None
        )

        auth = None
        if None in (bucket_manager, uploader, operation_manager, signer):
            auth = build_auth(access_key, secret_key)
        scheme = "https" if self._options.use_https else "http"
        self._bucket_manager = bucket_manager or QiniuBucketManager(
            auth, endpoints=self._endpoints, scheme=scheme
        )
        self._uploader = uploader or QiniuFormUploader(
            endpoints=self._endpoints,
            scheme=scheme,
            accelerate_uploading=self._options.use_cdn,
        )
        self._operation_manager = operation_manager or QiniuOperationManager(
            auth, endpoints=self._endpoints, scheme=scheme
        )
        self._signer = signer or QiniuSigner(auth)

        logger.debug(
            "client_initialised bucket=%s domain=%s zone=%s",
            bucket,
            domain,
            self._endpoints is not None,
            extra={
                "extra": {
                    "bucket": bucket,
                    "domain": domain,
                    "use_https": self._options.use_https,
                    "use_cdn": self._options.use_cdn,
                }
            },
        )

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "Client":
        """Build a client from environment-backed settings."""
        settings = settings or get_settings()
        if not settings.KODO_ACCESS_KEY or not settings.KODO_SECRET_KEY:
            raise ClientNotConfiguredError(
                "KODO_ACCESS_KEY and KODO_SECRET_KEY are required"
            )
        if not settings.KODO_BUCKET:
            raise ClientNotConfiguredError("KODO_BUCKET is required")
        return cls(
            settings.KODO_ACCESS_KEY,
            settings.KODO_SECRET_KEY,
            settings.KODO_BUCKET,
            settings.KODO_DOMAIN,
            ClientOptions(
                use_https=settings.KODO_USE_HTTPS,
                use_cdn=settings.KODO_USE_CDN,
                zone=settings.zone_conf(),
            ),
        )

    @property
    def bucket(self) -> str:
        return self._bucket

    @property
    def domain(self) -> str:
        return self._domain

    @property
    def options(self) -> ClientOptions:
        return self._options

    @property
    def endpoints(self) -> Endpoints | None:
        return self._endpoints

    @property
    def bucket_manager(self) -> BucketManager:
        return self._bucket_manager

    @property
    def uploader(self) -> FormUploader:
        return self._uploader

    @property
    def operation_manager(self) -> OperationManager:
        return self._operation_manager

    def writer(
        self,
        key: str,
        stream: BinaryIO,
        size: int,
        overwrite: bool,
        options: WriteOptions | None = None,
    ) -> State:
        """Write ``size`` bytes from ``stream`` to ``key``.

        Args:
            key: Destination key.
            stream: Readable binary stream holding at least ``size`` bytes.
            size: Exact number of bytes to upload.
            overwrite: Bind the upload to ``key`` so an existing object is
                replaced. Otherwise the backend may reject a duplicate key.
            options: Processing pipeline and operations, extra ``x:`` params,
                custom return body and callback URL.

        Returns:
            State echoed back by the backend.

        Raises:
            MissingFopsError: If only one of pipeline and fops is given.
            StorageError: If the upload fails.
        """
        options = options or WriteOptions()
        if (options.pipeline is None) != (options.fops is None):
            raise MissingFopsError("persistent operations should not be empty")

        return_body = options.return_body or DEFAULT_RETURN_BODY
        policy = UploadPolicy(
            bucket=self._bucket,
            key=key if overwrite else None,
            return_body=return_body,
            callback_url=options.callback_url,
            callback_body=options.return_body or "",
            persistent_ops=options.fops or "",
            persistent_pipeline=options.pipeline or "",
        )
        params = dict(options.extra_params)
        params[NAME_PARAM] = key

        ret = self._uploader.put(
            token=self._signer.upload_token(policy),
            key=key,
            stream=stream,
            size=size,
            params=params,
        )
        logger.debug(
            "object_written bucket=%s key=%s size=%s scope=%s",
            self._bucket,
            key,
            size,
            policy.scope,
        )
        return State(
            key=_as_text(ret.get("key")),
            hash=_as_text(ret.get("hash")),
            fsize=_as_text(ret.get("fsize")),
            bucket=_as_text(ret.get("bucket")),
            name=_as_text(ret.get("name")),
        )

    def push(
        self,
        key: str,
        data: bytes,
        overwrite: bool,
        options: WriteOptions | None = None,
    ) -> State:
        """Write an in-memory buffer to ``key``. See :meth:`writer`."""
        return self.writer(key, io.BytesIO(data), len(data), overwrite, options)

    def url_for(self, key: str) -> str:
        """Signed download URL for ``key`` on the client's domain, valid one hour."""
        return self.key_url(self._domain, key)

    def key_url(self, domain: str, key: str) -> str:
        """Signed download URL for ``key`` on ``domain``, valid one hour."""
        domain = domain.strip().rstrip("/")
        if "://" not in domain:
            scheme = "https" if self._options.use_https else "http"
            domain = f"{scheme}://{domain}"
        base_url = f"{domain}/{quote(key, safe='/~')}"
        return self._signer.private_url(base_url, URL_EXPIRES_IN)

    def key_list(
        self, prefix: str, options: ListOptions | None = None
    ) -> tuple[list[str], str]:
        """List keys under ``prefix``.

        Pages are fetched until ``max_keys`` is reached or the backend has no
        more pages. Reaching ``max_keys`` returns the next-page marker of the
        page being consumed, so any remaining keys on that page are skipped on
        resume.

        A backend error ends the listing without raising: the keys collected
        so far and the marker that was being fetched are returned.

        Returns:
            The keys and a resume marker, empty once the listing is exhausted.
        """
        options = options or ListOptions()
        keys: list[str] = []
        marker = options.marker

        while True:
            try:
                page = self._bucket_manager.list_files(
                    bucket=self._bucket,
                    prefix=prefix,
                    delimiter=options.delimiter,
                    marker=marker,
                    limit=options.limit,
                )
            except StorageError as exc:
                logger.warning(
                    "key_list_truncated bucket=%s prefix=%s marker=%s collected=%s error=%s",
                    self._bucket,
                    prefix,
                    marker,
                    len(keys),
                    exc,
                    extra={
                        "extra": {
                            "bucket": self._bucket,
                            "prefix": prefix,
                            "marker": marker,
                            "collected": len(keys),
                            "status": exc.status_code,
                        }
                    },
                )
                break

            for item in page.items:
                keys.append(item.key)
                if options.max_keys is not None and len(keys) >= options.max_keys:
                    return keys, page.next_marker

            marker = page.next_marker
            if not page.has_next:
                break

        return keys, marker

    def key_exist(self, key: str) -> bool:
        """Whether ``key`` exists. Any stat failure counts as absent."""
        try:
            self._bucket_manager.stat(bucket=self._bucket, key=key)
        except StorageError as exc:
            logger.debug(
                "key_stat_failed bucket=%s key=%s status=%s",
                self._bucket,
                key,
                exc.status_code,
            )
            return False
        return True

    def fop(
        self,
        key: str,
        fops: str,
        pipeline: str,
        options: FopOptions | None = None,
    ) -> str:
        """Submit a persistent operation on ``key`` and return its job id."""
        options = options or FopOptions()
        persistent_id = self._operation_manager.pfop(
            bucket=self._bucket,
            key=key,
            fops=fops,
            pipeline=pipeline,
            notify_url=options.notify_url,
            force=options.force,
        )
        logger.info(
            "fop_submitted bucket=%s key=%s pipeline=%s persistent_id=%s",
            self._bucket,
            key,
            pipeline,
            persistent_id,
            extra={
                "extra": {
                    "bucket": self._bucket,
                    "key": key,
                    "pipeline": pipeline,
                    "persistent_id": persistent_id,
                }
            },
        )
        return persistent_id

    def prefop(self, persistent_id: str) -> FopState:
        """Fetch the status of a processing job."""
        status = self._operation_manager.prefop(persistent_id)
        return FopState(
            id=status.id,
            code=status.code,
            desc=status.desc,
            res=tuple(
                FopResult(
                    code=item.code,
                    desc=item.desc,
                    res_key=item.key,
                    cmd=item.cmd,
                    err=item.error,
                )
                for item in status.items
            ),
        )


_default_client: Client | None = None


def init_default_client(
    access_key: str,
    secret_key: str,
    bucket: str,
    domain: str,
    options: ClientOptions | None = None,
) -> Client:
    """Create the process-wide default client and return it."""
    global _default_client
    client = Client(access_key, secret_key, bucket, domain, options)
    _default_client = client
    return client


def get_default_client() -> Client:
    """Return the default client set by :func:`init_default_client`."""
    if _default_client is None:
        raise ClientNotInitializedError("default client has not been initialised")
    return _default_client
