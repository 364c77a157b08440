"""Qiniu Kodo implementations of the storage capabilities.

Dependencies:
    - qiniu
    - requests
"""

from __future__ import annotations

import io
from typing import TYPE_CHECKING, Any, BinaryIO, Mapping

from kodo.infra.storage.client import (
    Endpoints,
    ListItem,
    ListPage,
    PrefopItem,
    PrefopStatus,
    StorageError,
    UploadPolicy,
)

if TYPE_CHECKING:
    import requests

# Lifetime of upload tokens issued for a single write.
UPLOAD_TOKEN_EXPIRES = 3600
UPLOAD_MIME_TYPE = "application/octet-stream"


def _import_qiniu() -> Any:
    try:
        import qiniu
    except ImportError as exc:
        raise StorageError(
            "qiniu is required for the Kodo storage backend. "
            "Install with: pip install qiniu"
        ) from exc
    return qiniu


def _response_error(action: str, info: Any) -> StorageError:
    status_code = getattr(info, "status_code", None)
    detail = getattr(info, "error", None) or f"status {status_code}"
    return StorageError(
        f"Failed to {action}: {detail}",
        status_code=status_code,
        request_id=getattr(info, "req_id", None),
    )


def build_auth(access_key: str, secret_key: str) -> Any:
    """Create the SDK credential object shared by all adapters of a client."""
    qiniu = _import_qiniu()
    return qiniu.Auth(access_key, secret_key)


def build_zone(endpoints: Endpoints) -> Any:
    """Translate resolved endpoints into an SDK zone."""
    qiniu = _import_qiniu()
    up_hosts = endpoints.up_hosts or (None,)
    return qiniu.Zone(
        up_host=up_hosts[0],
        up_host_backup=up_hosts[1] if len(up_hosts) > 1 else up_hosts[0],
        io_host=endpoints.io_host or None,
        scheme=endpoints.scheme,
        rs_host=endpoints.rs_host or None,
        rsf_host=endpoints.rsf_host or None,
        api_host=endpoints.api_host or None,
    )


class QiniuSigner:
    """Signs upload tokens and private download URLs with the client's keys."""

    def __init__(self, auth: Any) -> None:
        self._auth = auth

    def upload_token(self, policy: UploadPolicy) -> str:
        try:
            return self._auth.upload_token(
                policy.bucket,
                policy.key,
                UPLOAD_TOKEN_EXPIRES,
                policy.to_policy(),
            )
        except Exception as exc:
            raise StorageError(f"Failed to sign upload token: {exc}") from exc

    def private_url(self, base_url: str, expires_in: int) -> str:
        return self._auth.private_download_url(base_url, expires=int(expires_in))


class QiniuBucketManager:
    """Bucket listing and stat calls through the SDK's ``BucketManager``."""

    def __init__(
        self,
        auth: Any,
        *,
        endpoints: Endpoints | None = None,
        scheme: str = "http",
    ) -> None:
        self.endpoints = endpoints
        self.scheme = scheme
        self._manager = self._build_manager(auth, endpoints, scheme)

    @staticmethod
    def _build_manager(auth: Any, endpoints: Endpoints | None, scheme: str) -> Any:
        qiniu = _import_qiniu()
        zone = build_zone(endpoints) if endpoints is not None else None
        return qiniu.BucketManager(auth, zone=zone, preferred_scheme=scheme)

    def list_files(
        self,
        *,
        bucket: str,
        prefix: str,
        delimiter: str,
        marker: str,
        limit: int,
    ) -> ListPage:
        """Fetch one page of keys."""
        try:
            ret, eof, info = self._manager.list(
                bucket,
                prefix=prefix or None,
                marker=marker or None,
                limit=int(limit),
                delimiter=delimiter or None,
            )
        except Exception as exc:
            raise StorageError(f"Failed to list files: {exc}") from exc

        if ret is None:
            raise _response_error("list files", info)

        try:
            items = tuple(
                ListItem(
                    key=str(item["key"]),
                    hash=item.get("hash"),
                    fsize=item.get("fsize"),
                    mime_type=item.get("mimeType"),
                    put_time=item.get("putTime"),
                )
                for item in ret.get("items") or ()
            )
            next_marker = str(ret.get("marker") or "")
            common_prefixes = tuple(ret.get("commonPrefixes") or ())
        except (AttributeError, KeyError, TypeError) as exc:
            raise StorageError(f"Malformed list response: {exc!r}") from exc

        return ListPage(
            items=items,
            next_marker=next_marker,
            has_next=bool(next_marker) and not eof,
            common_prefixes=common_prefixes,
        )

    def stat(self, *, bucket: str, key: str) -> dict:
        """Get object metadata."""
        try:
            ret, info = self._manager.stat(bucket, key)
        except Exception as exc:
            raise StorageError(f"Failed to stat object: {exc}") from exc

        if ret is None:
            raise _response_error("stat object", info)
        return dict(ret)


class QiniuFormUploader:
    """Form upload through the SDK's ``FormUploader``.

    The SDK uploader is built once per client, so transport settings stay per
    instance instead of coming from the SDK's process-global default zone.
    """

    def __init__(
        self,
        *,
        endpoints: Endpoints | None = None,
        scheme: str = "http",
        accelerate_uploading: bool = False,
    ) -> None:
        self.endpoints = endpoints
        self.scheme = scheme
        # A zone already resolves to the CDN upload hosts when acceleration is on.
        self.accelerate_uploading = accelerate_uploading and endpoints is None
        regions = [build_zone(endpoints)] if endpoints is not None else None
        self._uploader = self._build_uploader(
            regions, scheme, self.accelerate_uploading
        )

    @staticmethod
    def _build_uploader(
        regions: list[Any] | None, scheme: str, accelerate_uploading: bool
    ) -> Any:
        _import_qiniu()
        from qiniu.services.storage.uploaders import FormUploader

        return FormUploader(
            None,
            regions=regions,
            accelerate_uploading=accelerate_uploading,
            preferred_scheme=scheme,
        )

    def put(
        self,
        *,
        token: str,
        key: str,
        stream: BinaryIO,
        size: int,
        params: Mapping[str, str],
    ) -> dict:
        """Upload ``size`` bytes from ``stream`` in a single form request."""
        data = stream.read(size)
        if len(data) != size:
            raise StorageError(
                f"Short read from upload stream: expected {size} bytes, got {len(data)}"
            )

        qiniu = _import_qiniu()
        try:
            ret, info = self._uploader.upload(
                key=key,
                data=io.BytesIO(data),
                data_size=size,
                mime_type=UPLOAD_MIME_TYPE,
                custom_vars=dict(params),
                up_token=token,
                bucket_name=qiniu.Auth.get_bucket_name(token),
            )
        except Exception as exc:
            raise StorageError(f"Failed to upload object: {exc}") from exc

        if ret is None:
            raise _response_error("upload object", info)
        return dict(ret)


class QiniuOperationManager:
    """Persistent-operation (pfop) submission and status query.

    Requests go to the zone's API host when one is configured and to the SDK's
    default API host, switched to the client's scheme, otherwise. They are
    signed with the SDK's QBox request auth.
    """

    def __init__(
        self,
        auth: Any,
        *,
        endpoints: Endpoints | None = None,
        scheme: str = "http",
    ) -> None:
        self.endpoints = endpoints
        self._request_auth = self._build_request_auth(auth)
        self._api_host = self._resolve_api_host(endpoints, scheme)
        self._session = self._build_session()

    @staticmethod
    def _build_request_auth(auth: Any) -> Any:
        _import_qiniu()
        from qiniu.auth import RequestsAuth

        return RequestsAuth(auth)

    @staticmethod
    def _resolve_api_host(endpoints: Endpoints | None, scheme: str) -> str:
        if endpoints is not None and endpoints.api_host:
            return endpoints.api_host.rstrip("/")
        qiniu = _import_qiniu()
        default_host = str(qiniu.config.get_default("default_api_host"))
        host = default_host.rpartition("://")[2].rstrip("/")
        return f"{scheme}://{host}"

    @staticmethod
    def _build_session() -> "requests.Session":
        import requests

        return requests.Session()

    @property
    def api_host(self) -> str:
        return self._api_host

    def _call(self, action: str, method: str, path: str, **kwargs: Any) -> dict:
        url = f"{self._api_host}{path}"
        try:
            response = self._session.request(
                method, url, auth=self._request_auth, **kwargs
            )
        except Exception as exc:
            raise StorageError(f"Failed to {action}: {exc}") from exc

        request_id = response.headers.get("X-Reqid")
        try:
            body = response.json()
        except ValueError:
            body = {}
        if response.status_code != 200:
            detail = body.get("error") if isinstance(body, dict) else None
            raise StorageError(
                f"Failed to {action}: {detail or f'status {response.status_code}'}",
                status_code=response.status_code,
                request_id=request_id,
            )
        if not isinstance(body, dict):
            raise StorageError(f"Failed to {action}: unexpected response body")
        return body

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
        """Submit a processing job."""
        data = {"bucket": bucket, "key": key, "fops": fops}
        if pipeline:
            data["pipeline"] = pipeline
        if notify_url:
            data["notifyURL"] = notify_url
        if force:
            data["force"] = "1"

        body = self._call("submit persistent operation", "POST", "/pfop/", data=data)
        persistent_id = body.get("persistentId")
        if not persistent_id:
            raise StorageError("Pfop response missing persistentId")
        return str(persistent_id)

    def prefop(self, persistent_id: str) -> PrefopStatus:
        """Query a processing job's status."""
        body = self._call(
            "query persistent operation",
            "GET",
            "/status/get/prefop",
            params={"id": persistent_id},
        )
        try:
            items = tuple(
                PrefopItem(
                    code=int(item.get("code", 0)),
                    desc=item.get("desc") or "",
                    key=item.get("key") or "",
                    cmd=item.get("cmd") or "",
                    error=item.get("error") or "",
                )
                for item in body.get("items") or ()
            )
            return PrefopStatus(
                id=str(body.get("id") or persistent_id),
                code=int(body.get("code", 0)),
                desc=body.get("desc") or "",
                items=items,
            )
        except (AttributeError, TypeError, ValueError) as exc:
            raise StorageError(f"Malformed prefop response: {exc!r}") from exc
