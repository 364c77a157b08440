"""Tests for the Kodo client facade."""

from __future__ import annotations

import io
import json
import time
from datetime import timedelta
from unittest.mock import MagicMock
from urllib.parse import parse_qs, urlsplit

import pytest
import requests

from kodo.common.config import Settings, ZoneConf
from kodo.infra.storage.client import PrefopItem, StorageError
from kodo.infra.storage.qiniu_client import QiniuSigner, build_auth
from kodo.services import client as client_module
from kodo.services.base import (
    ClientNotConfiguredError,
    ClientNotInitializedError,
    MissingFopsError,
)
from kodo.services.client import (
    DEFAULT_RETURN_BODY,
    Client,
    ClientOptions,
    FopOptions,
    ListOptions,
    WriteOptions,
    get_default_client,
)
from tests.services.mock_storage import (
    MockBucketManager,
    MockOperationManager,
    MockSigner,
    MockUploader,
)


@pytest.fixture()
def bucket_manager():
    return MockBucketManager(keys=[f"videos/{i:02d}.mp4" for i in range(12)])


@pytest.fixture()
def uploader():
    return MockUploader()


@pytest.fixture()
def operation_manager():
    return MockOperationManager()


@pytest.fixture()
def signer():
    return MockSigner()


@pytest.fixture()
def client(bucket_manager, uploader, operation_manager, signer):
    return Client(
        "test-ak",
        "test-sk",
        "test-bucket",
        "https://cdn.example.com",
        bucket_manager=bucket_manager,
        uploader=uploader,
        operation_manager=operation_manager,
        signer=signer,
    )


class TestWriter:
    def test_push_returns_state_from_return_body(self, client, uploader):
        state = client.push("docs/a.txt", b"hello", overwrite=False)

        assert state.key == "docs/a.txt"
        assert state.hash == "etag-5"
        assert state.fsize == "5"
        assert state.bucket == "test-bucket"
        assert state.name == "docs/a.txt"
        assert uploader.uploads[0]["data"] == b"hello"
        assert uploader.uploads[0]["token"] == "token-1"

    def test_writer_reads_exact_size(self, client, uploader):
        client.writer("a.bin", io.BytesIO(b"0123456789"), 4, overwrite=False)

        assert uploader.uploads[0]["data"] == b"0123"
        assert uploader.uploads[0]["size"] == 4

    @pytest.mark.parametrize(
        "options",
        [WriteOptions(pipeline="video-pipe"), WriteOptions(fops="avthumb/mp4")],
    )
    def test_lone_pipeline_or_fops_is_rejected(self, client, uploader, signer, options):
        with pytest.raises(MissingFopsError, match="should not be empty"):
            client.push("a.mp4", b"data", overwrite=True, options=options)

        assert uploader.uploads == []
        assert signer.policies == []

    def test_overwrite_binds_scope_to_key(self, client, signer):
        client.push("a.txt", b"x", overwrite=True)
        client.push("a.txt", b"x", overwrite=False)

        assert signer.policies[0].scope == "test-bucket:a.txt"
        assert signer.policies[1].scope == "test-bucket"

    def test_default_policy(self, client, signer):
        client.push("a.txt", b"x", overwrite=False)

        policy = signer.policies[0]
        assert policy.return_body == DEFAULT_RETURN_BODY
        assert policy.callback_body == ""
        assert policy.callback_url == ""
        assert policy.persistent_ops == ""
        assert policy.persistent_pipeline == ""

    def test_default_return_body_is_unchanged(self):
        assert DEFAULT_RETURN_BODY == (
            '{"key":"$(key)","hash":"$(etag)","fsize":"$(fsize)",'
            '"bucket":"$(bucket)","name":"$(x:name)"}'
        )

    def test_full_options_reach_policy(self, client, signer, uploader):
        body = '{"key":"$(key)","name":"$(x:name)","user":"$(x:user)"}'
        options = WriteOptions(
            pipeline="video-pipe",
            fops="avthumb/mp4",
            extra_params={"x:user": "zihua"},
            return_body=body,
            callback_url="https://hooks.example.com/kodo",
        )

        client.push("a.mov", b"x", overwrite=True, options=options)

        policy = signer.policies[0]
        assert policy.persistent_pipeline == "video-pipe"
        assert policy.persistent_ops == "avthumb/mp4"
        assert policy.return_body == body
        assert policy.callback_body == body
        assert policy.callback_url == "https://hooks.example.com/kodo"
        assert uploader.uploads[0]["params"] == {"x:user": "zihua", "x:name": "a.mov"}

    def test_extra_params_are_not_mutated(self, client):
        extra = {"x:user": "zihua"}

        client.push("a.txt", b"x", overwrite=False, options=WriteOptions(extra_params=extra))

        assert extra == {"x:user": "zihua"}

    def test_upload_errors_propagate(self, client, uploader):
        uploader.error = StorageError("Failed to upload object: bad token", status_code=401)

        with pytest.raises(StorageError, match="bad token") as excinfo:
            client.push("a.txt", b"x", overwrite=False)

        assert excinfo.value.status_code == 401


class TestKeyList:
    def test_lists_all_keys_by_default(self, client, bucket_manager):
        keys, marker = client.key_list("videos/")

        assert keys == bucket_manager.keys
        assert marker == ""
        assert bucket_manager.list_calls[0]["limit"] == 1000
        assert bucket_manager.list_calls[0]["marker"] == ""
        assert bucket_manager.list_calls[0]["delimiter"] == ""

    def test_stops_at_max_keys_with_next_page_marker(self, client, bucket_manager):
        keys, marker = client.key_list("videos/", ListOptions(max_keys=5, limit=2))

        assert keys == bucket_manager.keys[:5]
        assert marker == "6"
        assert len(bucket_manager.list_calls) == 3

    def test_follows_pages_until_exhausted(self, client, bucket_manager):
        keys, marker = client.key_list("videos/", ListOptions(limit=5))

        assert len(keys) == 12
        assert marker == ""
        assert [call["marker"] for call in bucket_manager.list_calls] == ["", "5", "10"]

    def test_resumes_from_marker(self, client):
        keys, _ = client.key_list("videos/", ListOptions(limit=4, marker="8"))

        assert keys == [f"videos/{i:02d}.mp4" for i in range(8, 12)]

    def test_error_truncates_silently(self, client, bucket_manager):
        bucket_manager.fail_after_calls = 1

        keys, marker = client.key_list("videos/", ListOptions(limit=3))

        assert keys == bucket_manager.keys[:3]
        assert marker == "3"

    def test_error_on_first_page_returns_start_marker(self, client, bucket_manager):
        bucket_manager.fail_after_calls = 0

        keys, marker = client.key_list("videos/", ListOptions(marker="4"))

        assert keys == []
        assert marker == "4"

    def test_truncation_is_logged(self, client, bucket_manager, caplog):
        bucket_manager.fail_after_calls = 1

        with caplog.at_level("WARNING", logger="kodo.client"):
            client.key_list("videos/", ListOptions(limit=3))

        assert "key_list_truncated" in caplog.text

    def test_single_key(self, client, bucket_manager):
        keys, _ = client.key_list("videos/", ListOptions(max_keys=1, limit=5))

        assert keys == bucket_manager.keys[:1]

    @pytest.mark.parametrize("max_keys", [0, -1])
    def test_max_keys_below_one_is_rejected(self, max_keys):
        with pytest.raises(ValueError, match="max_keys must be at least 1"):
            ListOptions(max_keys=max_keys)

    def test_passes_prefix_and_delimiter(self, client, bucket_manager):
        client.key_list("videos/0", ListOptions(delimiter="/"))

        call = bucket_manager.list_calls[0]
        assert call["bucket"] == "test-bucket"
        assert call["prefix"] == "videos/0"
        assert call["delimiter"] == "/"


class TestKeyExist:
    def test_existing_key(self, client):
        assert client.key_exist("videos/00.mp4") is True

    def test_missing_key(self, client):
        assert client.key_exist("videos/missing.mp4") is False

    def test_transport_failure_reads_as_missing(self, client, bucket_manager):
        bucket_manager.stat_errors["videos/00.mp4"] = StorageError(
            "Failed to stat object: timed out", status_code=-1
        )

        assert client.key_exist("videos/00.mp4") is False


class TestSignedUrls:
    def test_url_for_uses_client_domain(self, client):
        url = client.url_for("docs/a b.txt")

        assert url.startswith("https://cdn.example.com/docs/a%20b.txt?")
        assert "expires_in=3600" in url

    def test_key_url_overrides_domain(self, client):
        url = client.key_url("https://other.example.com/", "docs/a.txt")

        assert url.startswith("https://other.example.com/docs/a.txt?")

    def test_domain_without_scheme_gets_client_scheme(self, client):
        url = client.key_url("other.example.com", "a.txt")

        assert url.startswith("http://other.example.com/a.txt?")

    def test_real_signature_expires_in_an_hour(self, bucket_manager, uploader, operation_manager):
        client = Client(
            "test-ak",
            "test-sk",
            "test-bucket",
            "https://cdn.example.com",
            bucket_manager=bucket_manager,
            uploader=uploader,
            operation_manager=operation_manager,
            signer=QiniuSigner(build_auth("test-ak", "test-sk")),
        )

        before = int(time.time())
        url = client.url_for("docs/a.txt")
        after = int(time.time())

        parts = urlsplit(url)
        query = parse_qs(parts.query)
        assert parts.netloc == "cdn.example.com"
        assert parts.path == "/docs/a.txt"
        assert before + 3600 <= int(query["e"][0]) <= after + 3600
        assert query["token"][0].startswith("test-ak:")


class TestFop:
    def test_defaults(self, client, operation_manager):
        persistent_id = client.fop("a.mov", "avthumb/mp4", "video-pipe")

        assert persistent_id == "z0.job-1"
        assert operation_manager.submissions[0] == {
            "bucket": "test-bucket",
            "key": "a.mov",
            "fops": "avthumb/mp4",
            "pipeline": "video-pipe",
            "notify_url": "",
            "force": True,
        }

    def test_options(self, client, operation_manager):
        client.fop(
            "a.mov",
            "avthumb/mp4",
            "video-pipe",
            FopOptions(notify_url="https://hooks.example.com/fop", force=False),
        )

        submission = operation_manager.submissions[0]
        assert submission["notify_url"] == "https://hooks.example.com/fop"
        assert submission["force"] is False

    def test_prefop_reshapes_status(self, client, operation_manager):
        operation_manager.add_status(
            "z0.job-1",
            PrefopItem(code=0, desc="ok", key="a.mp4", cmd="avthumb/mp4"),
            PrefopItem(code=3, desc="failed", cmd="vframe/jpg", error="bad offset"),
            code=3,
        )

        state = client.prefop("z0.job-1")

        assert state.id == "z0.job-1"
        assert state.code == 3
        assert [r.res_key for r in state.res] == ["a.mp4", ""]
        assert state.res[1].cmd == "vframe/jpg"
        assert state.res[1].err == "bad offset"
        assert state.res[1].code == 3

    def test_prefop_errors_propagate(self, client):
        with pytest.raises(StorageError, match="no such persistent id"):
            client.prefop("z0.unknown")


class TestConstruction:
    def test_defaults(self, client):
        assert client.bucket == "test-bucket"
        assert client.options == ClientOptions()
        assert client.endpoints is None

    def test_zone_routes_every_manager(self, monkeypatch):
        built = {}

        def fake_zone(endpoints):
            built.setdefault("zones", []).append(endpoints)
            return object()

        monkeypatch.setattr(
            "kodo.infra.storage.qiniu_client.build_zone", fake_zone
        )
        monkeypatch.setattr(
            "kodo.infra.storage.qiniu_client.QiniuBucketManager._build_manager",
            staticmethod(
                lambda auth, endpoints, scheme: built.setdefault(
                    "bucket", (endpoints, scheme)
                )
            ),
        )
        zone = ZoneConf(
            src_up_hosts=["up.private.local"],
            cdn_up_hosts=["cdn-up.private.local"],
            rs_host="rs.private.local",
            rsf_host="rsf.private.local",
            api_host="api.private.local",
            io_vip_host="io.private.local",
        )

        client = Client(
            "ak", "sk", "bucket", "dl.private.local",
            ClientOptions(use_https=True, use_cdn=True, zone=zone),
        )

        endpoints = client.endpoints
        assert endpoints.up_hosts == ("https://cdn-up.private.local",)
        assert endpoints.rsf_host == "https://rsf.private.local"
        assert built["bucket"] == (endpoints, "https")
        assert built["zones"] == [endpoints]
        assert client.uploader.endpoints is endpoints
        assert client.uploader.scheme == "https"
        assert client.uploader.accelerate_uploading is False
        assert client.operation_manager.api_host == "https://api.private.local"

    def test_https_without_zone(self):
        client = Client(
            "ak", "sk", "bucket", "dl.example.com", ClientOptions(use_https=True)
        )

        assert client.endpoints is None
        assert client.bucket_manager.scheme == "https"
        assert client.bucket_manager._manager.preferred_scheme == "https"
        assert client.uploader.scheme == "https"
        assert client.uploader._uploader.preferred_scheme == "https"
        assert client.operation_manager.api_host.startswith("https://")

    def test_cdn_without_zone_accelerates_uploads(self):
        client = Client(
            "ak", "sk", "bucket", "dl.example.com", ClientOptions(use_cdn=True)
        )

        assert client.uploader.accelerate_uploading is True
        assert client.uploader._uploader.accelerate_uploading is True

    def test_plain_defaults(self):
        client = Client("ak", "sk", "bucket", "dl.example.com")

        assert client.bucket_manager.scheme == "http"
        assert client.uploader.accelerate_uploading is False
        assert client.operation_manager.api_host.startswith("http://")

    def test_from_settings(self, monkeypatch):
        monkeypatch.setattr(
            "kodo.infra.storage.qiniu_client.build_zone", lambda endpoints: object()
        )
        monkeypatch.setattr(
            "kodo.infra.storage.qiniu_client.QiniuBucketManager._build_manager",
            staticmethod(lambda auth, endpoints, scheme: MagicMock()),
        )
        settings = Settings(
            KODO_ACCESS_KEY="ak",
            KODO_SECRET_KEY="sk",
            KODO_BUCKET="bucket",
            KODO_DOMAIN="https://dl.example.com",
            KODO_USE_HTTPS=True,
            KODO_API_HOST="api.private.local",
        )

        client = Client.from_settings(settings)

        assert client.bucket == "bucket"
        assert client.domain == "https://dl.example.com"
        assert client.options.use_https is True
        assert client.options.zone.api_host == "api.private.local"

    def test_from_settings_requires_credentials(self):
        with pytest.raises(ClientNotConfiguredError, match="KODO_ACCESS_KEY"):
            Client.from_settings(Settings(KODO_BUCKET="bucket"))

    def test_from_settings_requires_bucket(self):
        with pytest.raises(ClientNotConfiguredError, match="KODO_BUCKET"):
            Client.from_settings(Settings(KODO_ACCESS_KEY="ak", KODO_SECRET_KEY="sk"))


class TestDefaultClient:
    def test_uninitialised(self, monkeypatch):
        monkeypatch.setattr(client_module, "_default_client", None)

        with pytest.raises(ClientNotInitializedError):
            get_default_client()

    def test_init_then_get(self, monkeypatch):
        monkeypatch.setattr(client_module, "_default_client", None)

        created = client_module.init_default_client("ak", "sk", "bucket", "dl.example.com")

        assert get_default_client() is created
        assert created.bucket == "bucket"

    def test_init_replaces_previous_client(self, monkeypatch):
        monkeypatch.setattr(client_module, "_default_client", None)

        client_module.init_default_client("ak", "sk", "first", "dl.example.com")
        second = client_module.init_default_client("ak", "sk", "second", "dl.example.com")

        assert get_default_client() is second
        assert not hasattr(client_module, "_default_client_lock")


class TestZoneRouting:
    """Requests made through the real SDK land on the configured zone hosts."""

    BODIES = {
        "/list": {"items": [{"key": "videos/a.mp4"}], "marker": ""},
        "/pfop/": {"persistentId": "z0.routed"},
        "/": {
            "key": "videos/a.mp4",
            "hash": "h",
            "fsize": "1",
            "bucket": "bucket",
            "name": "videos/a.mp4",
        },
    }

    @pytest.fixture()
    def sent(self, monkeypatch):
        sent = []

        def fake_send(session, request, **kwargs):
            sent.append(request)
            path = urlsplit(request.url).path
            if path.startswith("/stat/"):
                body = {"fsize": 1, "hash": "h"}
            else:
                body = self.BODIES.get(path, {})
            response = requests.Response()
            response.status_code = 200
            response._content = json.dumps(body).encode("utf-8")
            response.encoding = "utf-8"
            response.headers["Content-Type"] = "application/json"
            response.headers["X-Reqid"] = "req-routed"
            response.url = request.url
            response.request = request
            response.elapsed = timedelta(0)
            return response

        monkeypatch.setattr(requests.Session, "send", fake_send)
        return sent

    @pytest.fixture()
    def zoned_client(self):
        zone = ZoneConf(
            src_up_hosts=["up.private.local"],
            rs_host="rs.private.local",
            rsf_host="rsf.private.local",
            api_host="api.private.local",
            io_vip_host="io.private.local",
        )
        return Client(
            "ak", "sk", "bucket", "dl.private.local", ClientOptions(zone=zone)
        )

    def test_every_call_uses_zone_hosts(self, zoned_client, sent):
        keys, marker = zoned_client.key_list("videos/")
        exists = zoned_client.key_exist("videos/a.mp4")
        state = zoned_client.push("videos/a.mp4", b"x", overwrite=True)
        persistent_id = zoned_client.fop("videos/a.mp4", "avthumb/mp4", "pipe")

        assert keys == ["videos/a.mp4"]
        assert marker == ""
        assert exists is True
        assert state.key == "videos/a.mp4"
        assert persistent_id == "z0.routed"

        urls = [request.url for request in sent]
        assert urls[0].startswith("http://rsf.private.local/list")
        assert urls[1].startswith("http://rs.private.local/stat/")
        assert urls[2].startswith("http://up.private.local/")
        assert urls[3] == "http://api.private.local/pfop/"
        assert len(urls) == 4
