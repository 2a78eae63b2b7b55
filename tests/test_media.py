"""
Tests for the media store and inbound media mirroring.

Google Cloud Storage is replaced by in-memory stand-ins for the client,
bucket and blob objects; the provider by an httpx.MockTransport.

Tests cover:
- Deterministic storage keys
- Upload skipped for existing objects
- Storage failures surface as StorageFailure
- Inbound media stored with a signed URL, or without one on failure
- Provider downloads reject malformed media info and oversized bodies
"""

import asyncio

import httpx
import pytest
from conftest import webhook_body

from chatrelay.credentials import Credentials
from chatrelay.errors import StorageFailure
from chatrelay.main import app, get_media_store_dependency, get_whatsapp_transport
from chatrelay.media import MediaStore, extension_for, storage_key
from chatrelay.whatsapp import WhatsAppClient


class FakeBlob:
    def __init__(self, bucket, name):
        self.bucket = bucket
        self.name = name

    def exists(self):
        return self.name in self.bucket.objects

    def upload_from_string(self, content, content_type=None):
        if self.bucket.broken:
            raise ConnectionError("bucket unreachable")
        self.bucket.objects[self.name] = (content, content_type)
        self.bucket.uploads += 1

    def generate_signed_url(self, version, expiration, method):
        return f"https://storage.example.com/{self.bucket.name}/{self.name}?X-Goog-Expires={int(expiration.total_seconds())}"


class FakeBucket:
    def __init__(self, name, broken=False):
        self.name = name
        self.broken = broken
        self.objects = {}
        self.uploads = 0

    def blob(self, name):
        return FakeBlob(self, name)


class FakeStorageClient:
    def __init__(self, broken=False):
        self.buckets = {}
        self.broken = broken

    def bucket(self, name):
        return self.buckets.setdefault(name, FakeBucket(name, self.broken))


def provider_handler(request: httpx.Request) -> httpx.Response:
    if request.url.host == "graph.facebook.com":
        return httpx.Response(200, json={"url": "https://lookaside.example.com/MEDIA1", "mime_type": "image/jpeg"})
    return httpx.Response(200, content=b"\xff\xd8\xff jpeg bytes", headers={"Content-Type": "image/jpeg"})


def image_message() -> dict:
    return {
        "from": "15551234567",
        "id": "wamid.IMG",
        "timestamp": "1736935200",
        "type": "image",
        "image": {"id": "MEDIA1", "mime_type": "image/jpeg"},
    }


class TestStorageKey:

    def test_deterministic(self):
        key = storage_key("+15551234567", "MEDIA1", "image/jpeg")
        assert key == "15551234567/MEDIA1.jpg"
        assert storage_key("+15551234567", "MEDIA1", "image/jpeg") == key

    def test_unknown_mime_defaults_to_bin(self):
        assert extension_for("application/x-unknown") == "bin"
        assert extension_for(None) == "bin"
        assert extension_for("audio/ogg; codecs=opus") == "ogg"


class TestMediaStore:

    def test_store_and_sign(self):
        client = FakeStorageClient()
        store = MediaStore("media", 600, client=client)

        url = store.store("15551234567/MEDIA1.jpg", b"bytes", "image/jpeg")

        assert url.startswith("https://storage.example.com/media/15551234567/MEDIA1.jpg")
        assert "X-Goog-Expires=600" in url
        assert client.buckets["media"].objects["15551234567/MEDIA1.jpg"] == (b"bytes", "image/jpeg")

    def test_existing_object_not_reuploaded(self):
        client = FakeStorageClient()
        store = MediaStore("media", 600, client=client)

        store.store("k.jpg", b"bytes", "image/jpeg")
        store.store("k.jpg", b"bytes", "image/jpeg")

        assert client.buckets["media"].uploads == 1

    def test_failure_raises_storage_failure(self):
        store = MediaStore("media", 600, client=FakeStorageClient(broken=True))

        with pytest.raises(StorageFailure):
            store.store("k.jpg", b"bytes", "image/jpeg")


class TestInboundMediaMirroring:

    def test_mirrored_media_gets_signed_url(self, client, post_webhook, owner_headers):
        storage = FakeStorageClient()
        app.dependency_overrides[get_whatsapp_transport] = lambda: httpx.MockTransport(provider_handler)
        app.dependency_overrides[get_media_store_dependency] = lambda: MediaStore("media", 3600, client=storage)

        response = post_webhook(webhook_body(messages=[image_message()]))

        assert response.status_code == 200
        assert "15551234567/MEDIA1.jpg" in storage.buckets["media"].objects
        conversation = client.get("/conversations/+15551234567/messages", headers=owner_headers).json()
        payload = conversation["messages"][0]["payload"]
        assert payload["url"].startswith("https://storage.example.com/media/15551234567/MEDIA1.jpg")
        assert conversation["messages"][0]["content"] == "[Image]"

    def test_storage_failure_keeps_message(self, client, post_webhook, owner_headers):
        app.dependency_overrides[get_whatsapp_transport] = lambda: httpx.MockTransport(provider_handler)
        app.dependency_overrides[get_media_store_dependency] = lambda: MediaStore(
            "media", 3600, client=FakeStorageClient(broken=True)
        )

        response = post_webhook(webhook_body(messages=[image_message()]))

        assert response.status_code == 200
        conversation = client.get("/conversations/+15551234567/messages", headers=owner_headers).json()
        assert conversation["messages"][0]["payload"]["url"] is None

    def test_download_failure_keeps_message(self, client, post_webhook, owner_headers):
        app.dependency_overrides[get_whatsapp_transport] = lambda: httpx.MockTransport(
            lambda request: httpx.Response(404, text="not found")
        )
        app.dependency_overrides[get_media_store_dependency] = lambda: MediaStore(
            "media", 3600, client=FakeStorageClient()
        )

        response = post_webhook(webhook_body(messages=[image_message()]))

        assert response.status_code == 200
        conversation = client.get("/conversations/+15551234567/messages", headers=owner_headers).json()
        assert len(conversation["messages"]) == 1
        assert conversation["messages"][0]["payload"]["url"] is None


def _download(handler, max_bytes=1024):
    credentials = Credentials(
        owner_account_id="owner-account",
        access_token="test-token",
        phone_number_id="1098765432",
        api_version="v23.0",
        base_url="https://graph.facebook.com",
    )
    client = WhatsAppClient(credentials, 5.0, httpx.MockTransport(handler))
    return asyncio.run(client.download_media("MEDIA1", max_bytes))


class TestDownloadMedia:

    def test_download(self):
        content, mime_type = _download(provider_handler)

        assert content == b"\xff\xd8\xff jpeg bytes"
        assert mime_type == "image/jpeg"

    def test_non_object_info_raises_storage_failure(self):
        with pytest.raises(StorageFailure):
            _download(lambda request: httpx.Response(200, json=["not", "an", "object"]))

    def test_oversized_media_raises_storage_failure(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "graph.facebook.com":
                return httpx.Response(200, json={"url": "https://lookaside.example.com/MEDIA1"})
            return httpx.Response(200, content=b"x" * 2048, headers={"Content-Type": "image/jpeg"})

        with pytest.raises(StorageFailure):
            _download(handler, max_bytes=1024)
