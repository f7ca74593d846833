"""
Tests for the object store clients and URL helpers.

The media API client runs against httpx.MockTransport; the S3 client gets a
MagicMock in place of the boto3 client.
"""

from unittest.mock import MagicMock
from urllib.parse import unquote

import httpx
import pytest
from botocore.exceptions import ClientError

from proof_review_backend.errors import TransportError, UploadCancelled
from proof_review_backend.object_store import (
    CancellationToken,
    MediaApiStore,
    ProgressTracker,
    S3Store,
    build_context,
    build_tags,
    display_url,
    display_url_for,
    optimized_url,
    preview_url,
    thumbnail_url,
)

MEDIA_URL = "https://res.cloudinary.com/demo/image/upload/v1712/proofs/front.png"


def media_store(handler, chunk_size=1024):
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return MediaApiStore(cloud_name="demo", upload_preset="sticker-uploads", chunk_size=chunk_size, client=client)


def success_handler(captured):
    def handler(request):
        captured["url"] = str(request.url)
        captured["body"] = request.read()
        return httpx.Response(
            200,
            json={
                "public_id": "proofs/front",
                "secure_url": MEDIA_URL,
                "bytes": 4096,
                "format": "png",
                "original_filename": "front",
                "width": 800,
                "height": 600,
            },
        )

    return handler


class TestProgressTracker:
    """Tests for progress reporting."""

    def test_monotonic_and_single_hundred(self):
        seen = []
        tracker = ProgressTracker(1000, lambda progress: seen.append(progress.percentage))
        for _ in range(12):
            tracker.advance(100)
        tracker.finish()
        tracker.finish()

        assert seen == sorted(seen)
        assert seen.count(100) == 1
        assert seen[-1] == 100
        assert max(seen[:-1]) <= 99

    def test_cancelled_token_stops_progress(self):
        token = CancellationToken()
        tracker = ProgressTracker(100, cancel_token=token)
        token.cancel()
        with pytest.raises(UploadCancelled):
            tracker.advance(10)


class TestMediaApiStore:
    """Tests for the media API upload client."""

    def test_successful_upload(self):
        captured = {}
        progress = []
        store = media_store(success_handler(captured))

        stored = store.upload(
            b"x" * 4096,
            "front.png",
            content_type="image/png",
            metadata={"selectedCut": "Die Cut", "selectedMaterial": "Vinyl", "rushOrder": True},
            on_progress=lambda p: progress.append(p.percentage),
            folder="proofs",
        )

        assert captured["url"] == "https://api.cloudinary.com/v1_1/demo/image/upload"
        assert b"sticker-uploads" in captured["body"]
        assert b"proofs" in captured["body"]
        assert b"die-cut" in captured["body"]
        assert stored.public_id == "proofs/front"
        assert stored.url == MEDIA_URL
        assert (stored.width, stored.height) == (800, 600)
        assert progress[-1] == 100
        assert progress == sorted(progress)

    def test_rejected_upload_raises_transport_error(self):
        store = media_store(lambda request: httpx.Response(400, json={"error": {"message": "Invalid preset"}}))
        with pytest.raises(TransportError) as exc_info:
            store.upload(b"x" * 10, "front.png")
        assert exc_info.value.status_code == 400

    def test_network_error_raises_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(TransportError, match="Network error"):
            media_store(handler).upload(b"x" * 10, "front.png")

    def test_cancelled_before_start(self):
        calls = []
        token = CancellationToken()
        token.cancel()
        store = media_store(lambda request: calls.append(request) or httpx.Response(200, json={}))
        with pytest.raises(UploadCancelled):
            store.upload(b"x" * 10, "front.png", cancel_token=token)
        assert calls == []

    def test_cancelled_mid_upload(self):
        token = CancellationToken()

        def cancel_after_first_chunk(progress):
            token.cancel()

        def handler(request):
            request.read()
            return httpx.Response(200, json={"public_id": "p", "secure_url": MEDIA_URL})

        store = media_store(handler, chunk_size=512)
        with pytest.raises(UploadCancelled):
            store.upload(b"x" * 8192, "front.png", on_progress=cancel_after_first_chunk, cancel_token=token)


class TestS3Store:
    """Tests for the S3 backend."""

    def test_upload(self):
        client = MagicMock()
        client.generate_presigned_url.return_value = "https://bucket.s3.amazonaws.com/proofs/key?sig=1"
        store = S3Store(bucket="proof-bucket", prefix="proofs", client=client)

        stored = store.upload(b"x" * 100, "Front Art.PNG", content_type="image/png", metadata={"orderId": "order-1"}, folder="customer-files")

        args, kwargs = client.upload_fileobj.call_args
        assert args[1] == "proof-bucket"
        assert args[2].startswith("proofs/customer-files/")
        assert args[2].endswith("-front-art.png")
        assert kwargs["ExtraArgs"]["ContentType"] == "image/png"
        assert "orderId=order-1" in kwargs["ExtraArgs"]["Metadata"]["context"]
        assert stored.url.startswith("https://bucket.s3.amazonaws.com/")
        assert stored.public_id == args[2]

    def test_client_error_becomes_transport_error(self):
        client = MagicMock()
        client.upload_fileobj.side_effect = ClientError({"Error": {"Code": "AccessDenied", "Message": "denied"}}, "PutObject")
        store = S3Store(bucket="proof-bucket", client=client)
        with pytest.raises(TransportError, match="S3 upload failed"):
            store.upload(b"x", "front.png")

    def test_missing_bucket(self):
        with pytest.raises(TransportError, match="bucket"):
            S3Store(bucket="", client=MagicMock()).upload(b"x", "front.png")


class TestMetadata:
    """Tests for context and tag encoding."""

    def test_context_drops_empty_values_and_encodes(self):
        context = build_context({"orderId": "order 1", "notes": "", "cutLines": None})
        pairs = dict(pair.split("=", 1) for pair in context.split("|"))
        assert unquote(pairs["orderId"]) == "order 1"
        assert "notes" not in pairs
        assert "cutLines" not in pairs
        assert "timestamp" in pairs

    def test_tags(self):
        assert build_tags({"selectedCut": "Kiss Cut", "sendProof": True}) == [
            "sticker-orders",
            "kiss-cut",
            "standard-order",
            "with-proof",
        ]


class TestUrlHelpers:
    """Tests for retrieval URL transforms."""

    def test_optimized_url(self):
        assert optimized_url(MEDIA_URL) == "https://res.cloudinary.com/demo/image/upload/f_auto,q_auto/v1712/proofs/front.png"
        assert optimized_url(optimized_url(MEDIA_URL)) == optimized_url(MEDIA_URL)
        assert optimized_url("https://bucket.s3.amazonaws.com/x.png") == "https://bucket.s3.amazonaws.com/x.png"

    def test_display_sizes(self):
        assert "/upload/w_150,h_150,c_fill,f_auto,q_auto/" in thumbnail_url(MEDIA_URL)
        assert "/upload/w_800,h_600,c_limit,f_auto,q_auto/" in preview_url(MEDIA_URL)
        assert display_url("https://example.test/a.png") == "https://example.test/a.png"

    def test_design_files_are_converted(self):
        assert "/upload/w_400,h_300,c_limit" in display_url_for(MEDIA_URL.replace(".png", ".ai"), "logo.ai")
        assert "/upload/f_auto,q_auto/" in display_url_for(MEDIA_URL, "front.png")
