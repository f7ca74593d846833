"""
Object store client for proof artwork.

This module provides functionality for:
- Uploading artwork bytes to the remote media store (multipart POST with an
  upload preset, searchable context and classification tags)
- Uploading to S3 as an alternative backend
- Reporting monotonically increasing upload progress
- Aborting an in-flight upload through a cancellation token
- Building optimized / resized retrieval URLs for display

The store owns the bytes; callers keep only the returned public id and URL.
"""

from __future__ import annotations

import io
import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional
from urllib.parse import quote, urlencode
from uuid import uuid4

import boto3
import httpx
from botocore.exceptions import BotoCoreError, ClientError
from omegaconf import DictConfig

from .errors import TransportError, UploadCancelled
from .models import StoredObject, UploadProgress
from .utils import sanitize_label, split_extension, utcnow
from .validation import is_design_file

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[UploadProgress], None]

MEDIA_UPLOAD_SEGMENT = "/image/upload/"
OPTIMIZED_TRANSFORM = "f_auto,q_auto"


class CancellationToken:
    """Thread-safe flag shared between an upload task and whoever may cancel it."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise UploadCancelled("Upload cancelled")


class ProgressTracker:
    """
    Turns byte counts into percentage callbacks.

    Percentages never decrease and 100 is emitted exactly once, by ``finish``.
    Every update also checks the cancellation token, so a cancelled upload
    stops at the next chunk boundary.
    """

    def __init__(
        self,
        total: int,
        on_progress: Optional[ProgressCallback] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> None:
        self.total = max(total, 1)
        self.loaded = 0
        self.on_progress = on_progress
        self.cancel_token = cancel_token
        self._last_percentage = -1
        self._lock = threading.Lock()

    def advance(self, amount: int) -> None:
        if self.cancel_token is not None:
            self.cancel_token.raise_if_cancelled()
        with self._lock:
            self.loaded = min(self.loaded + amount, self.total)
            # 100 is reserved for finish(); the store has not answered yet
            percentage = min(int(self.loaded * 100 / self.total), 99)
            if percentage <= self._last_percentage:
                return
            self._last_percentage = percentage
        self._emit(percentage)

    def finish(self) -> None:
        with self._lock:
            if self._last_percentage >= 100:
                return
            self.loaded = self.total
            self._last_percentage = 100
        self._emit(100)

    def _emit(self, percentage: int) -> None:
        if self.on_progress is not None:
            self.on_progress(UploadProgress(loaded=self.loaded, total=self.total, percentage=percentage))


def build_context(metadata: Optional[Mapping[str, Any]]) -> str:
    """
    Encode metadata as searchable context: ``key=value`` pairs joined by ``|``.

    Empty values are dropped, values are URL-encoded and a ``timestamp`` is
    always added.
    """
    enriched: Dict[str, Any] = {**(metadata or {}), "timestamp": utcnow().isoformat()}
    pairs = [
        f"{key}={quote(str(value), safe='')}"
        for key, value in enriched.items()
        if value is not None and value != ""
    ]
    return "|".join(pairs)


def build_tags(metadata: Optional[Mapping[str, Any]]) -> List[str]:
    """Classification tags used to filter uploads in the media store."""
    metadata = metadata or {}
    tags = ["sticker-orders"]
    for key in ("selectedCut", "selectedMaterial"):
        value = metadata.get(key)
        if value:
            tags.append(sanitize_label(str(value), fallback=""))
    tags.append("rush-order" if metadata.get("rushOrder") else "standard-order")
    tags.append("with-proof" if metadata.get("sendProof") else "no-proof")
    return [tag for tag in tags if tag]


class ObjectStoreClient(ABC):
    """Uploads a blob and returns a stable identifier and retrieval URL."""

    @abstractmethod
    def upload(
        self,
        data: bytes,
        filename: str,
        content_type: Optional[str] = None,
        metadata: Optional[Mapping[str, Any]] = None,
        on_progress: Optional[ProgressCallback] = None,
        cancel_token: Optional[CancellationToken] = None,
        folder: Optional[str] = None,
    ) -> StoredObject:
        """
        Upload ``data`` to the store.

        Raises:
            UploadCancelled: If ``cancel_token`` is set before the store confirms the upload
            TransportError: If the store is unreachable or rejects the upload
        """


class MediaApiStore(ObjectStoreClient):
    """Client for the hosted media store's unsigned upload endpoint."""

    def __init__(
        self,
        cloud_name: str,
        upload_preset: str,
        api_base: str = "https://api.cloudinary.com/v1_1",
        resource_type: str = "image",
        timeout_seconds: float = 120.0,
        chunk_size: int = 64 * 1024,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.cloud_name = cloud_name
        self.upload_preset = upload_preset
        self.api_base = api_base.rstrip("/")
        self.resource_type = resource_type
        self.chunk_size = chunk_size
        self._client = client or httpx.Client(timeout=timeout_seconds)

    @property
    def upload_url(self) -> str:
        return f"{self.api_base}/{self.cloud_name}/{self.resource_type}/upload"

    def _build_fields(self, metadata: Optional[Mapping[str, Any]], folder: Optional[str]) -> Dict[str, str]:
        fields = {"upload_preset": self.upload_preset}
        if folder:
            fields["folder"] = folder
        if metadata:
            context = build_context(metadata)
            if context:
                fields["context"] = context
            fields["tags"] = ",".join(build_tags(metadata))
        return fields

    def _iter_body(self, body: bytes, tracker: ProgressTracker) -> Iterator[bytes]:
        for offset in range(0, len(body), self.chunk_size):
            chunk = body[offset : offset + self.chunk_size]
            tracker.advance(len(chunk))
            yield chunk

    def upload(
        self,
        data: bytes,
        filename: str,
        content_type: Optional[str] = None,
        metadata: Optional[Mapping[str, Any]] = None,
        on_progress: Optional[ProgressCallback] = None,
        cancel_token: Optional[CancellationToken] = None,
        folder: Optional[str] = None,
    ) -> StoredObject:
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()

        # Encode the multipart body once so it can be streamed in chunks for progress reporting
        prepared = self._client.build_request(
            "POST",
            self.upload_url,
            data=self._build_fields(metadata, folder),
            files={"file": (filename, data, content_type or "application/octet-stream")},
        )
        body = prepared.read()
        tracker = ProgressTracker(len(body), on_progress, cancel_token)
        request = self._client.build_request(
            "POST",
            self.upload_url,
            content=self._iter_body(body, tracker),
            headers={"Content-Type": prepared.headers["Content-Type"], "Content-Length": str(len(body))},
        )

        logger.info(f"Uploading {filename} ({len(data)} bytes) to {self.upload_url}")
        try:
            response = self._client.send(request)
        except UploadCancelled:
            logger.info(f"Upload of {filename} cancelled mid-flight")
            raise
        except httpx.HTTPError as exc:
            logger.error(f"Network error uploading {filename}: {exc}")
            raise TransportError(f"Network error during upload: {exc}", original_error=exc) from exc

        if cancel_token is not None:
            cancel_token.raise_if_cancelled()

        if not response.is_success:
            logger.error(f"Upload of {filename} failed with status {response.status_code}: {response.text}")
            raise TransportError(
                f"Upload failed with status {response.status_code}: {response.text}",
                status_code=response.status_code,
            )

        try:
            result = response.json()
        except ValueError as exc:
            raise TransportError("Upload response was not valid JSON", original_error=exc, status_code=response.status_code) from exc

        tracker.finish()
        stem, extension = split_extension(filename)
        stored = StoredObject(
            public_id=result["public_id"],
            url=result["secure_url"],
            bytes=result.get("bytes", len(data)),
            format=result.get("format") or extension,
            original_filename=result.get("original_filename") or stem,
            width=result.get("width"),
            height=result.get("height"),
        )
        logger.info(f"Upload successful: {stored.public_id}")
        return stored


class S3Store(ObjectStoreClient):
    """
    S3-backed object store.

    Context and tags are attached as object metadata and object tagging; the
    returned URL is a presigned GET valid for ``url_expiration_seconds``.
    """

    def __init__(
        self,
        bucket: str,
        prefix: str = "proofs",
        url_expiration_seconds: int = 7 * 24 * 3600,
        client: Any = None,
    ) -> None:
        self.bucket = bucket
        self.prefix = prefix.strip("/")
        self.url_expiration_seconds = url_expiration_seconds
        self._client = client

    def _get_client(self):
        """Create the boto3 client lazily; credential errors surface on the first upload."""
        if self._client is None:
            self._client = boto3.client("s3")
        return self._client

    def _object_key(self, filename: str, folder: Optional[str]) -> str:
        stem, extension = split_extension(filename)
        safe_name = sanitize_label(stem, fallback="artwork")
        parts = [self.prefix, folder or "", f"{uuid4().hex[:12]}-{safe_name}"]
        key = "/".join(part.strip("/") for part in parts if part)
        return f"{key}.{extension}" if extension else key

    def upload(
        self,
        data: bytes,
        filename: str,
        content_type: Optional[str] = None,
        metadata: Optional[Mapping[str, Any]] = None,
        on_progress: Optional[ProgressCallback] = None,
        cancel_token: Optional[CancellationToken] = None,
        folder: Optional[str] = None,
    ) -> StoredObject:
        if not self.bucket:
            raise TransportError("S3 bucket is not configured")
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()

        client = self._get_client()
        key = self._object_key(filename, folder)
        tracker = ProgressTracker(len(data), on_progress, cancel_token)
        extra_args: Dict[str, Any] = {"ContentType": content_type or "application/octet-stream"}
        if metadata:
            extra_args["Metadata"] = {"context": build_context(metadata)}
            extra_args["Tagging"] = urlencode({tag: "true" for tag in build_tags(metadata)})

        logger.info(f"Uploading {filename} to s3://{self.bucket}/{key}")
        try:
            client.upload_fileobj(io.BytesIO(data), self.bucket, key, ExtraArgs=extra_args, Callback=tracker.advance)
            url = client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": key},
                ExpiresIn=self.url_expiration_seconds,
            )
        except UploadCancelled:
            logger.info(f"Upload of {filename} cancelled mid-flight")
            raise
        except (ClientError, BotoCoreError) as exc:
            if cancel_token is not None and cancel_token.cancelled:
                raise UploadCancelled("Upload cancelled", original_error=exc) from exc
            logger.error(f"S3 upload failed: {exc}")
            raise TransportError(f"S3 upload failed: {exc}", original_error=exc) from exc

        if cancel_token is not None:
            cancel_token.raise_if_cancelled()

        tracker.finish()
        stem, extension = split_extension(filename)
        logger.info(f"Upload successful: s3://{self.bucket}/{key}")
        return StoredObject(public_id=key, url=url, bytes=len(data), format=extension, original_filename=stem)


def build_object_store(config: DictConfig) -> ObjectStoreClient:
    storage = config.storage
    if storage.backend == "s3":
        return S3Store(
            bucket=storage.s3.bucket,
            prefix=storage.s3.prefix,
            url_expiration_seconds=int(storage.s3.url_expiration_seconds),
        )
    if storage.backend == "media_api":
        media = storage.media_api
        return MediaApiStore(
            cloud_name=media.cloud_name,
            upload_preset=media.upload_preset,
            api_base=media.api_base,
            resource_type=media.resource_type,
            timeout_seconds=float(media.timeout_seconds),
            chunk_size=int(media.chunk_size),
        )
    raise ValueError(f"Unknown storage backend: {storage.backend}")


def optimized_url(url: str) -> str:
    """Insert the automatic format/quality transform into a media store URL."""
    if not url or MEDIA_UPLOAD_SEGMENT not in url:
        return url or ""
    if f"{MEDIA_UPLOAD_SEGMENT}{OPTIMIZED_TRANSFORM}/" in url:
        return url
    return url.replace(MEDIA_UPLOAD_SEGMENT, f"{MEDIA_UPLOAD_SEGMENT}{OPTIMIZED_TRANSFORM}/", 1)


def display_url(
    url: str,
    width: int = 400,
    height: int = 300,
    crop: str = "limit",
    format: str = "auto",
    quality: str = "auto",
) -> str:
    """
    Build a web-displayable rendition of any stored file.

    The media store converts AI, EPS, PSD and PDF uploads to raster images when
    a transform segment is present. URLs from other stores are returned as is.
    """
    if not url or "cloudinary.com" not in url or MEDIA_UPLOAD_SEGMENT not in url:
        return url or ""
    transforms = ",".join([f"w_{width}", f"h_{height}", f"c_{crop}", f"f_{format}", f"q_{quality}"])
    return url.replace(MEDIA_UPLOAD_SEGMENT, f"{MEDIA_UPLOAD_SEGMENT}{transforms}/", 1)


def thumbnail_url(url: str) -> str:
    return display_url(url, width=150, height=150, crop="fill")


def preview_url(url: str) -> str:
    return display_url(url, width=800, height=600, crop="limit")


def display_url_for(url: str, filename: str) -> str:
    """Design files always go through conversion; plain images only get the optimized transform."""
    if not url:
        return ""
    if is_design_file(filename):
        return display_url(url)
    return optimized_url(url)
