"""Blob storage for captured images.

The interpreter only relies on the upload contract::

    url = await store.upload(data, path_hint)

Two backends are provided:

* ``local`` — bytes are written under a root directory; the returned URL is
  ``{public_base_url}/{path_hint}`` when a base URL is configured, otherwise
  a ``file://`` URI.
* ``gcs`` — bytes are uploaded to a Google Cloud Storage bucket and the
  public object URL is returned.

Any backend failure is raised as :class:`~pagerun.exceptions.UploadError`.
"""

from __future__ import annotations

import asyncio
import logging
import mimetypes
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from pagerun.exceptions import UploadError

if TYPE_CHECKING:
    from google.cloud.storage import Bucket, Client

    from pagerun.settings import Settings

logger = logging.getLogger(__name__)


@runtime_checkable
class BlobStore(Protocol):
    """Upload contract used by screenshot steps."""

    async def upload(self, data: bytes, path_hint: str) -> str:
        """Store *data* and return a URL that references it."""
        ...


def _clean_key(path_hint: str) -> str:
    """Normalise a path hint into a relative object key without ``..`` parts."""
    parts = [p for p in PurePosixPath(path_hint.replace("\\", "/")).parts if p not in ("", "/", ".", "..")]
    if not parts:
        raise UploadError(f"Invalid blob path: {path_hint!r}")
    return "/".join(parts)


class LocalBlobStore:
    """Write blobs to the local filesystem.

    Args:
        root_dir: Directory that receives the files.
        public_base_url: Optional URL prefix under which *root_dir* is served.
    """

    def __init__(self, root_dir: Path | str, *, public_base_url: str = "") -> None:
        self.root_dir = Path(root_dir)
        self.public_base_url = public_base_url.rstrip("/")

    async def upload(self, data: bytes, path_hint: str) -> str:
        """Write *data* under ``root_dir/path_hint`` and return its URL."""
        key = _clean_key(path_hint)
        target = self.root_dir / key
        try:
            await asyncio.to_thread(self._write, target, data)
        except OSError as exc:
            raise UploadError(f"Failed to write {key}: {exc}") from exc

        url = f"{self.public_base_url}/{key}" if self.public_base_url else target.resolve().as_uri()
        logger.info("Stored blob %s (%d bytes) -> %s", key, len(data), url)
        return url

    @staticmethod
    def _write(target: Path, data: bytes) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)


class GCSBlobStore:
    """Upload blobs to a Google Cloud Storage bucket.

    Args:
        bucket: Bucket name.
        prefix: Key prefix inside the bucket.
        public_base_url: URL prefix for returned links; defaults to
            ``https://storage.googleapis.com/<bucket>``.
    """

    def __init__(self, bucket: str, *, prefix: str = "", public_base_url: str = "") -> None:
        if not bucket:
            raise ValueError("GCSBlobStore requires a bucket name")
        self.bucket_name = bucket
        self.prefix = prefix.strip("/")
        self.public_base_url = (public_base_url or f"https://storage.googleapis.com/{bucket}").rstrip("/")

        self._client: Client | None = None
        self._bucket: Bucket | None = None

    async def upload(self, data: bytes, path_hint: str) -> str:
        """Upload *data* to ``prefix/path_hint`` and return the public URL."""
        key = _clean_key(f"{self.prefix}/{path_hint}" if self.prefix else path_hint)
        content_type, _ = mimetypes.guess_type(key)
        try:
            await asyncio.to_thread(self._upload_sync, key, data, content_type or "application/octet-stream")
        except UploadError:
            raise
        except Exception as exc:
            logger.error("GCS upload failed for %s: %s", key, exc)
            raise UploadError(f"Failed to upload {key} to gs://{self.bucket_name}") from exc

        url = f"{self.public_base_url}/{key}"
        logger.info("Uploaded blob %s (%d bytes) -> %s", key, len(data), url)
        return url

    # ------------------------------------------------------------------
    # GCS internals
    # ------------------------------------------------------------------

    def _get_bucket(self) -> "Bucket":
        """Lazily initialise the GCS client and bucket."""
        if self._bucket is None:
            from google.cloud.storage import Client

            self._client = Client()
            self._bucket = self._client.bucket(self.bucket_name)
        return self._bucket

    def _upload_sync(self, key: str, data: bytes, content_type: str) -> None:
        blob = self._get_bucket().blob(key)
        blob.upload_from_string(data, content_type=content_type)


def build_blob_store(settings: "Settings") -> BlobStore:
    """Factory: return the configured :class:`BlobStore`."""
    storage = settings.storage
    if storage.backend.lower() == "gcs":
        return GCSBlobStore(
            storage.gcs_bucket,
            prefix=storage.gcs_prefix,
            public_base_url=storage.public_base_url,
        )
    return LocalBlobStore(storage.local_dir, public_base_url=storage.public_base_url)
