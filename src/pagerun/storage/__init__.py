"""Blob storage backends implementing the screenshot upload contract."""

from pagerun.storage.blob import BlobStore, GCSBlobStore, LocalBlobStore, build_blob_store

__all__ = ["BlobStore", "GCSBlobStore", "LocalBlobStore", "build_blob_store"]
