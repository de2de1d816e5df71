"""Blob storage for prescription attachments."""

from meditrack.storage.blobs import BlobNotFoundError, BlobRef, BlobStore, LocalBlobStore

__all__ = ["BlobNotFoundError", "BlobRef", "BlobStore", "LocalBlobStore"]
