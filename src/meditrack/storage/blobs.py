"""Prescription file storage.

Files are written under the caller's hierarchical key (a profile's
``prescriptions/`` path) and handed back as a locator string that is stored
on the Medicine document, e.g.
``local://artifacts/app/users/u1/profiles/p1/prescriptions/1700000000000_rx.pdf``.

Nothing here is tied to the document store: deleting a medicine or a whole
profile leaves its files in place. ``delete`` exists for callers that clean
up by locator.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

LOCAL_SCHEME = "local"


class BlobNotFoundError(Exception):
    """Raised when a locator points at nothing."""

    def __init__(self, locator: str):
        self.locator = locator
        super().__init__(f"Blob not found: {locator}")


@dataclass(frozen=True)
class BlobRef:
    """A parsed ``scheme://key`` locator."""

    scheme: str
    key: str

    @classmethod
    def parse(cls, locator: str) -> BlobRef:
        scheme, sep, key = locator.partition("://")
        if not sep or not scheme or not key:
            raise ValueError(f"Invalid blob locator: {locator!r}")
        return cls(scheme, key)

    def __str__(self) -> str:
        return f"{self.scheme}://{self.key}"


class BlobStore(Protocol):
    async def put(self, data: bytes, *, key: str, content_type: str) -> str:
        """Store *data* under *key*, replacing any previous file, and return its locator."""
        ...

    async def get(self, locator: str) -> bytes:
        """Return the stored bytes.

        Raises:
            BlobNotFoundError: If nothing is stored at *locator*
        """
        ...

    async def delete(self, locator: str) -> None: ...

    async def exists(self, locator: str) -> bool: ...


class LocalBlobStore:
    """Stores files under a root directory; keys may not escape it."""

    def __init__(self, root: Path):
        self.root = Path(root).resolve()

    def _path(self, key: str) -> Path:
        path = (self.root / key.lstrip("/")).resolve()
        if not path.is_relative_to(self.root):
            raise ValueError(f"Key escapes the storage root: {key!r}")
        return path

    def _locate(self, locator: str) -> Path:
        ref = BlobRef.parse(locator)
        if ref.scheme != LOCAL_SCHEME:
            raise ValueError(f"Not a {LOCAL_SCHEME}:// locator: {locator!r}")
        return self._path(ref.key)

    async def put(self, data: bytes, *, key: str, content_type: str) -> str:  # noqa: ARG002
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        # Write beside the target and rename so readers never see a partial file.
        partial = path.with_name(f".{path.name}.partial")
        partial.write_bytes(data)
        os.replace(partial, path)
        return str(BlobRef(LOCAL_SCHEME, key.lstrip("/")))

    async def get(self, locator: str) -> bytes:
        path = self._locate(locator)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            raise BlobNotFoundError(locator) from None

    async def delete(self, locator: str) -> None:
        path = self._locate(locator)
        try:
            path.unlink()
        except FileNotFoundError:
            raise BlobNotFoundError(locator) from None

    async def exists(self, locator: str) -> bool:
        try:
            return self._locate(locator).is_file()
        except ValueError:
            return False
