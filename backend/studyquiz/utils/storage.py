"""Filesystem blob store for uploaded documents.

Each blob is written once under a random hex id; the id is what
`UploadDoc.storage_id` records. The store knows nothing about owners
or metadata.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import BinaryIO
from uuid import uuid4


class BlobStore:
    def __init__(self, root: Path):
        self.root = Path(root)

    def _path(self, storage_id: str) -> Path:
        # ids are generated here; anything else is rejected before touching the disk
        if not storage_id or not all(c in "0123456789abcdef" for c in storage_id):
            raise FileNotFoundError(f"blob not found: {storage_id}")
        return self.root / storage_id[:2] / storage_id

    def put(self, data: bytes) -> str:
        storage_id = uuid4().hex
        path = self._path(storage_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".part")
        tmp.write_bytes(data)
        os.replace(tmp, path)
        return storage_id

    def open(self, storage_id: str) -> BinaryIO:
        path = self._path(storage_id)
        if not path.exists():
            raise FileNotFoundError(f"blob not found: {storage_id}")
        return path.open("rb")

    def delete(self, storage_id: str) -> None:
        try:
            self._path(storage_id).unlink()
        except FileNotFoundError:
            pass
