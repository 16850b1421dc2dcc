"""Read-only access to uploaded objects stored on the local filesystem."""

from __future__ import annotations

import mimetypes
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

from upload_classifier.errors import ObjectNotFoundError

DEFAULT_CONTENT_TYPE = "application/octet-stream"


@dataclass(slots=True, frozen=True)
class StoredObject:
    """Object bytes with their metadata."""

    key: str
    content: bytes
    content_type: str
    size: int


class LocalObjectStore:
    """Object store rooted at a directory; keys map to relative paths."""

    def __init__(self, root: Path) -> None:
        self.root = root

    def exists(self, key: str) -> bool:
        return self._path_for(key).is_file()

    def fetch(self, key: str) -> StoredObject:
        path = self._path_for(key)
        try:
            content = path.read_bytes()
        except (FileNotFoundError, IsADirectoryError, NotADirectoryError) as error:
            raise ObjectNotFoundError(key) from error
        content_type, _ = mimetypes.guess_type(path.name)
        return StoredObject(
            key=key,
            content=content,
            content_type=content_type or DEFAULT_CONTENT_TYPE,
            size=len(content),
        )

    def _path_for(self, key: str) -> Path:
        pure = PurePosixPath(key)
        if not key or "\\" in key or pure.is_absolute() or ".." in pure.parts:
            raise ValueError(f"Invalid object key: {key!r}")
        return self.root.joinpath(*pure.parts)
