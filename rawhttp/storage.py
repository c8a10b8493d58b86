"""
The storage root and the file-extension tables.
"""

import os
from dataclasses import dataclass
from typing import Optional

from .errors import StorageRootError

ALLOWED_EXTENSIONS = frozenset({".gif", ".jpg", ".jpeg", ".txt", ".html", ".css"})

CONTENT_TYPES = {
    ".html": "text/html",
    ".gif": "image/gif",
    ".txt": "text/plain",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".css": "text/css",
}


def extension(path: str) -> str:
    """
    Extension of the last path element, dot included, or "" if it has none.

    Unlike os.path.splitext a leading dot counts (".txt" -> ".txt"), and the
    comparison against the tables is case-sensitive.
    """
    name = path.rsplit("/", 1)[-1]
    _, dot, suffix = name.rpartition(".")
    return dot + suffix if dot else ""


def is_allowed(path: str) -> bool:
    return extension(path) in ALLOWED_EXTENSIONS


def content_type(path: str) -> str:
    return CONTENT_TYPES.get(extension(path), "application/octet-stream")


@dataclass(frozen=True)
class StorageRoot:
    """
    Directory the file server reads from and writes to.

    Build it with StorageRoot.open() so the directory is validated once at
    startup; handlers only ever get this read-only value.
    """

    path: str

    @classmethod
    def open(cls, path: str) -> "StorageRoot":
        if not os.path.isdir(path):
            raise StorageRootError(f"save path '{path}' does not exist")
        return cls(os.path.abspath(path))

    def resolve(self, relative: str) -> Optional[str]:
        """
        Map a request path or upload filename to an absolute path.

        Returns None if the result would land outside the root.
        """
        candidate = os.path.normpath(os.path.join(self.path, relative.lstrip("/")))
        prefix = self.path if self.path.endswith(os.sep) else self.path + os.sep
        if candidate != self.path and not candidate.startswith(prefix):
            return None
        return candidate
