"""
Request-scoped scratch directories.

Each merge or compression request owns exactly one TempWorkspace. The
directory name combines a millisecond timestamp with a random suffix so that
concurrent requests never share a path. ``release`` is idempotent; it is called
from the ``with`` block on error paths and from the response stream once the
download has been sent.
"""

from __future__ import annotations

import logging
import secrets
import shutil
from pathlib import Path
from threading import Lock

from .utils import ensure_directory, timestamp_ms

logger = logging.getLogger(__name__)


class TempWorkspace:
    """
    A uniquely named temporary directory owned by one request.

    Usage:
        with TempWorkspace(root) as workspace:
            path = workspace.write_bytes("merged.pdf", data)
            ...
    """

    def __init__(self, root: Path, prefix: str = "docbundle") -> None:
        self.name = f"{prefix}_{timestamp_ms()}_{secrets.token_hex(4)}"
        self.path = ensure_directory(Path(root) / self.name)
        self._released = False
        self._lock = Lock()
        logger.debug(f"Created workspace {self.path}")

    def __enter__(self) -> "TempWorkspace":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()

    @property
    def released(self) -> bool:
        return self._released

    def file_path(self, filename: str) -> Path:
        """Return a path inside the workspace; ``filename`` must not escape it."""
        candidate = (self.path / filename).resolve()
        if candidate.parent != self.path.resolve():
            raise ValueError(f"Invalid workspace filename: {filename!r}")
        return candidate

    def write_bytes(self, filename: str, data: bytes) -> Path:
        path = self.file_path(filename)
        path.write_bytes(data)
        return path

    def release(self) -> None:
        """Recursively delete the workspace directory (safe to call repeatedly)."""
        with self._lock:
            if self._released:
                return
            self._released = True
        try:
            shutil.rmtree(self.path)
            logger.debug(f"Removed workspace {self.path}")
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.error(f"Failed to remove workspace {self.path}: {exc}")
