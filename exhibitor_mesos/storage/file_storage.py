"""
exhibitor_mesos/storage/file_storage.py
───────────────────────────────────────
Snapshot in a single local file. Suitable for a single scheduler host or for
tests; survives a process restart but not the loss of the host.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Union

from exhibitor_mesos.shared.models import Cluster
from exhibitor_mesos.storage.base import (
    Storage,
    StorageIOError,
    decode_snapshot,
    encode_snapshot,
)

logger = logging.getLogger(__name__)


class FileStorage(Storage):
    """
    Writes the JSON snapshot to `path`, truncating any previous content.

    load() returns None only when the file does not exist. A file that exists
    but does not parse raises SnapshotDeserializationError.
    """

    def __init__(self, path: Union[str, Path]) -> None:
        self.path = Path(path)

    def save(self, cluster: Cluster) -> None:
        payload = encode_snapshot(cluster)
        try:
            with open(self.path, "w", encoding="utf-8") as f:
                f.write(payload)
        except OSError as e:
            raise StorageIOError(f"cannot write snapshot to {self.path}: {e}") from e
        logger.debug("Saved snapshot to %s (%d bytes)", self.path, len(payload))

    def load(self) -> Optional[Cluster]:
        if not self.path.exists():
            logger.info("No snapshot at %s, starting with an empty cluster", self.path)
            return None
        try:
            payload = self.path.read_text(encoding="utf-8")
        except UnicodeDecodeError:
            payload = self.path.read_bytes()
        except OSError as e:
            raise StorageIOError(f"cannot read snapshot from {self.path}: {e}") from e
        return decode_snapshot(payload, str(self.path))

    def __repr__(self) -> str:
        return f"FileStorage({str(self.path)!r})"
