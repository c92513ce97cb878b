"""
exhibitor_mesos/storage - durable persistence of the Cluster snapshot.

Public API:
    Storage                      - save(cluster) / load() contract
    FileStorage                  - snapshot in a local file
    ZkStorage                    - snapshot in a ZooKeeper node (kazoo)
    create_storage(location)     - pick a backend from "file:<path>" / "zk:<connect>"
    SnapshotDeserializationError - stored snapshot is corrupt
    StorageIOError               - backend unreachable or write failed
"""

from __future__ import annotations

from exhibitor_mesos.shared.config import DEFAULT_ZK_TIMEOUT_S
from exhibitor_mesos.storage.base import (
    SnapshotDeserializationError,
    Storage,
    StorageError,
    StorageIOError,
)
from exhibitor_mesos.storage.file_storage import FileStorage
from exhibitor_mesos.storage.zk_storage import ZkStorage


def create_storage(location: str, zk_timeout_s: float = DEFAULT_ZK_TIMEOUT_S) -> Storage:
    """
    Build the storage backend named by a scheme-prefixed string.

        create_storage("file:exhibitor-mesos.json")  → FileStorage
        create_storage("zk:zk1:2181/exhibitor")      → ZkStorage

    Raises:
        ValueError: unknown scheme.
    """
    if location.startswith("file:"):
        return FileStorage(location[len("file:"):])
    if location.startswith("zk:"):
        return ZkStorage(location[len("zk:"):], timeout=zk_timeout_s)
    raise ValueError(f"unsupported storage {location!r}, expected file:<path> or zk:<connect>")


__all__ = [
    "Storage",
    "StorageError",
    "StorageIOError",
    "SnapshotDeserializationError",
    "FileStorage",
    "ZkStorage",
    "create_storage",
]
