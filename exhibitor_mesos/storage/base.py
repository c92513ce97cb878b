"""
exhibitor_mesos/storage/base.py
───────────────────────────────
The persistence contract: one snapshot of the whole Cluster, no keys.

    save(cluster)  → overwrite the stored snapshot with this one
    load()         → the stored snapshot, or None if nothing was ever saved

Backends only move bytes. Encoding and decoding of the snapshot live here so
that a file and a ZooKeeper node hold byte-identical documents.

Error handling contract
────────────────────────
  SnapshotDeserializationError: stored bytes exist but are not a valid
                                Cluster. Fatal at startup: a corrupt
                                snapshot is never silently replaced by an
                                empty cluster.
  StorageIOError:               the backend could not be reached or the
                                write failed. The caller's operation fails;
                                the in-memory change is not committed.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional, Union

from pydantic import ValidationError

from exhibitor_mesos.shared.models import Cluster


class StorageError(Exception):
    """Base class for snapshot persistence failures."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)


class SnapshotDeserializationError(StorageError):
    """The stored snapshot exists but cannot be parsed into a Cluster."""
    pass


class StorageIOError(StorageError, OSError):
    """The storage backend failed (timeout, refused connection, write error)."""
    pass


def encode_snapshot(cluster: Cluster) -> str:
    return cluster.model_dump_json()


def decode_snapshot(payload: Union[str, bytes], source: str) -> Cluster:
    """
    Parse a stored snapshot.

    Args:
        payload: JSON text (or UTF-8 bytes) as stored.
        source:  where it came from, for the error message.

    Raises:
        SnapshotDeserializationError: invalid UTF-8, JSON or Cluster schema.
    """
    if isinstance(payload, bytes):
        try:
            payload = payload.decode("utf-8")
        except UnicodeDecodeError as e:
            raise SnapshotDeserializationError(f"snapshot at {source} is not UTF-8: {e}") from e
    try:
        return Cluster.model_validate_json(payload)
    except ValidationError as e:
        raise SnapshotDeserializationError(
            f"snapshot at {source} is invalid: {e.error_count()} error(s): {e}"
        ) from e


class Storage(ABC):
    """Single-blob persistence of the Cluster snapshot."""

    @abstractmethod
    def save(self, cluster: Cluster) -> None:
        """Durably replace the stored snapshot with `cluster`."""

    @abstractmethod
    def load(self) -> Optional[Cluster]:
        """The stored snapshot, or None if none has been saved."""
