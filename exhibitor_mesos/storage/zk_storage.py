"""
exhibitor_mesos/storage/zk_storage.py
─────────────────────────────────────
Snapshot in a ZooKeeper node, via kazoo.

Connection string
──────────────────
    "zk1:2181,zk2:2181/exhibitor-mesos/prod"
     └──── endpoint ───┘└──── path ────────┘

The string is split at the first "/". The path is where the snapshot node
lives. If a path is given, the constructor creates it (and every missing
ancestor) as persistent empty nodes, then disconnects. save() and load()
never have to create parents.

Connections
────────────
Every save() and load() opens its own client and closes it before
returning, on every exit path. Snapshot writes happen a few times a minute
at most; a long-lived session would only add reconnect handling for no gain.

Every kazoo call is bounded by `timeout` seconds. On expiry the operation
fails with StorageIOError rather than blocking the scheduler lock.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Callable, Iterator, Optional, Tuple

from kazoo.client import KazooClient
from kazoo.exceptions import KazooException, NodeExistsError, NoNodeError
from kazoo.handlers.threading import KazooTimeoutError

from exhibitor_mesos.shared.config import DEFAULT_ZK_TIMEOUT_S
from exhibitor_mesos.shared.models import Cluster
from exhibitor_mesos.storage.base import (
    Storage,
    StorageIOError,
    decode_snapshot,
    encode_snapshot,
)

logger = logging.getLogger(__name__)

DEFAULT_NODE_PATH = "/exhibitor-mesos"
"""Snapshot node used when the connection string carries no path."""

ClientFactory = Callable[..., KazooClient]


def split_connect_string(zk: str) -> Tuple[str, str]:
    """
    Split "endpoint[/path]" at the first "/".

        split_connect_string("zk:2181/a/b") → ("zk:2181", "/a/b")
        split_connect_string("zk:2181")     → ("zk:2181", "")
    """
    index = zk.find("/")
    if index < 0:
        return zk, ""
    return zk[:index], zk[index:].rstrip("/")


class ZkStorage(Storage):
    """
    Cluster snapshot stored as the data of one persistent ZooKeeper node.

    Args:
        zk:             "endpoint[/path]" connection string.
        timeout:        seconds allowed for connect and for each read/write.
        client_factory: builds the kazoo client; KazooClient by default.
    """

    def __init__(
        self,
        zk: str,
        timeout: float = DEFAULT_ZK_TIMEOUT_S,
        client_factory: ClientFactory = KazooClient,
    ) -> None:
        self.connect, chroot = split_connect_string(zk)
        if not self.connect:
            raise ValueError(f"invalid zk connection string {zk!r}")
        self.chroot = chroot
        self.path = chroot or DEFAULT_NODE_PATH
        self.timeout = timeout
        self._client_factory = client_factory
        self._create_chroot_if_required()

    # ── Storage contract ──────────────────────────────────────────────────────

    def save(self, cluster: Cluster) -> None:
        data = encode_snapshot(cluster).encode("utf-8")
        with self._client() as client:
            try:
                client.create_async(self.path, data).get(timeout=self.timeout)
                logger.debug("Created snapshot node %s (%d bytes)", self.path, len(data))
            except NodeExistsError:
                client.set_async(self.path, data).get(timeout=self.timeout)
                logger.debug("Overwrote snapshot node %s (%d bytes)", self.path, len(data))

    def load(self) -> Optional[Cluster]:
        with self._client() as client:
            try:
                data, _stat = client.get_async(self.path).get(timeout=self.timeout)
            except NoNodeError:
                data = None
        # The chroot node created by the constructor is empty until first save.
        if not data:
            logger.info("No snapshot at %s%s, starting with an empty cluster", self.connect, self.path)
            return None
        return decode_snapshot(data, f"{self.connect}{self.path}")

    # ── Internals ─────────────────────────────────────────────────────────────

    def _create_chroot_if_required(self) -> None:
        if not self.chroot:
            return
        with self._client() as client:
            client.ensure_path(self.chroot)
        logger.info("Ensured zk path %s on %s", self.chroot, self.connect)

    @contextmanager
    def _client(self) -> Iterator[KazooClient]:
        """
        A started client that is always stopped and closed on exit.

        kazoo errors (other than those handled by the caller inside the
        block) are re-raised as StorageIOError.
        """
        client = self._client_factory(hosts=self.connect, timeout=self.timeout)
        try:
            client.start(timeout=self.timeout)
            yield client
        except (KazooTimeoutError, KazooException) as e:
            raise StorageIOError(
                f"zk storage {self.connect}{self.path} failed: {e.__class__.__name__}: {e}"
            ) from e
        finally:
            try:
                client.stop()
            finally:
                client.close()

    def __repr__(self) -> str:
        return f"ZkStorage({self.connect + self.path!r})"
