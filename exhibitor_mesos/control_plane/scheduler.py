"""
exhibitor_mesos/control_plane/scheduler.py
──────────────────────────────────────────
The offer-accept engine: decides WHICH stopped server an offer goes to.

Mesos pushes offers at us; we never ask for capacity. Each offer is
evaluated once against every server that wants to run, in registration
order, and is either consumed by the first server that fits or left unused.

How accept_offer works
───────────────────────
For each STOPPED server (desired to run, no task):

1. Failover gate: still inside the backoff window after a failure → skip.
   Then, max tries exceeded → skip permanently until an operator restarts
   the server. The warning is logged once, when the failure that reaches
   the limit is registered, not on every offer.

2. Placement gate: Server.matches() - hostname and attribute constraints,
   then stickiness. "unique" constraints see the attribute values of every
   *other* staging/running server (Cluster.active_attribute_values).

3. Resource gate: enough cpus and mem on the offer, and four free ports:
   the Exhibitor UI port from the server's allowed ranges, plus the
   ZooKeeper client, peer and election ports (Server.reserve).

4. First server through all gates: build a TaskDescriptor that consumes
   exactly the reservation (cpus, mem, four ports), launch it, mark the
   server STAGING, remember the host for stickiness, persist the cluster.
   The offer is consumed (return None).

If nobody fits, the reason from the last candidate evaluated is returned and
the offer stays unused.

Locking
────────
accept_offer() holds cluster.lock for the whole evaluation, including the
launch and the storage write. Two offers are never evaluated concurrently and
an admin request never observes a half-launched server.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from placement_core import Range, format_period, utc_now

from exhibitor_mesos.control_plane.driver import SchedulerDriver
from exhibitor_mesos.shared.models import (
    Cluster,
    Offer,
    Reservation,
    Server,
    ServerState,
    Task,
    TaskDescriptor,
    next_task_id,
)
from exhibitor_mesos.storage.base import Storage

logger = logging.getLogger(__name__)

ALL_SERVERS_RUNNING = "all servers are running"
MAX_TRIES_EXCEEDED = "max tries exceeded"
NO_SUITABLE_PORT = "no suitable port"


def check_server(
    cluster: Cluster,
    server: Server,
    offer: Offer,
    now: datetime,
) -> Optional[str]:
    """
    Run every gate for one server against one offer.

    Returns:
        None if the server can be launched on the offer, otherwise why not.
    """
    failover = server.failover
    if failover.is_waiting_delay(now):
        remaining = failover.delay_expires - now
        return f"waiting {format_period(remaining)} after failure"
    if failover.is_max_tries_exceeded:
        # Warned once when the last failure was registered; offers only skip.
        return MAX_TRIES_EXCEEDED

    reason = server.matches(offer, now, cluster.uses_lookup_for(server.id))
    if reason is not None:
        return reason

    reason = server.check_resources(offer)
    if reason is not None:
        return reason

    if server.reserve(offer) is None:
        return NO_SUITABLE_PORT
    return None


def build_task(server: Server, offer: Offer, reservation: Reservation) -> TaskDescriptor:
    """
    Describe the task that runs `server` on `offer`.

    The embedded config is a copy: the executor sees the resolved hostname and
    reserved ports without the server's own config being touched until the
    launch is committed.
    """
    config = server.config.model_copy(deep=True)
    config.hostname = offer.hostname
    config.exhibitor_config["port"] = str(reservation.ui_port)
    for name, port in reservation.zk_ports.items():
        config.shared_config_override[name] = str(port)
    return TaskDescriptor(
        task_id=next_task_id(server.id),
        name=f"exhibitor-{server.id}",
        slave_id=offer.slave_id,
        cpus=reservation.cpus,
        mem=reservation.mem,
        ports=[Range.single(port) for port in reservation.ports],
        config=config,
    )


def launch_server(
    cluster: Cluster,
    server: Server,
    offer: Offer,
    driver: SchedulerDriver,
    storage: Storage,
) -> TaskDescriptor:
    """Launch `server` on `offer`, move it to STAGING and persist."""
    reservation = server.reserve(offer)
    if reservation is None:
        raise ValueError(f"offer {offer.id} has no suitable ports for server {server.id}")

    descriptor = build_task(server, offer, reservation)
    driver.launch_task(offer, descriptor)

    server.state = ServerState.STAGING
    server.config.hostname = offer.hostname
    server.task = Task(
        id=descriptor.task_id,
        slave_id=offer.slave_id,
        hostname=offer.hostname,
        port=reservation.ui_port,
        ports=reservation.ports,
        attributes=dict(offer.attributes),
    )
    server.stickiness.register_start(offer.hostname)
    storage.save(cluster)

    logger.info(
        "Launched server %s as task %s on %s:%d (cpus=%.2f mem=%.0f zk ports=%s)",
        server.id, descriptor.task_id, offer.hostname, reservation.ui_port,
        descriptor.cpus, descriptor.mem, reservation.ports[1:],
    )
    return descriptor


def accept_offer(
    cluster: Cluster,
    offer: Offer,
    driver: SchedulerDriver,
    storage: Storage,
    now: Optional[datetime] = None,
) -> Optional[str]:
    """
    Offer one Mesos offer to the stopped servers.

    Args:
        cluster: the server registry (locked for the duration of the call).
        offer:   the offer under evaluation.
        driver:  used to launch the chosen task.
        storage: the cluster is saved after a launch.
        now:     evaluation time; defaults to the current UTC time.

    Returns:
        None if the offer was consumed by a launch, otherwise the reason it
        was not ("all servers are running" when nobody wants to run).

    Raises:
        StorageError: the launch happened but the snapshot write failed.
    """
    now = now if now is not None else utc_now()
    with cluster.lock:
        candidates = cluster.servers_in(ServerState.STOPPED)
        if not candidates:
            return ALL_SERVERS_RUNNING

        reason: Optional[str] = None
        for server in candidates:
            reason = check_server(cluster, server, offer, now)
            if reason is not None:
                logger.debug(
                    "Offer %s from %s declined for server %s: %s",
                    offer.id, offer.hostname, server.id, reason,
                )
                continue
            launch_server(cluster, server, offer, driver, storage)
            return None

        return reason
