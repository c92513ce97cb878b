"""
exhibitor_mesos/control_plane/orchestration_service.py
──────────────────────────────────────────────────────
OrchestratorService: the central control plane state machine.

Two kinds of callers
─────────────────────
  Mesos driver thread(s) → resource_offers(), accept_offer(), on_status_update()
  Admin layer (HTTP/CLI) → add(), update(), start(), stop(), remove(), status()

Both mutate the same Cluster. Every public method takes cluster.lock for its
whole duration, so a status update, an offer evaluation and an admin request
are strictly serialized.

Persistence
────────────
Every committed transition is saved to Storage inside the lock, before the
method returns. If the save fails, the in-memory change is rolled back and
the storage error propagates: the caller never sees a success that storage
does not reflect. (Side effects already sent to Mesos, such as a kill, are
not undone; Mesos will report them through status updates.)

Server state machine
─────────────────────
    add ──► ADDED ──start──► STOPPED ──offer──► STAGING ──running──► RUNNING
              ▲                 ▲                  │                    │
              │                 └──── terminal (failed, lost, ...) ◄────┘
              └──────────── stop (from STOPPED, STAGING or RUNNING) ────┘
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterable, Iterator, List, Optional, Union

from placement_core import Failover, Range, Stickiness, parse_period, utc_now

from exhibitor_mesos.control_plane.admission_controller import (
    AdmissionRejectedError,
    admit_constraints,
    admit_port_number,
    admit_ports,
    admit_server_id,
    route_options,
)
from exhibitor_mesos.control_plane.driver import SchedulerDriver
from exhibitor_mesos.control_plane.scheduler import accept_offer
from exhibitor_mesos.shared.config import SchedulerConfig
from exhibitor_mesos.shared.logging_config import setup_logging
from exhibitor_mesos.shared.models import (
    ZK_PORT_OPTIONS,
    Cluster,
    InvalidServerStateError,
    Offer,
    Server,
    ServerState,
    TaskConfig,
    TaskState,
    id_from_task_id,
)
from exhibitor_mesos.storage import Storage, StorageError, create_storage

logger = logging.getLogger(__name__)

ConstraintsArg = Union[str, Dict[str, list], None]
PortsArg = Union[str, List[Range], None]


class OrchestratorService:
    """
    Lock-guarded owner of the Cluster, the driver and the storage backend.

    Public API:
        add(server_id, config, constraints)      → Server
        update(server_id, ...)                   → Server
        start(server_id)                         → Server
        stop(server_id)                          → Server
        remove(server_id)                        → Server
        status()                                 → List[Server]
        accept_offer(offer, now)                 → Optional[str]
        resource_offers(offers, now)             → Dict[offer_id, reason]
        on_status_update(task_id, state, ...)    → Optional[Server]

    Every returned Server is a deep copy; mutating it does not touch the
    cluster.
    """

    def __init__(
        self,
        cluster: Cluster,
        driver: SchedulerDriver,
        storage: Storage,
        config: Optional[SchedulerConfig] = None,
    ) -> None:
        self.cluster = cluster
        self.driver = driver
        self.storage = storage
        self.config = config or SchedulerConfig()
        logger.info(
            "OrchestratorService initialised with %d server(s), storage=%r",
            len(self.cluster.servers), self.storage,
        )

    # ── Admin operations ──────────────────────────────────────────────────────

    def add(
        self,
        server_id: str,
        config: Union[TaskConfig, dict, None] = None,
        constraints: ConstraintsArg = None,
    ) -> Server:
        """
        Register a new server in the ADDED state.

        Args:
            server_id:   unique id.
            config:      TaskConfig, or a dict of TaskConfig fields. The id is
                         always forced to server_id.
            constraints: "attr=constraint,..." or {attr: [constraint, ...]}.

        Raises:
            AdmissionRejectedError:  invalid id, config or constraints.
            ServerAlreadyExistsError: the id is taken.
            StorageError:            the snapshot could not be saved.
        """
        admit_server_id(server_id)
        task_config = self._build_config(server_id, config)
        server = self._validate(
            Server,
            id=server_id,
            config=task_config,
            constraints=self._parse_constraints(constraints),
            stickiness=self.config.new_stickiness(),
            failover=self.config.new_failover(),
        )
        with self._mutation():
            self.cluster.add_server(server)
            logger.info("Added server %s (cpus=%.2f mem=%.0f)", server_id,
                        task_config.cpus, task_config.mem)
            return server.model_copy(deep=True)

    def update(
        self,
        server_id: str,
        cpus: Optional[float] = None,
        mem: Optional[float] = None,
        ports: PortsArg = None,
        shared_config_change_backoff: Optional[int] = None,
        options: Optional[Dict[str, str]] = None,
        constraints: ConstraintsArg = None,
        failover_delay=None,
        failover_max_delay=None,
        failover_max_tries: Optional[int] = None,
        stickiness_period=None,
    ) -> Server:
        """
        Change configuration of an existing server. Only given fields change.

        options is a flat map routed into exhibitor_config and
        shared_config_override by admission control; keys are merged into the
        existing maps. Changes apply on the next launch.

        Raises:
            AdmissionRejectedError: invalid value.
            ServerNotFoundError:    unknown id.
            StorageError:           the snapshot could not be saved.
        """
        exhibitor_options, shared_options = route_options(options or {})
        parsed_ports = admit_ports(ports) if isinstance(ports, str) else ports
        parsed_constraints = self._parse_constraints(constraints) if constraints is not None else None

        with self._mutation():
            server = self.cluster.require_server(server_id)
            config_fields = server.config.model_dump()
            config_fields["exhibitor_config"].update(exhibitor_options)
            config_fields["shared_config_override"].update(shared_options)
            for name, value in (
                ("cpus", cpus),
                ("mem", mem),
                ("ports", parsed_ports),
                ("shared_config_change_backoff", shared_config_change_backoff),
            ):
                if value is not None:
                    config_fields[name] = value
            server.config = self._validate(TaskConfig, **config_fields)

            if parsed_constraints is not None:
                server.constraints = self._validate(
                    Server, id=server.id, constraints=parsed_constraints
                ).constraints

            failover_fields = server.failover.model_dump()
            for name, value in (
                ("interval", self._period(failover_delay)),
                ("max_delay", self._period(failover_max_delay)),
                ("max_tries", failover_max_tries),
            ):
                if value is not None:
                    failover_fields[name] = value
            server.failover = self._validate(Failover, **failover_fields)

            if stickiness_period is not None:
                stickiness_fields = server.stickiness.model_dump()
                stickiness_fields["period"] = self._period(stickiness_period)
                server.stickiness = self._validate(Stickiness, **stickiness_fields)

            logger.info("Updated server %s", server_id)
            return server.model_copy(deep=True)

    def start(self, server_id: str) -> Server:
        """
        Mark a server as desired-to-run (ADDED → STOPPED).

        Starting also clears the failure history: an operator restart is how a
        server that exceeded max tries gets scheduled again. Servers that are
        already wanted are returned unchanged.
        """
        with self._mutation():
            server = self.cluster.require_server(server_id)
            if server.state != ServerState.ADDED:
                logger.info("Server %s already started (%s)", server_id, server.state.value)
                return server.model_copy(deep=True)
            server.state = ServerState.STOPPED
            server.failover.reset_failures()
            logger.info("Started server %s, waiting for an offer", server_id)
            return server.model_copy(deep=True)

    def stop(self, server_id: str, now: Optional[datetime] = None) -> Server:
        """
        Stop wanting a server (STOPPED/STAGING/RUNNING → ADDED).

        A live task is killed. The stop is registered with stickiness so the
        server prefers its previous host when started again.
        """
        now = now if now is not None else utc_now()
        with self._mutation():
            server = self.cluster.require_server(server_id)
            if server.state == ServerState.ADDED:
                return server.model_copy(deep=True)
            if server.task is not None:
                logger.info("Killing task %s of server %s", server.task.id, server_id)
                self.driver.kill_task(server.task.id)
            server.state = ServerState.ADDED
            server.stickiness.register_stop(now)
            logger.info("Stopped server %s", server_id)
            return server.model_copy(deep=True)

    def remove(self, server_id: str) -> Server:
        """
        Forget a server. Only ADDED or STOPPED servers may be removed.

        Raises:
            InvalidServerStateError: the server has a staging/running task.
        """
        with self._mutation():
            server = self.cluster.require_server(server_id)
            if server.state not in (ServerState.ADDED, ServerState.STOPPED):
                raise InvalidServerStateError(
                    f"server {server_id!r} is {server.state.value}; stop it before removing"
                )
            self.cluster.remove_server(server_id)
            logger.info("Removed server %s", server_id)
            return server.model_copy(deep=True)

    def status(self) -> List[Server]:
        """All servers in registration order."""
        with self.cluster.lock:
            return [s.model_copy(deep=True) for s in self.cluster.servers.values()]

    def get_server(self, server_id: str) -> Optional[Server]:
        with self.cluster.lock:
            server = self.cluster.get_server(server_id)
            return server.model_copy(deep=True) if server is not None else None

    # ── Driver callbacks ──────────────────────────────────────────────────────

    def accept_offer(self, offer: Offer, now: Optional[datetime] = None) -> Optional[str]:
        """
        See scheduler.accept_offer(). None means the offer was consumed.

        The scheduler persists its own launches. A launch whose save fails is
        not rolled back: the task exists in Mesos and its status updates must
        still find the server.
        """
        with self.cluster.lock:
            return accept_offer(self.cluster, offer, self.driver, self.storage, now)

    def resource_offers(
        self,
        offers: Iterable[Offer],
        now: Optional[datetime] = None,
    ) -> Dict[str, str]:
        """
        Evaluate a batch of offers as delivered by the driver.

        Returns:
            offer id → reason for every offer that was not consumed.
        """
        declined: Dict[str, str] = {}
        for offer in offers:
            try:
                reason = self.accept_offer(offer, now)
            except StorageError as e:
                logger.exception("Offer %s: launch could not be persisted", offer.id)
                reason = f"storage error: {e.reason}"
            if reason is not None:
                declined[offer.id] = reason
        if declined:
            logger.debug("Declined %d offer(s): %s", len(declined), declined)
        return declined

    def on_status_update(
        self,
        task_id: str,
        state: Union[TaskState, str],
        message: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Optional[Server]:
        """
        Apply a Mesos task status update.

        running  : STAGING → RUNNING, failures reset.
        terminal : the task is forgotten. A server that wanted to run goes back
                   to STOPPED with one more failure and a stickiness stop; a
                   server stopped by an operator only loses its task.

        state may be a TaskState or a Mesos name such as "TASK_RUNNING". A name
        this scheduler does not know is logged and ignored.

        Returns:
            A copy of the affected server, or None for an unknown task or state.
        """
        if not isinstance(state, TaskState):
            try:
                state = TaskState.parse(state)
            except ValueError:
                logger.warning("Ignoring unrecognised status %r for task %s", state, task_id)
                return None
        now = now if now is not None else utc_now()
        with self._mutation():
            server = self.cluster.find_by_task_id(task_id)
            if server is None:
                logger.warning(
                    "Status %s for unknown task %s (%s)", state.value, task_id, self._server_hint(task_id)
                )
                return None

            if state == TaskState.RUNNING:
                self._on_running(server, task_id)
            elif state.is_terminal:
                self._on_terminal(server, task_id, state, message, now)
            else:
                logger.debug("Task %s of server %s is %s", task_id, server.id, state.value)
            return server.model_copy(deep=True)

    # ── Private helpers ───────────────────────────────────────────────────────

    def _on_running(self, server: Server, task_id: str) -> None:
        if server.state == ServerState.STAGING:
            server.state = ServerState.RUNNING
            server.failover.reset_failures()
            logger.info("Server %s is running (task %s)", server.id, task_id)
        elif server.state == ServerState.ADDED:
            # Stopped while staging; the earlier kill may have raced the launch.
            logger.warning("Server %s was stopped but task %s is running, killing", server.id, task_id)
            self.driver.kill_task(task_id)

    def _on_terminal(
        self,
        server: Server,
        task_id: str,
        state: TaskState,
        message: Optional[str],
        now: datetime,
    ) -> None:
        server.task = None
        if server.is_active:
            server.state = ServerState.STOPPED
            server.failover.register_failure(now)
            server.stickiness.register_stop(now)
            logger.info(
                "Server %s task %s %s%s; failure %d, retry after %s",
                server.id, task_id, state.value,
                f" ({message})" if message else "",
                server.failover.failures, server.failover.delay_expires.isoformat(),
            )
            if server.failover.is_max_tries_exceeded:
                logger.warning(
                    "Server %s reached max tries (%d); manual restart required",
                    server.id, server.failover.failures,
                )
        else:
            logger.info("Server %s task %s %s", server.id, task_id, state.value)

    @staticmethod
    def _server_hint(task_id: str) -> str:
        try:
            return f"server {id_from_task_id(task_id)}"
        except ValueError:
            return "not an exhibitor task"

    @contextmanager
    def _mutation(self) -> Iterator[None]:
        """
        Hold the cluster lock for a read-modify-write and persist on success.

        On any error, including a storage failure, the servers are restored to
        their state before the block and the error propagates.
        """
        with self.cluster.lock:
            backup = {sid: s.model_copy(deep=True) for sid, s in self.cluster.servers.items()}
            try:
                yield
                if backup != self.cluster.servers:
                    self.storage.save(self.cluster)
            except StorageError:
                logger.exception("Could not persist cluster; rolling back in-memory change")
                self.cluster.servers = backup
                raise
            except Exception:
                self.cluster.servers = backup
                raise

    @staticmethod
    def _period(value):
        if isinstance(value, str):
            try:
                return parse_period(value)
            except ValueError as e:
                raise AdmissionRejectedError(str(e)) from e
        return value

    @staticmethod
    def _validate(model, **fields):
        try:
            return model(**fields)
        except ValueError as e:
            raise AdmissionRejectedError(f"invalid {model.__name__}: {e}") from e

    def _build_config(self, server_id: str, config: Union[TaskConfig, dict, None]) -> TaskConfig:
        if config is None:
            return TaskConfig(id=server_id)
        fields = config.model_dump() if isinstance(config, TaskConfig) else dict(config)
        fields["id"] = server_id
        if isinstance(fields.get("ports"), str):
            fields["ports"] = admit_ports(fields["ports"])
        task_config = self._validate(TaskConfig, **fields)
        for key in ZK_PORT_OPTIONS:
            admit_port_number(key, task_config.shared_config_override.get(key, ""))
        return task_config

    @staticmethod
    def _parse_constraints(constraints: ConstraintsArg) -> dict:
        if constraints is None:
            return {}
        if isinstance(constraints, str):
            return admit_constraints(constraints)
        return dict(constraints)


def build_service(
    driver: SchedulerDriver,
    config: Optional[SchedulerConfig] = None,
    storage: Optional[Storage] = None,
    configure_logging: bool = True,
) -> OrchestratorService:
    """
    Wire logging, storage, the persisted cluster and the driver into a service.

    This is the process entry point: unless configure_logging is False the
    root logger is set up at config.log_level first. The persisted snapshot is
    loaded here. A corrupt snapshot raises SnapshotDeserializationError and
    the process must not start.
    """
    config = config or SchedulerConfig()
    if configure_logging:
        setup_logging("scheduler", level=config.log_level)
    storage = storage or create_storage(config.storage, config.zk_timeout_s)
    cluster = storage.load()
    if cluster is None:
        cluster = Cluster()
    return OrchestratorService(cluster=cluster, driver=driver, storage=storage, config=config)
