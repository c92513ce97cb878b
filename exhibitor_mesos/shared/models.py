"""
exhibitor_mesos/shared/models.py
────────────────────────────────
The single source of truth for every data structure the framework keeps.

Design philosophy
-----------------
Every model answers one question: "What does the scheduler *need to
remember* about this thing to place it again after a restart?"

Everything here is a pydantic model so that the whole Cluster can be
written to storage with one model_dump_json() and read back with one
model_validate_json(). Nothing outside this package knows the JSON layout.

Reading guide
-------------
Read top-to-bottom. Each model builds on the ones above it.
"""

from __future__ import annotations

import threading
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from pydantic import (
    BaseModel,
    Field,
    PrivateAttr,
    field_serializer,
    field_validator,
    model_validator,
)

from placement_core import (
    Constraint,
    Failover,
    Range,
    Stickiness,
    UsesLookup,
    allocate_port,
    evaluate_all,
    first_free_port,
    format_ranges,
    offers_port,
    parse_constraint,
    parse_ranges,
    utc_now,
)


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 1: ENUMERATIONS
# ─────────────────────────────────────────────────────────────────────────────

class ServerState(str, Enum):
    """
    Desired/observed lifecycle of one managed Exhibitor instance.

    ADDED    → Registered but not wanted. The scheduler ignores it.
    STOPPED  → Wanted, but no task is running. Waiting for a matching offer.
               Note: "stopped" is the *desired-to-run* state, not "inactive".
               A freshly started server reports STOPPED until an offer lands.
    STAGING  → Task launched, waiting for Mesos to confirm it is running.
    RUNNING  → Mesos confirmed the task is running.
    """
    ADDED = "added"
    STOPPED = "stopped"
    STAGING = "staging"
    RUNNING = "running"


class TaskState(str, Enum):
    """
    Mesos task states as delivered by status updates.

    Values are the Mesos names without the TASK_ prefix, lower-cased:
    TASK_GONE_BY_OPERATOR → "gone_by_operator". UNKNOWN means the master
    has no information about the task; it is not a verdict.
    """
    STAGING = "staging"
    STARTING = "starting"
    RUNNING = "running"
    KILLING = "killing"
    FINISHED = "finished"
    FAILED = "failed"
    KILLED = "killed"
    LOST = "lost"
    ERROR = "error"
    DROPPED = "dropped"
    GONE = "gone"
    GONE_BY_OPERATOR = "gone_by_operator"
    UNREACHABLE = "unreachable"
    UNKNOWN = "unknown"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_TASK_STATES

    @classmethod
    def parse(cls, name: str) -> "TaskState":
        """
        Accept both Mesos enum names and plain values.

            TaskState.parse("TASK_RUNNING") → TaskState.RUNNING
            TaskState.parse("gone")         → TaskState.GONE

        Raises:
            ValueError: not a known task state.
        """
        return cls(name.strip().lower().removeprefix("task_"))


_TERMINAL_TASK_STATES = frozenset({
    TaskState.FINISHED,
    TaskState.FAILED,
    TaskState.KILLED,
    TaskState.LOST,
    TaskState.ERROR,
    TaskState.DROPPED,
    TaskState.GONE,
    TaskState.GONE_BY_OPERATOR,
    TaskState.UNREACHABLE,
})


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 2: ERRORS
# Registry errors. Each carries a human-readable reason, like the admission
# and scheduling errors in control_plane.
# ─────────────────────────────────────────────────────────────────────────────

class ClusterError(Exception):
    """Base class for invalid operations on the server registry."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)


class ServerNotFoundError(ClusterError):
    pass


class ServerAlreadyExistsError(ClusterError):
    pass


class InvalidServerStateError(ClusterError):
    """The server is in a state that does not allow the requested operation."""
    pass


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 3: OFFERS
# What a Mesos agent announces it can give us.
# ─────────────────────────────────────────────────────────────────────────────

def parse_attributes(text: str) -> Dict[str, str]:
    """
    Parse agent attributes in "name=value,name=value" form.

        parse_attributes("rack=1-1,floor=1") → {"rack": "1-1", "floor": "1"}
    """
    attributes: Dict[str, str] = {}
    if not text or not text.strip():
        return attributes
    for token in text.split(","):
        if not token.strip():
            continue
        if "=" not in token:
            raise ValueError(f"invalid attribute {token!r}, expected name=value")
        name, value = token.split("=", 1)
        attributes[name.strip()] = value.strip()
    return attributes


class Offer(BaseModel):
    """
    A resource offer from one agent, valid for one evaluation cycle.

    Fields:
        id         → Mesos offer id.
        slave_id   → agent that made the offer. Tasks launch on this agent.
        hostname   → agent hostname. Also the synthetic "hostname" attribute
                     for constraint matching.
        cpus, mem  → scalar resources on offer (mem in MB).
        ports      → available port ranges, in the agent's order.
        attributes → agent key/value attributes, e.g. {"rack": "1-1"}.
    """
    id: str = Field(default_factory=lambda: f"offer-{uuid.uuid4().hex[:8]}")
    slave_id: str = "slave0"
    hostname: str = "host"
    cpus: float = Field(0.0, ge=0)
    mem: float = Field(0.0, ge=0)
    ports: List[Range] = Field(default_factory=list)
    attributes: Dict[str, str] = Field(default_factory=dict)

    @field_validator("ports", mode="before")
    @classmethod
    def _parse_ports(cls, value):
        if isinstance(value, str):
            return parse_ranges(value)
        return value

    @field_validator("attributes", mode="before")
    @classmethod
    def _parse_attributes(cls, value):
        if isinstance(value, str):
            return parse_attributes(value)
        return value

    def attribute(self, name: str) -> Optional[str]:
        """Attribute lookup with "hostname" served from the offer itself."""
        if name == "hostname":
            return self.hostname
        return self.attributes.get(name)


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 4: TASK CONFIGURATION
# What an instance needs in order to run, and what is persisted about it.
# ─────────────────────────────────────────────────────────────────────────────

class TaskConfig(BaseModel):
    """
    Runtime configuration of one Exhibitor instance.

    Fields:
        exhibitor_config             → Exhibitor command-line options,
                                       e.g. {"zkconfigconnect": "zk1:2181"}.
        shared_config_override       → shared ensemble config overrides,
                                       e.g. {"zookeeper-install-directory": "/opt/zk"}.
        id                           → the owning server's id.
        hostname                     → agent the task was last launched on.
                                       Resolved at launch; "" until then.
        shared_config_change_backoff → ms Exhibitor waits between shared
                                       config changes.
        cpus, mem                    → resources to reserve (mem in MB).
        ports                        → allowed ports. Empty = any port.
                                       Persisted as "lo..hi,port" text.
    """
    exhibitor_config: Dict[str, str] = Field(default_factory=dict)
    shared_config_override: Dict[str, str] = Field(default_factory=dict)
    id: str
    hostname: str = ""
    shared_config_change_backoff: int = Field(10_000, ge=0)
    cpus: float = Field(0.2, ge=0)
    mem: float = Field(256.0, ge=0)
    ports: List[Range] = Field(default_factory=list)

    @field_validator("ports", mode="before")
    @classmethod
    def _parse_ports(cls, value):
        if isinstance(value, str):
            return parse_ranges(value)
        return value

    @field_serializer("ports")
    def _format_ports(self, ports: List[Range]) -> str:
        return format_ranges(ports)


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 5: TASKS
# ─────────────────────────────────────────────────────────────────────────────

TASK_ID_PREFIX = "exhibitor-"


def next_task_id(server_id: str) -> str:
    """A fresh Mesos task id for a launch of server_id."""
    return f"{TASK_ID_PREFIX}{server_id}-{uuid.uuid4().hex}"


def id_from_task_id(task_id: str) -> str:
    """
    Recover the server id from a task id made by next_task_id().

        id_from_task_id(next_task_id("100")) → "100"
        id_from_task_id(next_task_id("zk-a")) → "zk-a"
    """
    if not task_id.startswith(TASK_ID_PREFIX) or "-" not in task_id[len(TASK_ID_PREFIX):]:
        raise ValueError(f"malformed task id {task_id!r}")
    return task_id[len(TASK_ID_PREFIX):].rsplit("-", 1)[0]


class Task(BaseModel):
    """
    The task a server currently has in Mesos, as the server remembers it.

    port is the Exhibitor UI port; ports lists every port reserved for the
    task, UI port first. attributes are the offer attributes at launch time;
    they are what "unique" constraints of other servers compare against.
    """
    id: str
    slave_id: str
    hostname: str
    port: int
    ports: List[int] = Field(default_factory=list)
    attributes: Dict[str, str] = Field(default_factory=dict)


ZK_PORT_OPTIONS = ("client-port", "connect-port", "election-port")
"""Shared-config keys of the ZooKeeper ports reserved next to the UI port."""


class Reservation(BaseModel):
    """
    What one launch takes out of an offer.

        ui_port  → Exhibitor's HTTP port.
        zk_ports → ZooKeeper client, peer and election ports, keyed by their
                   shared-config option name.
    """
    cpus: float
    mem: float
    ui_port: int
    zk_ports: Dict[str, int]

    @property
    def ports(self) -> List[int]:
        return [self.ui_port] + [self.zk_ports[name] for name in ZK_PORT_OPTIONS]


class TaskDescriptor(BaseModel):
    """
    Everything the driver needs to launch one task.

    Resources are exactly the reservation: cpus, mem and four single ports
    (UI, then ZooKeeper client, peer and election). config is a copy of the
    server's TaskConfig with the resolved hostname and the reserved ports
    filled in; the executor reads it.
    """
    task_id: str
    name: str
    slave_id: str
    cpus: float
    mem: float
    ports: List[Range]
    config: TaskConfig


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 6: SERVER
# ─────────────────────────────────────────────────────────────────────────────

def _no_uses(_attribute: str) -> List[str]:
    return []


class Server(BaseModel):
    """
    One managed Exhibitor instance: identity, desired state, configuration,
    placement constraints and the placement policy state it owns.

    The Stickiness and Failover instances belong to this server only and are
    persisted with it.
    """
    id: str
    state: ServerState = ServerState.ADDED
    config: TaskConfig
    constraints: Dict[str, List[Constraint]] = Field(default_factory=dict)
    stickiness: Stickiness = Field(default_factory=Stickiness)
    failover: Failover = Field(default_factory=Failover)
    task: Optional[Task] = None

    @model_validator(mode="before")
    @classmethod
    def _default_config(cls, data):
        if isinstance(data, dict) and data.get("config") is None and "id" in data:
            data = dict(data)
            data["config"] = {"id": data["id"]}
        return data

    @field_validator("constraints", mode="before")
    @classmethod
    def _parse_constraints(cls, value):
        if not isinstance(value, dict):
            return value
        return {
            attribute: [parse_constraint(c) if isinstance(c, str) else c for c in items]
            for attribute, items in value.items()
        }

    @field_serializer("constraints")
    def _format_constraints(self, constraints) -> Dict[str, List[str]]:
        return {
            attribute: [str(c) for c in items]
            for attribute, items in constraints.items()
        }

    # ── Derived properties ────────────────────────────────────────────────────

    @property
    def is_active(self) -> bool:
        """True while a task is placed (staging or running)."""
        return self.state in (ServerState.STAGING, ServerState.RUNNING)

    # ── Placement checks ──────────────────────────────────────────────────────

    def matches(
        self,
        offer: Offer,
        now: Optional[datetime] = None,
        uses: Optional[UsesLookup] = None,
    ) -> Optional[str]:
        """
        Can this server be placed on the offer's agent?

        Checks (in order, first failure wins):
        1. hostname constraints (synthetic attribute from the offer).
        2. every other constrained attribute; missing on the offer → "no <name>".
        3. stickiness: inside the affinity window only the previous host is
           acceptable.

        Args:
            offer: the candidate offer.
            now:   evaluation time. Defaults to the current UTC time.
            uses:  attribute → values in use by other active servers. Only
                   "unique" constraints consult it. Defaults to "nothing in use".

        Returns:
            None if the offer is acceptable, otherwise the reason it is not.
        """
        now = now if now is not None else utc_now()
        uses = uses if uses is not None else _no_uses

        names = ["hostname"] + [name for name in self.constraints if name != "hostname"]
        for name in names:
            constraints = self.constraints.get(name)
            if not constraints:
                continue
            value = offer.attribute(name)
            if value is None:
                return f"no {name}"
            reason = evaluate_all(name, value, constraints, uses(name))
            if reason is not None:
                return reason

        if not self.stickiness.allows_hostname(offer.hostname, now):
            return "hostname != stickiness hostname"
        return None

    def check_resources(self, offer: Offer) -> Optional[str]:
        """None if the offer has enough cpus and mem for this server."""
        if offer.cpus < self.config.cpus:
            return f"cpus {offer.cpus} < {self.config.cpus}"
        if offer.mem < self.config.mem:
            return f"mem {offer.mem} < {self.config.mem}"
        return None

    def get_port(self, offer: Offer) -> Optional[int]:
        return allocate_port(self.config.ports, offer.ports)

    def reserve(self, offer: Offer) -> Optional[Reservation]:
        """
        Pick every port a launch on `offer` needs, or None if the offer is short.

        The UI port comes from get_port(). A ZooKeeper port pinned in
        shared_config_override must itself be on offer; the others take the
        lowest offered ports still free.

            offer "4000..4003", no config → ui 4000, client 4001,
                                            connect 4002, election 4003
        """
        ui_port = self.get_port(offer)
        if ui_port is None:
            return None
        taken = {ui_port}

        pinned: Dict[str, int] = {}
        for name in ZK_PORT_OPTIONS:
            value = self.config.shared_config_override.get(name)
            if not value:
                continue
            port = int(value)
            if port in taken or not offers_port(offer.ports, port):
                return None
            pinned[name] = port
            taken.add(port)

        zk_ports: Dict[str, int] = {}
        for name in ZK_PORT_OPTIONS:
            port = pinned.get(name)
            if port is None:
                port = first_free_port(offer.ports, taken)
                if port is None:
                    return None
                taken.add(port)
            zk_ports[name] = port

        return Reservation(
            cpus=self.config.cpus,
            mem=self.config.mem,
            ui_port=ui_port,
            zk_ports=zk_ports,
        )


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 7: CLUSTER
# The aggregate root. Everything the framework persists hangs off this.
# ─────────────────────────────────────────────────────────────────────────────

class Cluster(BaseModel):
    """
    Ordered registry of managed servers, keyed by id.

    Insertion order is registration order: status listings and offer
    evaluation both walk servers in this order.

    Thread safety:
        Offer callbacks, status updates and admin requests arrive on different
        threads. Every read-modify-write of the cluster (and of anything it
        owns) must hold `cluster.lock`. The lock is re-entrant so service
        methods can call each other while holding it.
    """
    servers: Dict[str, Server] = Field(default_factory=dict)

    _lock: Any = PrivateAttr(default_factory=threading.RLock)

    @model_validator(mode="after")
    def _check_ids(self) -> "Cluster":
        for key, server in self.servers.items():
            if key != server.id:
                raise ValueError(f"server stored under {key!r} has id {server.id!r}")
        return self

    @property
    def lock(self) -> threading.RLock:
        return self._lock

    def get_server(self, server_id: str) -> Optional[Server]:
        return self.servers.get(server_id)

    def require_server(self, server_id: str) -> Server:
        server = self.servers.get(server_id)
        if server is None:
            raise ServerNotFoundError(f"server {server_id!r} not found")
        return server

    def add_server(self, server: Server) -> Server:
        if server.id in self.servers:
            raise ServerAlreadyExistsError(f"server {server.id!r} already exists")
        self.servers[server.id] = server
        return server

    def remove_server(self, server_id: str) -> Server:
        server = self.require_server(server_id)
        del self.servers[server_id]
        return server

    def servers_in(self, *states: ServerState) -> List[Server]:
        return [s for s in self.servers.values() if s.state in states]

    def find_by_task_id(self, task_id: str) -> Optional[Server]:
        for server in self.servers.values():
            if server.task is not None and server.task.id == task_id:
                return server
        return None

    def active_attribute_values(self, attribute: str, exclude_id: Optional[str] = None) -> List[str]:
        """
        Values of `attribute` held by active (staging/running) servers.

        This is the production lookup behind "unique" constraints: a server
        being placed must not share the value with any *other* active server.
        """
        values: List[str] = []
        for server in self.servers.values():
            if server.id == exclude_id or not server.is_active or server.task is None:
                continue
            if attribute == "hostname":
                values.append(server.task.hostname)
            elif attribute in server.task.attributes:
                values.append(server.task.attributes[attribute])
        return values

    def uses_lookup_for(self, server_id: str) -> Callable[[str], List[str]]:
        return lambda attribute: self.active_attribute_values(attribute, exclude_id=server_id)
