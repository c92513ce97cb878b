"""
exhibitor_mesos/control_plane - the scheduling brain.

Public API:

    Offer acceptance:
        accept_offer()          - evaluate one offer against stopped servers
        build_task()            - TaskDescriptor for a server on an offer

    Admission:
        AdmissionRejectedError  - raised by admission control
        route_options()         - split flat options into exhibitor/shared config
        parse_map()             - "k=v,k2=v2" → dict

    Service:
        OrchestratorService     - lock-guarded admin API + driver callbacks
        build_service()         - load the snapshot and wire a service

    Driver:
        SchedulerDriver         - launch_task / kill_task capability protocol
        RecordingDriver         - in-memory driver for tests and dry runs
"""

from exhibitor_mesos.control_plane.admission_controller import (
    AdmissionRejectedError,
    parse_map,
    route_options,
)
from exhibitor_mesos.control_plane.driver import RecordingDriver, SchedulerDriver
from exhibitor_mesos.control_plane.scheduler import (
    ALL_SERVERS_RUNNING,
    accept_offer,
    build_task,
)
from exhibitor_mesos.control_plane.orchestration_service import (
    OrchestratorService,
    build_service,
)

__all__ = [
    "AdmissionRejectedError",
    "parse_map",
    "route_options",
    "RecordingDriver",
    "SchedulerDriver",
    "ALL_SERVERS_RUNNING",
    "accept_offer",
    "build_task",
    "OrchestratorService",
    "build_service",
]
