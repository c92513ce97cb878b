"""
exhibitor_mesos/control_plane/driver.py
───────────────────────────────────────
The two capabilities the core needs from the Mesos scheduler driver.

Registration, reconnection and status-update subscription belong to the
driver plumbing outside this package. The core only ever asks the driver to
launch a task on an offer or to kill a task.
"""

from __future__ import annotations

import logging
from typing import List, Protocol, Tuple

from exhibitor_mesos.shared.models import Offer, TaskDescriptor

logger = logging.getLogger(__name__)


class SchedulerDriver(Protocol):
    """Launch/kill capabilities of a Mesos scheduler driver."""

    def launch_task(self, offer: Offer, task: TaskDescriptor) -> None:
        """Launch one task consuming resources from `offer`."""

    def kill_task(self, task_id: str) -> None:
        """Ask Mesos to kill a running or staging task."""


class RecordingDriver:
    """
    In-memory driver that records calls instead of talking to Mesos.

    Used by tests and by dry runs of the scheduler against canned offers.
    """

    def __init__(self) -> None:
        self.launched_tasks: List[Tuple[Offer, TaskDescriptor]] = []
        self.killed_tasks: List[str] = []

    def launch_task(self, offer: Offer, task: TaskDescriptor) -> None:
        logger.debug("RecordingDriver: launch %s on offer %s", task.task_id, offer.id)
        self.launched_tasks.append((offer, task))

    def kill_task(self, task_id: str) -> None:
        logger.debug("RecordingDriver: kill %s", task_id)
        self.killed_tasks.append(task_id)
