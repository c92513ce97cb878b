"""
tests/test_orchestration_service.py
───────────────────────────────────
Tests for exhibitor_mesos/control_plane/orchestration_service.py.

Test groups:
    Group 1 - Admin operations (add / update / start / stop / remove / status)
    Group 2 - Offers through the service
    Group 3 - Status updates and the failure cycle
    Group 4 - Persistence and rollback
    Group 5 - Concurrency
"""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

import pytest

from placement_core import Range
from exhibitor_mesos.control_plane import (
    ALL_SERVERS_RUNNING,
    AdmissionRejectedError,
    OrchestratorService,
    RecordingDriver,
    build_service,
)
from exhibitor_mesos.control_plane import orchestration_service
from exhibitor_mesos.shared.config import SchedulerConfig
from exhibitor_mesos.shared.models import (
    Cluster,
    InvalidServerStateError,
    Offer,
    ServerAlreadyExistsError,
    ServerNotFoundError,
    ServerState,
    TaskState,
)
from exhibitor_mesos.storage import (
    FileStorage,
    SnapshotDeserializationError,
    Storage,
    StorageIOError,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class FlakyStorage(Storage):
    """FileStorage-like store whose save() can be switched to fail."""

    def __init__(self) -> None:
        self.saved: Optional[str] = None
        self.saves = 0
        self.failing = False

    def save(self, cluster: Cluster) -> None:
        if self.failing:
            raise StorageIOError("disk on fire")
        self.saves += 1
        self.saved = cluster.model_dump_json()

    def load(self) -> Optional[Cluster]:
        return Cluster.model_validate_json(self.saved) if self.saved else None


def make_offer(hostname: str = "slave0", **kwargs) -> Offer:
    kwargs.setdefault("cpus", 1.0)
    kwargs.setdefault("mem", 1024.0)
    kwargs.setdefault("ports", "31000..32000")
    return Offer(hostname=hostname, slave_id=f"id-{hostname}", **kwargs)


@pytest.fixture
def driver() -> RecordingDriver:
    return RecordingDriver()


@pytest.fixture
def storage(tmp_path: Path) -> FileStorage:
    return FileStorage(tmp_path / "cluster.json")


@pytest.fixture
def service(driver: RecordingDriver, storage: FileStorage) -> OrchestratorService:
    config = SchedulerConfig(failover_delay="1m", failover_max_delay="10m", stickiness_period="10m")
    return OrchestratorService(Cluster(), driver, storage, config)


def launch(service: OrchestratorService, server_id: str = "0", hostname: str = "slave0") -> str:
    """add + start + accept an offer; returns the launched task id."""
    service.add(server_id)
    service.start(server_id)
    assert service.accept_offer(make_offer(hostname), NOW) is None
    return service.get_server(server_id).task.id


# ─────────────────────────────────────────────────────────────────────────────
# Group 1 - Admin operations
# ─────────────────────────────────────────────────────────────────────────────

class TestAdminOperations:
    def test_add_registers_an_added_server(self, service) -> None:
        server = service.add("0", {"cpus": 0.5, "mem": 512, "ports": "31000..31100"},
                             constraints="hostname=unique")
        assert server.state == ServerState.ADDED
        assert server.config.id == "0"
        assert server.config.cpus == 0.5
        assert server.config.ports == [Range(start=31000, end=31100)]
        assert [str(c) for c in server.constraints["hostname"]] == ["unique"]
        assert server.failover.interval == timedelta(minutes=1)
        assert server.stickiness.period == timedelta(minutes=10)

    def test_add_with_defaults(self, service) -> None:
        server = service.add("0")
        assert server.config.cpus == 0.2
        assert server.config.mem == 256.0
        assert server.task is None

    def test_add_duplicate_rejected(self, service) -> None:
        service.add("0")
        with pytest.raises(ServerAlreadyExistsError):
            service.add("0")
        assert len(service.status()) == 1

    @pytest.mark.parametrize("bad_id", ["", "a b", "a,b", "a=b", "a/b"])
    def test_add_invalid_id_rejected(self, service, bad_id: str) -> None:
        with pytest.raises(AdmissionRejectedError):
            service.add(bad_id)
        assert service.status() == []

    def test_add_invalid_values_rejected(self, service) -> None:
        with pytest.raises(AdmissionRejectedError):
            service.add("0", {"cpus": -1})
        with pytest.raises(AdmissionRejectedError):
            service.add("0", {"ports": "9..1"})
        with pytest.raises(AdmissionRejectedError):
            service.add("0", constraints="hostname=groupBy")
        with pytest.raises(AdmissionRejectedError):
            service.add("0", {"shared_config_override": {"client-port": "zk"}})
        assert service.status() == []

    def test_returned_server_is_a_copy(self, service) -> None:
        server = service.add("0")
        server.state = ServerState.RUNNING
        assert service.get_server("0").state == ServerState.ADDED

    def test_status_in_registration_order(self, service) -> None:
        for sid in ("2", "0", "1"):
            service.add(sid)
        assert [s.id for s in service.status()] == ["2", "0", "1"]
        assert service.get_server("9") is None

    def test_update_routes_config_options(self, service) -> None:
        service.add("0")
        server = service.update("0", options={
            "zkconfigconnect": "192.168.3.1:2181",
            "zookeeper-install-directory": "/tmp/zookeeper",
        })
        assert server.config.exhibitor_config == {"zkconfigconnect": "192.168.3.1:2181"}
        assert server.config.shared_config_override == {"zookeeper-install-directory": "/tmp/zookeeper"}

        server = service.update("0", options={"zkconfigpollms": "5000"})
        assert server.config.exhibitor_config == {
            "zkconfigconnect": "192.168.3.1:2181",
            "zkconfigpollms": "5000",
        }

    def test_update_only_changes_given_fields(self, service) -> None:
        service.add("0", {"cpus": 0.5, "mem": 512})
        server = service.update(
            "0", mem=1024, ports="31000", shared_config_change_backoff=5000,
            constraints="rack=like:1-.*",
            failover_delay="5s", failover_max_tries=3, stickiness_period="1h",
        )
        assert server.config.cpus == 0.5
        assert server.config.mem == 1024
        assert server.config.ports == [Range.single(31000)]
        assert server.config.shared_config_change_backoff == 5000
        assert list(server.constraints) == ["rack"]
        assert server.failover.interval == timedelta(seconds=5)
        assert server.failover.max_delay == timedelta(minutes=10)
        assert server.failover.max_tries == 3
        assert server.stickiness.period == timedelta(hours=1)

    def test_update_rejects_bad_input_without_changes(self, service) -> None:
        service.add("0", {"cpus": 0.5})
        with pytest.raises(AdmissionRejectedError):
            service.update("0", options={"bogus": "1"})
        with pytest.raises(AdmissionRejectedError):
            service.update("0", cpus=-1)
        with pytest.raises(AdmissionRejectedError):
            service.update("0", failover_delay="soon")
        with pytest.raises(ServerNotFoundError):
            service.update("9", cpus=1)
        assert service.get_server("0").config.cpus == 0.5

    def test_start_and_stop(self, service) -> None:
        service.add("0")
        assert service.start("0").state == ServerState.STOPPED
        assert service.start("0").state == ServerState.STOPPED, "start is idempotent"
        assert service.stop("0", NOW).state == ServerState.ADDED
        assert service.stop("0", NOW).state == ServerState.ADDED

    def test_start_unknown_server(self, service) -> None:
        with pytest.raises(ServerNotFoundError):
            service.start("9")

    def test_start_clears_failure_history(self, service) -> None:
        service.add("0")
        service.cluster.servers["0"].failover.register_failure(NOW)
        assert service.start("0").failover.failures == 0

    def test_remove(self, service) -> None:
        service.add("0")
        service.add("1")
        service.start("1")
        service.remove("0")
        service.remove("1")
        assert service.status() == []
        with pytest.raises(ServerNotFoundError):
            service.remove("0")

    def test_remove_active_server_rejected(self, service) -> None:
        launch(service, "0")
        with pytest.raises(InvalidServerStateError):
            service.remove("0")
        assert service.get_server("0").state == ServerState.STAGING


# ─────────────────────────────────────────────────────────────────────────────
# Group 2 - Offers
# ─────────────────────────────────────────────────────────────────────────────

class TestOffers:
    def test_added_servers_are_not_scheduled(self, service, driver) -> None:
        service.add("0")
        assert service.accept_offer(make_offer(), NOW) == ALL_SERVERS_RUNNING
        assert driver.launched_tasks == []

    def test_started_server_is_launched(self, service, driver) -> None:
        launch(service, "0")
        assert len(driver.launched_tasks) == 1
        assert service.get_server("0").state == ServerState.STAGING

    def test_resource_offers_reports_declines(self, service, driver) -> None:
        service.add("0", {"cpus": 1.0})
        service.start("0")
        small = make_offer("slave0", cpus=0.5)
        big = make_offer("slave1", cpus=2.0)
        leftover = make_offer("slave2")

        declined = service.resource_offers([small, big, leftover], NOW)

        assert declined == {small.id: "cpus 0.5 < 1.0", leftover.id: ALL_SERVERS_RUNNING}
        assert driver.launched_tasks[0][0] is big

    def test_stop_kills_the_task(self, service, driver) -> None:
        task_id = launch(service, "0")
        server = service.stop("0", NOW)
        assert driver.killed_tasks == [task_id]
        assert server.state == ServerState.ADDED
        assert server.stickiness.stop_time == NOW
        assert server.stickiness.hostname == "slave0"


# ─────────────────────────────────────────────────────────────────────────────
# Group 3 - Status updates
# ─────────────────────────────────────────────────────────────────────────────

class TestStatusUpdates:
    def test_running_confirms_staging(self, service) -> None:
        task_id = launch(service, "0")
        server = service.on_status_update(task_id, TaskState.RUNNING, now=NOW)
        assert server.state == ServerState.RUNNING
        assert server.task.id == task_id

    def test_mesos_state_names_accepted(self, service) -> None:
        task_id = launch(service, "0")
        assert service.on_status_update(task_id, "TASK_RUNNING", now=NOW).state == ServerState.RUNNING

    def test_failure_returns_server_to_stopped(self, service) -> None:
        task_id = launch(service, "0")
        service.on_status_update(task_id, "running", now=NOW)

        server = service.on_status_update(task_id, TaskState.FAILED, "exit 1", now=NOW)

        assert server.state == ServerState.STOPPED
        assert server.task is None
        assert server.failover.failures == 1
        assert server.failover.failure_time == NOW
        assert server.stickiness.stop_time == NOW

    @pytest.mark.parametrize("state", [
        "finished", "killed", "lost", "error",
        "TASK_DROPPED", "TASK_GONE", "TASK_GONE_BY_OPERATOR", "TASK_UNREACHABLE",
    ])
    def test_every_terminal_state_counts_as_failure(self, service, storage, state: str) -> None:
        task_id = launch(service, "0")
        server = service.on_status_update(task_id, state, now=NOW)
        assert server.state == ServerState.STOPPED
        assert server.task is None
        assert server.failover.failures == 1
        assert storage.load().servers["0"].state == ServerState.STOPPED

    @pytest.mark.parametrize("state", ["TASK_STARTING", "TASK_KILLING", "TASK_UNKNOWN"])
    def test_non_terminal_states_leave_the_server_alone(self, service, state: str) -> None:
        task_id = launch(service, "0")
        server = service.on_status_update(task_id, state, now=NOW)
        assert server.state == ServerState.STAGING
        assert server.task.id == task_id
        assert server.failover.failures == 0

    def test_unrecognised_state_name_is_ignored(self, service) -> None:
        task_id = launch(service, "0")
        assert service.on_status_update(task_id, "TASK_EXPLODED", now=NOW) is None
        server = service.get_server("0")
        assert server.state == ServerState.STAGING
        assert server.task.id == task_id

    def test_kill_after_operator_stop_is_not_a_failure(self, service, driver) -> None:
        task_id = launch(service, "0")
        service.stop("0", NOW)
        server = service.on_status_update(task_id, TaskState.KILLED, now=NOW)
        assert server.state == ServerState.ADDED
        assert server.task is None
        assert server.failover.failures == 0

    def test_running_after_stop_is_killed_again(self, service, driver) -> None:
        task_id = launch(service, "0")
        service.stop("0", NOW)
        service.on_status_update(task_id, TaskState.RUNNING, now=NOW)
        assert driver.killed_tasks == [task_id, task_id]
        assert service.get_server("0").state == ServerState.ADDED

    def test_unknown_task_is_ignored(self, service, storage) -> None:
        assert service.on_status_update("exhibitor-9-abc", TaskState.RUNNING, now=NOW) is None
        assert service.on_status_update("something-else", TaskState.FAILED, now=NOW) is None
        assert storage.load() is None

    def test_failure_cycle_with_backoff_and_stickiness(self, service, driver) -> None:
        task_id = launch(service, "0", "slave0")
        service.on_status_update(task_id, TaskState.RUNNING, now=NOW)
        service.on_status_update(task_id, TaskState.FAILED, now=NOW)

        assert service.accept_offer(make_offer("slave0"), NOW) == "waiting 1m after failure"

        later = NOW + timedelta(minutes=1)
        assert service.accept_offer(make_offer("slave1"), later) == "hostname != stickiness hostname"
        assert service.accept_offer(make_offer("slave0"), later) is None

        server = service.get_server("0")
        assert server.state == ServerState.STAGING
        assert server.task.hostname == "slave0"
        assert server.failover.failures == 1, "only a running confirmation resets failures"

        service.on_status_update(server.task.id, TaskState.RUNNING, now=later)
        assert service.get_server("0").failover.failures == 0

    def test_max_tries_stops_scheduling_until_restart(self, service) -> None:
        service.add("0")
        service.update("0", failover_max_tries=1)
        service.start("0")
        service.accept_offer(make_offer(), NOW)
        task_id = service.get_server("0").task.id
        service.on_status_update(task_id, TaskState.FAILED, now=NOW)

        far_later = NOW + timedelta(days=1)
        assert service.accept_offer(make_offer(), far_later) == "max tries exceeded"

        service.stop("0", far_later)
        service.start("0")
        assert service.accept_offer(make_offer(), far_later) is None


# ─────────────────────────────────────────────────────────────────────────────
# Group 4 - Persistence
# ─────────────────────────────────────────────────────────────────────────────

class TestPersistence:
    def test_every_mutation_is_saved(self, service, storage) -> None:
        service.add("0", {"cpus": 0.5})
        assert storage.load().servers["0"].state == ServerState.ADDED
        service.start("0")
        assert storage.load().servers["0"].state == ServerState.STOPPED
        service.accept_offer(make_offer(), NOW)
        assert storage.load().servers["0"].state == ServerState.STAGING

    def test_restart_restores_the_cluster(self, driver, tmp_path) -> None:
        config = SchedulerConfig(storage=f"file:{tmp_path / 'cluster.json'}")
        first = build_service(driver, config, configure_logging=False)
        first.add("0", {"ports": "31000..31100"}, constraints="hostname=unique")
        first.add("1")
        task_id = launch(first, "2")

        second = build_service(RecordingDriver(), config, configure_logging=False)
        assert [s.id for s in second.status()] == ["0", "1", "2"]
        assert second.status() == first.status()

        server = second.on_status_update(task_id, TaskState.RUNNING, now=NOW)
        assert server.state == ServerState.RUNNING

    def test_build_service_without_snapshot(self, driver, tmp_path) -> None:
        service = build_service(driver, storage=FileStorage(tmp_path / "none.json"),
                                configure_logging=False)
        assert service.status() == []

    def test_build_service_sets_up_logging_at_configured_level(
        self, driver, tmp_path, monkeypatch
    ) -> None:
        calls = []
        monkeypatch.setattr(
            orchestration_service, "setup_logging",
            lambda component, level: calls.append((component, level)),
        )
        config = SchedulerConfig(log_level="debug", storage=f"file:{tmp_path / 'c.json'}")
        build_service(driver, config)
        assert calls == [("scheduler", "DEBUG")]

        build_service(driver, config, configure_logging=False)
        assert len(calls) == 1

    def test_corrupt_snapshot_prevents_startup(self, driver, tmp_path) -> None:
        path = tmp_path / "cluster.json"
        path.write_text("garbage", encoding="utf-8")
        with pytest.raises(SnapshotDeserializationError):
            build_service(driver, storage=FileStorage(path), configure_logging=False)

    def test_failed_save_rolls_back_admin_change(self, driver) -> None:
        storage = FlakyStorage()
        service = OrchestratorService(Cluster(), driver, storage)
        service.add("0")

        storage.failing = True
        with pytest.raises(StorageIOError):
            service.add("1")
        with pytest.raises(StorageIOError):
            service.start("0")

        assert [s.id for s in service.status()] == ["0"]
        assert service.get_server("0").state == ServerState.ADDED

        storage.failing = False
        assert service.start("0").state == ServerState.STOPPED

    def test_failed_save_after_launch_keeps_the_task(self, driver) -> None:
        storage = FlakyStorage()
        service = OrchestratorService(Cluster(), driver, storage)
        service.add("0")
        service.start("0")

        storage.failing = True
        offer = make_offer()
        declined = service.resource_offers([offer], NOW)

        assert declined[offer.id].startswith("storage error:")
        assert len(driver.launched_tasks) == 1
        server = service.get_server("0")
        assert server.state == ServerState.STAGING, "the task exists in Mesos"

    def test_no_save_when_nothing_changes(self, driver) -> None:
        storage = FlakyStorage()
        service = OrchestratorService(Cluster(), driver, storage)
        service.add("0")
        service.start("0")
        saves = storage.saves
        service.start("0")
        service.status()
        assert storage.saves == saves


# ─────────────────────────────────────────────────────────────────────────────
# Group 5 - Concurrency
# ─────────────────────────────────────────────────────────────────────────────

class TestConcurrency:
    def test_concurrent_adds_all_land(self, service, storage) -> None:
        barrier = threading.Barrier(16)

        def worker(i: int) -> None:
            barrier.wait()
            service.add(f"s{i}")
            service.start(f"s{i}")

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(16)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(service.status()) == 16
        assert all(s.state == ServerState.STOPPED for s in service.status())
        assert len(storage.load().servers) == 16

    def test_concurrent_offers_launch_a_server_once(self, service, driver) -> None:
        service.add("0")
        service.start("0")
        barrier = threading.Barrier(8)
        results = []

        def worker(i: int) -> None:
            barrier.wait()
            results.append(service.accept_offer(make_offer(f"slave{i}"), NOW))

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(driver.launched_tasks) == 1
        assert results.count(None) == 1
        assert results.count(ALL_SERVERS_RUNNING) == 7
