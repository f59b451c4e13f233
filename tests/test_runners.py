import threading
from dataclasses import dataclass, field

import pytest

from logmonitor.locks import LockManager
from logmonitor.runners import CollectionRunner, DiscoveryRunner, RunnerOptions


@dataclass
class Server:
    id: str
    name: str
    status: str = "active"
    backoff_until: object = None


@dataclass
class LogFile:
    id: str
    server_id: str
    path: str
    is_active: bool = True
    log_type: str = "app"


class Store:
    def __init__(self):
        self.servers = []
        self.log_files = {}
        self.entries = {}
        self.lock = threading.Lock()
        self.fail_list_servers = False
        self.fail_list_logs = False

    def list_servers(self):
        if self.fail_list_servers:
            raise RuntimeError("database down")
        return list(self.servers)

    def list_log_files_by_server(self, server_id):
        if self.fail_list_logs:
            raise RuntimeError("log listing failed")
        return sorted(self.log_files.get(server_id, []), key=lambda item: item.path)

    def add_log_file(self, log_file):
        self.log_files.setdefault(log_file.server_id, []).append(log_file)

    def count_entries(self, log_file_id):
        return self.entries.get(log_file_id, 0)


class Collector:
    def __init__(self, store, failing=()):
        self.store = store
        self.failing = set(failing)
        self.calls = []

    def collect_log_file(self, server, log_file):
        with self.store.lock:
            self.calls.append(log_file.path)
        if log_file.path in self.failing:
            raise RuntimeError(f"cannot read {log_file.path}")
        with self.store.lock:
            self.store.entries[log_file.id] = self.store.entries.get(log_file.id, 0) + 1


class Discovery:
    def __init__(self, store, paths, fail=False):
        self.store = store
        self.paths = paths
        self.fail = fail
        self.calls = []

    def discover_and_sync(self, server):
        self.calls.append(server.id)
        if self.fail:
            raise RuntimeError("ssh unreachable")
        for index, path in enumerate(self.paths):
            log_type = "auth" if "auth" in path else "syslog"
            self.store.add_log_file(LogFile(id=f"{server.id}-{index}", server_id=server.id, path=path, log_type=log_type))
        return len(self.paths)


@dataclass
class Health:
    skip: set = field(default_factory=set)
    events: list = field(default_factory=list)

    def should_skip(self, server):
        return server.id in self.skip

    def record_success(self, server_id):
        self.events.append(("success", server_id))

    def record_failure(self, server, error):
        self.events.append(("failure", server.id, str(error)))

    def record_degraded(self, server_id, message):
        self.events.append(("degraded", server_id, message))


def prepare_collection_store():
    store = Store()
    server = Server(id="srv-collection", name="collection-host")
    store.servers.append(server)
    active = LogFile(id="log-active", server_id=server.id, path="/var/log/active.log", is_active=True)
    inactive = LogFile(id="log-inactive", server_id=server.id, path="/var/log/inactive.log", is_active=False)
    store.add_log_file(active)
    store.add_log_file(inactive)
    return store, server, active, inactive


def test_collection_runner_collects_only_active_log_files():
    store, server, active, inactive = prepare_collection_store()
    collector = Collector(store)
    runner = CollectionRunner(
        store, store, collector, options=RunnerOptions(max_server_workers=2, max_log_file_workers_per_host=2)
    )
    runner.run()
    assert store.count_entries(active.id) == 1
    assert store.count_entries(inactive.id) == 0
    assert collector.calls == ["/var/log/active.log"]
    assert server.id == "srv-collection"


def test_collection_runner_skips_locked_server():
    store, server, active, _ = prepare_collection_store()
    lock_manager = LockManager()
    unlock = lock_manager.try_lock("server:" + server.id)
    assert unlock is not None
    try:
        collector = Collector(store)
        CollectionRunner(store, store, collector, lock_manager=lock_manager).run()
        assert store.count_entries(active.id) == 0
        assert collector.calls == []
    finally:
        unlock()


def test_collection_runner_releases_lock_after_run():
    store, server, active, _ = prepare_collection_store()
    lock_manager = LockManager()
    CollectionRunner(store, store, Collector(store), lock_manager=lock_manager).run()
    assert store.count_entries(active.id) == 1
    unlock = lock_manager.try_lock("server:" + server.id)
    assert unlock is not None
    unlock()


def test_collection_runner_skips_inactive_server():
    store, server, active, _ = prepare_collection_store()
    server.status = "inactive"
    health = Health()
    CollectionRunner(store, store, Collector(store), health=health).run()
    assert store.count_entries(active.id) == 0
    assert health.events == []


def test_collection_runner_skips_server_in_backoff():
    store, server, active, _ = prepare_collection_store()
    health = Health(skip={server.id})
    CollectionRunner(store, store, Collector(store), health=health).run()
    assert store.count_entries(active.id) == 0
    assert health.events == []


def test_collection_runner_records_success():
    store, server, _, _ = prepare_collection_store()
    health = Health()
    CollectionRunner(store, store, Collector(store), health=health).run()
    assert health.events == [("success", server.id)]


def test_collection_runner_records_failure_when_all_fail():
    store, server, _, _ = prepare_collection_store()
    health = Health()
    CollectionRunner(store, store, Collector(store, failing={"/var/log/active.log"}), health=health).run()
    assert health.events == [("failure", server.id, "cannot read /var/log/active.log")]


def test_collection_runner_records_degraded_on_partial_failure():
    store, server, _, _ = prepare_collection_store()
    store.add_log_file(LogFile(id="log-second", server_id=server.id, path="/var/log/second.log"))
    health = Health()
    collector = Collector(store, failing={"/var/log/second.log"})
    CollectionRunner(
        store, store, collector, health=health, options=RunnerOptions(max_log_file_workers_per_host=2)
    ).run()
    assert health.events == [("degraded", server.id, "collection partially failed for 1 of 2 log files")]
    assert store.count_entries("log-active") == 1


def test_collection_runner_records_failure_when_listing_log_files_fails():
    store, server, _, _ = prepare_collection_store()
    store.fail_list_logs = True
    health = Health()
    CollectionRunner(store, store, Collector(store), health=health).run()
    assert health.events == [("failure", server.id, "log listing failed")]


def test_collection_runner_without_active_log_files_records_nothing():
    store = Store()
    server = Server(id="srv-empty", name="empty-host")
    store.servers.append(server)
    store.add_log_file(LogFile(id="log-off", server_id=server.id, path="/var/log/off.log", is_active=False))
    health = Health()
    collector = Collector(store)
    CollectionRunner(store, store, collector, health=health).run()
    assert collector.calls == []
    assert health.events == []


def test_collection_runner_tolerates_list_servers_error():
    store, _, active, _ = prepare_collection_store()
    store.fail_list_servers = True
    CollectionRunner(store, store, Collector(store)).run()
    assert store.count_entries(active.id) == 0


def test_collection_runner_does_nothing_when_stopped():
    store, _, active, _ = prepare_collection_store()
    stop = threading.Event()
    stop.set()
    CollectionRunner(store, store, Collector(store), stop_event=stop).run()
    assert store.count_entries(active.id) == 0


def test_collection_runner_processes_many_servers():
    store = Store()
    for index in range(5):
        server = Server(id=f"srv-{index}", name=f"host-{index}")
        store.servers.append(server)
        store.add_log_file(LogFile(id=f"log-{index}", server_id=server.id, path=f"/var/log/{index}.log"))
    CollectionRunner(store, store, Collector(store), options=RunnerOptions(max_server_workers=3)).run()
    assert [store.count_entries(f"log-{index}") for index in range(5)] == [1] * 5


@pytest.mark.parametrize(
    "options, expected",
    [
        (RunnerOptions(), RunnerOptions(1, 1)),
        (RunnerOptions(-3, 0), RunnerOptions(1, 1)),
        (RunnerOptions(4, 2), RunnerOptions(4, 2)),
    ],
)
def test_runner_options_are_normalized(options, expected):
    store = Store()
    assert CollectionRunner(store, store, Collector(store), options=options).options == expected


def prepare_discovery_store():
    store = Store()
    server = Server(id="srv-discovery-cron", name="discovery-cron-host")
    store.servers.append(server)
    return store, server


def test_discovery_runner_synchronizes_discovered_logs():
    store, server = prepare_discovery_store()
    discovery = Discovery(store, ["/var/log/syslog", "/var/log/auth.log"])
    DiscoveryRunner(store, discovery, options=RunnerOptions(max_server_workers=2)).run()
    logs = store.list_log_files_by_server(server.id)
    assert len(logs) == 2
    assert logs[0].log_type == "auth"
    assert logs[1].log_type == "syslog"


def test_discovery_runner_skips_locked_server():
    store, server = prepare_discovery_store()
    lock_manager = LockManager()
    unlock = lock_manager.try_lock("server:" + server.id)
    assert unlock is not None
    try:
        discovery = Discovery(store, ["/var/log/syslog"])
        DiscoveryRunner(store, discovery, lock_manager=lock_manager).run()
        assert store.list_log_files_by_server(server.id) == []
        assert discovery.calls == []
    finally:
        unlock()


def test_discovery_runner_records_success_and_failure():
    store, server = prepare_discovery_store()
    health = Health()
    DiscoveryRunner(store, Discovery(store, ["/var/log/syslog"]), health=health).run()
    assert health.events == [("success", server.id)]

    failing_health = Health()
    DiscoveryRunner(store, Discovery(store, [], fail=True), health=failing_health).run()
    assert failing_health.events == [("failure", server.id, "ssh unreachable")]


def test_discovery_runner_skips_inactive_and_backoff_servers():
    store = Store()
    inactive = Server(id="srv-off", name="off", status="inactive")
    backoff = Server(id="srv-wait", name="wait")
    store.servers.extend([inactive, backoff])
    discovery = Discovery(store, ["/var/log/syslog"])
    DiscoveryRunner(store, discovery, health=Health(skip={backoff.id})).run()
    assert discovery.calls == []


def test_discovery_runner_tolerates_list_servers_error():
    store, _ = prepare_discovery_store()
    store.fail_list_servers = True
    discovery = Discovery(store, ["/var/log/syslog"])
    DiscoveryRunner(store, discovery).run()
    assert discovery.calls == []