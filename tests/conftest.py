from __future__ import annotations

import itertools
from datetime import datetime, timedelta, timezone

import pytest

from edgeagent import db
from edgeagent.dataservice import DataServiceOrchestrator
from edgeagent.docker_ops import ContainerInfo, ContainerLog, LogLine, NetworkInfo
from edgeagent.errors import RuntimeCallError
from edgeagent.ledger import StatusLedger
from edgeagent.manifest import parse_manifest
from edgeagent.settings import Settings


class FakeRuntime:
    """In-memory container engine with just enough behaviour for lifecycle tests.

    ``fail[op]`` makes an operation raise ``fail_with``: ``True`` fails every
    call, a set fails only calls whose key (image ref, container id/name) is in it.
    """

    _epoch = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __init__(self) -> None:
        self.images: dict[str, str] = {}  # ref -> image id
        self.containers: dict[str, dict] = {}  # id -> record
        self.networks: dict[str, dict] = {}  # name -> record
        self.pulled: list[str] = []
        self.created_names: list[str] = []
        self.calls: list[str] = []
        self.fail: dict[str, object] = {}
        self.logs: dict[str, list[LogLine]] = {}  # container id -> lines
        self.log_windows: list[tuple] = []
        self.fail_with: type[RuntimeCallError] = RuntimeCallError
        self._seq = itertools.count(1)

    def _maybe_fail(self, op: str, key: str | None = None) -> None:
        self.calls.append(op)
        rule = self.fail.get(op)
        if rule is True or (isinstance(rule, set) and key in rule):
            raise self.fail_with(f"{op} {key or ''} failed".strip())

    @staticmethod
    def _matches(labels: dict[str, str], uid) -> bool:
        return all(labels.get(k) == v for k, v in uid.labels.items())

    def _info(self, cid: str) -> ContainerInfo:
        c = self.containers[cid]
        return ContainerInfo(id=cid, image_id=c["image_id"], state=c["state"], status=c["state"], names=[c["name"]])

    # test helpers

    def add_image(self, ref: str) -> str:
        self.images[ref] = f"sha256:{ref}"
        return self.images[ref]

    def add_foreign_container(self, ref: str, state: str = "running") -> str:
        cid = f"foreign{next(self._seq)}"
        self.containers[cid] = {"name": cid, "image_id": self.images[ref], "state": state, "labels": {}, "network": ""}
        return cid

    def container_states(self, uid) -> list[str]:
        return [c.state for c in self.list_containers(uid)]

    # ContainerRuntime

    def pull_image(self, registry) -> None:
        self._maybe_fail("pull_image", registry.image_name)
        self.add_image(registry.image_name)
        self.pulled.append(registry.image_name)

    def image_exists(self, ref: str) -> bool:
        self._maybe_fail("image_exists", ref)
        return ref in self.images

    def image_remove(self, image_id: str) -> None:
        self._maybe_fail("image_remove", image_id)
        for ref in [r for r, i in self.images.items() if i == image_id]:
            del self.images[ref]

    def create_network(self, application_id: str, labels: dict[str, str]) -> str:
        self._maybe_fail("create_network", application_id)
        n = next(self._seq)
        name = f"edge-{application_id}-{n}"
        self.networks[name] = {
            "id": f"net{n}",
            "labels": dict(labels),
            "created": (self._epoch + timedelta(seconds=n)).isoformat(),
        }
        return name

    def list_networks(self, uid) -> list[NetworkInfo]:
        self._maybe_fail("list_networks")
        return [
            NetworkInfo(id=n["id"], name=name, created=n["created"], labels=n["labels"])
            for name, n in self.networks.items()
            if self._matches(n["labels"], uid)
        ]

    def network_prune(self, uid) -> None:
        self._maybe_fail("network_prune")
        in_use = {c["network"] for c in self.containers.values()}
        for name in [k for k, n in self.networks.items() if self._matches(n["labels"], uid) and k not in in_use]:
            del self.networks[name]

    def create_and_start_container(self, cfg) -> str:
        if cfg.image_ref not in self.images:
            raise RuntimeCallError(f"No such image: {cfg.image_ref}")
        if any(c["name"] == cfg.container_name for c in self.containers.values()):
            raise RuntimeCallError(f"Conflict: container name {cfg.container_name} is in use")
        cid = f"c{next(self._seq)}"
        self.containers[cid] = {
            "name": cfg.container_name,
            "image_id": self.images[cfg.image_ref],
            "state": "created",
            "labels": dict(cfg.labels),
            "network": cfg.network_name,
        }
        self.created_names.append(cfg.container_name)
        # Like the engine: the container exists even when starting it fails.
        self._maybe_fail("create_and_start_container", cfg.container_name)
        self.containers[cid]["state"] = "running"
        return cid

    def stop_container(self, container_id: str) -> None:
        self._maybe_fail("stop_container", container_id)
        self.containers[container_id]["state"] = "exited"

    def start_container(self, container_id: str) -> None:
        self._maybe_fail("start_container", container_id)
        self.containers[container_id]["state"] = "running"

    def stop_and_remove_container(self, container_id: str) -> None:
        self._maybe_fail("stop_and_remove_container", container_id)
        self.containers.pop(container_id, None)

    def list_containers(self, uid) -> list[ContainerInfo]:
        self._maybe_fail("list_containers")
        return [self._info(cid) for cid, c in self.containers.items() if self._matches(c["labels"], uid)]

    def list_all_containers(self) -> list[ContainerInfo]:
        self._maybe_fail("list_all_containers")
        return [self._info(cid) for cid in self.containers]

    def container_logs(self, container_id: str, since=None, until=None) -> ContainerLog:
        self._maybe_fail("container_logs", container_id)
        self.log_windows.append((container_id, since, until))
        return ContainerLog(container_id=container_id, lines=list(self.logs.get(container_id, [])))


def manifest_document(name: str = "demo", version=1, modules: int = 2, command: str = "deploy") -> dict:
    images = [("nginx", "1.25"), ("redis", "7"), ("busybox", "1.36")]
    return {
        "id": f"{name}-id",
        "manifestName": name,
        "versionNumber": version,
        "command": command,
        "labels": {"team": "edge"},
        "modules": [
            {
                "moduleName": f"module{i}",
                "image": {"name": images[i % len(images)][0], "tag": images[i % len(images)][1]},
                "envs": [{"key": "INDEX", "value": str(i)}],
            }
            for i in range(modules)
        ],
    }


@pytest.fixture(autouse=True)
def events_db(tmp_path, monkeypatch):
    """Point the event log at a per-test sqlite file."""
    monkeypatch.setattr(db, "settings", Settings(db_path=str(tmp_path / "events.db"), debug=True))
    db.init_db()


@pytest.fixture
def runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture
def ledger(tmp_path) -> StatusLedger:
    return StatusLedger(str(tmp_path / "known_manifests.json"))


@pytest.fixture
def orchestrator(runtime, ledger) -> DataServiceOrchestrator:
    return DataServiceOrchestrator(runtime, ledger)


@pytest.fixture
def make_manifest():
    def _make(**kwargs):
        return parse_manifest(manifest_document(**kwargs))

    return _make


@pytest.fixture
def manifest_doc():
    return manifest_document
