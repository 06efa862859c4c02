from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
import requests
from docker.errors import DockerException, ImageNotFound, NotFound

from edgeagent.docker_ops import DockerRuntime
from edgeagent.errors import RuntimeCallError, RuntimeTimeout
from edgeagent.manifest import ContainerConfig, ManifestUniqueID, RegistryDetails


UID = ManifestUniqueID("demo", "1")
LABEL_FILTERS = {"label": ["manifestName=demo", "versionNumber=1"]}


@pytest.fixture
def client():
    return MagicMock()


@pytest.fixture
def rt(client):
    return DockerRuntime(client=client, timeout_s=5)


def test_list_containers_filters_by_identity(rt, client):
    client.containers.list.return_value = [
        SimpleNamespace(
            id="abc",
            attrs={"Id": "abc", "ImageID": "sha256:1", "State": "running", "Status": "Up 3 minutes", "Names": ["/demo-1-a-0"]},
        )
    ]

    (info,) = rt.list_containers(UID)

    client.containers.list.assert_called_once_with(all=True, filters=LABEL_FILTERS, sparse=True)
    assert info.id == "abc"
    assert info.image_id == "sha256:1"
    assert info.state == "running"
    assert info.names == ["demo-1-a-0"]


def test_image_exists(rt, client):
    assert rt.image_exists("nginx:1.25") is True
    client.images.get.side_effect = ImageNotFound("missing")
    assert rt.image_exists("nginx:1.25") is False


def test_pull_uses_tag_and_credentials(rt, client):
    rt.pull_image(RegistryDetails("registry.example.com/app:2", url="registry.example.com", user_name="bot", password="pw"))
    client.images.pull.assert_called_once_with(
        "registry.example.com/app",
        tag="2",
        auth_config={"username": "bot", "password": "pw", "serveraddress": "registry.example.com"},
    )


def test_pull_without_tag_pulls_latest(rt, client):
    rt.pull_image(RegistryDetails("alpine"))
    client.images.pull.assert_called_once_with("alpine", tag="latest", auth_config=None)


def test_timeouts_are_translated(rt, client):
    client.networks.list.side_effect = requests.exceptions.ReadTimeout("slow")
    with pytest.raises(RuntimeTimeout):
        rt.list_networks(UID)


def test_engine_errors_are_translated(rt, client):
    client.networks.create.side_effect = DockerException("boom")
    with pytest.raises(RuntimeCallError) as exc:
        rt.create_network("demo", {"manifestName": "demo"})
    assert not isinstance(exc.value, RuntimeTimeout)


def test_create_network(rt, client):
    client.networks.create.side_effect = lambda name, **kw: SimpleNamespace(name=name)
    name = rt.create_network("My App", {"manifestName": "demo", "versionNumber": "1"})
    assert name.startswith("edge-my-app-")
    _, kwargs = client.networks.create.call_args
    assert kwargs["labels"] == {"manifestName": "demo", "versionNumber": "1"}
    assert kwargs["driver"] == "bridge"


def test_list_networks_and_prune(rt, client):
    client.networks.list.return_value = [
        SimpleNamespace(id="n1", name="edge-demo-aaa", attrs={"Created": "2024-01-01T00:00:00Z", "Labels": {"manifestName": "demo"}})
    ]
    (net,) = rt.list_networks(UID)
    assert net.name == "edge-demo-aaa"
    assert net.created == "2024-01-01T00:00:00Z"

    rt.network_prune(UID)
    client.networks.prune.assert_called_once_with(filters=LABEL_FILTERS)


def test_create_and_start_container(rt, client):
    container = MagicMock(id="cid")
    client.containers.create.return_value = container
    cfg = ContainerConfig(
        container_name="demo-1-web-0",
        image_name="nginx",
        image_tag="1.25",
        registry=RegistryDetails("nginx:1.25"),
        entry_point_args=["--x"],
        env_args=["A=1"],
        exposed_ports=["80/tcp"],
        port_binding={"80/tcp": 8080},
        labels={"manifestName": "demo"},
        network_name="edge-demo-aaa",
        mount_configs=[{"type": "bind", "source": "/srv", "target": "/data", "read_only": True}],
        resources={"mem_limit": "256m"},
    )

    assert rt.create_and_start_container(cfg) == "cid"

    args, kwargs = client.containers.create.call_args
    assert args == ("nginx:1.25",)
    assert kwargs["name"] == "demo-1-web-0"
    assert kwargs["command"] == ["--x"]
    assert kwargs["environment"] == ["A=1"]
    assert kwargs["ports"] == {"80/tcp": 8080}
    assert kwargs["network"] == "edge-demo-aaa"
    assert kwargs["mem_limit"] == "256m"
    assert kwargs["restart_policy"] == {"Name": "on-failure", "MaximumRetryCount": 100}
    assert kwargs["mounts"][0]["Target"] == "/data"
    assert kwargs["mounts"][0]["ReadOnly"] is True
    container.start.assert_called_once_with()


def test_stop_and_remove_tolerates_missing_container(rt, client):
    client.containers.get.side_effect = NotFound("gone")
    rt.stop_and_remove_container("cid")


def test_stop_and_remove_forces_removal_when_stop_fails(rt, client):
    container = MagicMock()
    container.stop.side_effect = DockerException("stuck")
    client.containers.get.return_value = container

    rt.stop_and_remove_container("cid")

    container.remove.assert_called_once_with(v=True, force=True)


def test_available(rt, client):
    assert rt.available() is True
    client.ping.side_effect = DockerException("no daemon")
    assert rt.available() is False


def test_container_only_port_is_still_exposed(rt, client):
    client.containers.create.return_value = MagicMock(id="cid")
    cfg = ContainerConfig(
        container_name="demo-1-web-0",
        image_name="nginx",
        image_tag="1.25",
        registry=RegistryDetails("nginx:1.25"),
        exposed_ports=["80/tcp", "9000/tcp"],
        port_binding={"80/tcp": 8080},
        network_name="edge-demo-aaa",
    )

    rt.create_and_start_container(cfg)

    _, kwargs = client.containers.create.call_args
    assert kwargs["ports"] == {"80/tcp": 8080, "9000/tcp": None}


def test_container_logs_merges_streams_in_time_order(rt, client):
    container = MagicMock()

    def logs(stdout, stderr, timestamps, **window):
        if stdout:
            return b"2024-01-01T00:00:01.000000000Z started\n2024-01-01T00:00:03.000000000Z serving\n"
        return b"2024-01-01T00:00:02.000000000Z warning: slow disk\n"

    container.logs.side_effect = logs
    client.containers.get.return_value = container
    since = datetime(2024, 1, 1, tzinfo=timezone.utc)

    result = rt.container_logs("cid", since=since)

    assert result.container_id == "cid"
    assert [(ln.stream, ln.log) for ln in result.lines] == [
        ("stdout", "started"),
        ("stderr", "warning: slow disk"),
        ("stdout", "serving"),
    ]
    _, kwargs = container.logs.call_args
    assert kwargs["timestamps"] is True
    assert kwargs["since"] == int(since.timestamp())
    assert "until" not in kwargs


def test_container_logs_of_missing_container(rt, client):
    client.containers.get.side_effect = NotFound("gone")
    with pytest.raises(RuntimeCallError):
        rt.container_logs("cid")
