from __future__ import annotations

import secrets
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from threading import Lock
from typing import Iterator, Protocol

import docker
import requests
from docker.errors import DockerException, ImageNotFound, NotFound
from docker.types import Mount
from docker.utils import parse_repository_tag

from .db import log_event
from .errors import RuntimeCallError, RuntimeTimeout
from .manifest import ContainerConfig, ManifestUniqueID, RegistryDetails, slugify
from .settings import settings


@dataclass(frozen=True)
class ContainerInfo:
    id: str
    image_id: str
    state: str  # created|running|paused|restarting|exited|dead
    status: str
    names: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class NetworkInfo:
    id: str
    name: str
    created: str
    labels: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class LogLine:
    time: str
    stream: str  # stdout|stderr
    log: str


@dataclass(frozen=True)
class ContainerLog:
    container_id: str
    lines: list[LogLine] = field(default_factory=list)


class ContainerRuntime(Protocol):
    """Capability surface the orchestrator needs from a container engine."""

    def pull_image(self, registry: RegistryDetails) -> None: ...

    def image_exists(self, ref: str) -> bool: ...

    def image_remove(self, image_id: str) -> None: ...

    def create_network(self, application_id: str, labels: dict[str, str]) -> str: ...

    def network_prune(self, unique_id: ManifestUniqueID) -> None: ...

    def list_networks(self, unique_id: ManifestUniqueID) -> list[NetworkInfo]: ...

    def create_and_start_container(self, cfg: ContainerConfig) -> str: ...

    def stop_container(self, container_id: str) -> None: ...

    def start_container(self, container_id: str) -> None: ...

    def stop_and_remove_container(self, container_id: str) -> None: ...

    def list_containers(self, unique_id: ManifestUniqueID) -> list[ContainerInfo]: ...

    def list_all_containers(self) -> list[ContainerInfo]: ...

    def container_logs(
        self, container_id: str, since: datetime | None = None, until: datetime | None = None
    ) -> ContainerLog: ...


def _label_filters(unique_id: ManifestUniqueID) -> dict[str, list[str]]:
    return {"label": [f"{k}={v}" for k, v in unique_id.labels.items()]}


def _container_info(c) -> ContainerInfo:
    # Sparse list results carry the /containers/json fields verbatim.
    attrs = c.attrs
    return ContainerInfo(
        id=c.id,
        image_id=attrs.get("ImageID", ""),
        state=attrs.get("State", ""),
        status=attrs.get("Status", ""),
        names=[n.lstrip("/") for n in attrs.get("Names") or []],
    )


def _log_lines(raw: bytes, stream: str) -> list[LogLine]:
    # With timestamps=True every line starts with an RFC3339Nano time and a space.
    out = []
    for line in raw.decode("utf-8", errors="replace").splitlines():
        ts, sep, text = line.partition(" ")
        if sep:
            out.append(LogLine(time=ts, stream=stream, log=text))
    return out


@contextmanager
def _engine_call(what: str) -> Iterator[None]:
    try:
        yield
    except requests.exceptions.Timeout as e:
        raise RuntimeTimeout(f"{what}: timed out after {settings.runtime_timeout_s}s") from e
    except (DockerException, requests.exceptions.RequestException) as e:
        raise RuntimeCallError(f"{what}: {e}") from e


class DockerRuntime:
    """ContainerRuntime backed by the Docker Engine API (docker-py)."""

    def __init__(self, client: docker.DockerClient | None = None, timeout_s: int | None = None):
        self._client_obj = client
        self._timeout_s = timeout_s if timeout_s is not None else settings.runtime_timeout_s
        self._lock = Lock()

    def _client(self) -> docker.DockerClient:
        if self._client_obj is None:
            with self._lock:
                if self._client_obj is None:
                    with _engine_call("connect to docker"):
                        self._client_obj = docker.from_env(timeout=self._timeout_s)
        return self._client_obj

    def available(self) -> bool:
        try:
            with _engine_call("ping"):
                self._client().ping()
            return True
        except RuntimeCallError:
            return False

    # Images

    def image_exists(self, ref: str) -> bool:
        with _engine_call(f"inspect image {ref}"):
            try:
                self._client().images.get(ref)
                return True
            except ImageNotFound:
                return False

    def pull_image(self, registry: RegistryDetails) -> None:
        repository, tag = parse_repository_tag(registry.image_name)
        auth_config = None
        if registry.has_credentials:
            auth_config = {"username": registry.user_name, "password": registry.password}
            if registry.url:
                auth_config["serveraddress"] = registry.url
        with _engine_call(f"pull image {registry.image_name}"):
            self._client().images.pull(repository, tag=tag or "latest", auth_config=auth_config)
        log_event("INFO", f"Pulled image {registry.image_name}")

    def image_remove(self, image_id: str) -> None:
        with _engine_call(f"remove image {image_id}"):
            self._client().images.remove(image=image_id)

    # Networks

    def create_network(self, application_id: str, labels: dict[str, str]) -> str:
        name = f"{settings.network_prefix}-{slugify(application_id)}-{secrets.token_hex(3)}"
        with _engine_call(f"create network {name}"):
            network = self._client().networks.create(name, driver=settings.network_driver, labels=dict(labels))
        return network.name

    def list_networks(self, unique_id: ManifestUniqueID) -> list[NetworkInfo]:
        with _engine_call(f"list networks of {unique_id}"):
            networks = self._client().networks.list(filters=_label_filters(unique_id))
        return [
            NetworkInfo(
                id=n.id,
                name=n.name,
                created=n.attrs.get("Created", ""),
                labels=dict(n.attrs.get("Labels") or {}),
            )
            for n in networks
        ]

    def network_prune(self, unique_id: ManifestUniqueID) -> None:
        with _engine_call(f"prune networks of {unique_id}"):
            self._client().networks.prune(filters=_label_filters(unique_id))

    # Containers

    def create_and_start_container(self, cfg: ContainerConfig) -> str:
        image = f"{cfg.image_name}:{cfg.image_tag}" if cfg.image_tag else cfg.image_name
        kwargs = dict(
            command=cfg.entry_point_args or None,
            environment=list(cfg.env_args),
            labels=dict(cfg.labels),
            name=cfg.container_name,
            detach=True,
            # A port without a host binding is published on an engine-chosen host port.
            ports={k: cfg.port_binding.get(k) for k in cfg.exposed_ports} or None,
            restart_policy={"Name": "on-failure", "MaximumRetryCount": settings.restart_max_retries},
            mounts=[
                Mount(m["target"], m["source"], type=m.get("type", "bind"), read_only=bool(m.get("read_only")))
                for m in cfg.mount_configs
            ],
            **cfg.resources,
        )
        if cfg.network_driver == "host":
            kwargs["network_mode"] = "host"
        else:
            kwargs["network"] = cfg.network_name

        c = self._client()
        with _engine_call(f"create container {cfg.container_name}"):
            container = c.containers.create(image, **kwargs)
        log_event("DEBUG", f"Created container {cfg.container_name} ({container.id})")
        with _engine_call(f"start container {cfg.container_name}"):
            container.start()
        return container.id

    def start_container(self, container_id: str) -> None:
        with _engine_call(f"start container {container_id}"):
            self._client().containers.get(container_id).start()

    def stop_container(self, container_id: str) -> None:
        with _engine_call(f"stop container {container_id}"):
            self._client().containers.get(container_id).stop()

    def stop_and_remove_container(self, container_id: str) -> None:
        c = self._client()
        with _engine_call(f"remove container {container_id}"):
            try:
                cont = c.containers.get(container_id)
            except NotFound:
                return
            try:
                cont.stop()
            except DockerException as e:
                log_event("WARN", f"Unable to stop container {container_id}: {e}. Will force remove.")
            cont.remove(v=True, force=True)

    def list_containers(self, unique_id: ManifestUniqueID) -> list[ContainerInfo]:
        with _engine_call(f"list containers of {unique_id}"):
            containers = self._client().containers.list(all=True, filters=_label_filters(unique_id), sparse=True)
        return [_container_info(x) for x in containers]

    def list_all_containers(self) -> list[ContainerInfo]:
        with _engine_call("list containers"):
            containers = self._client().containers.list(all=True, sparse=True)
        return [_container_info(x) for x in containers]

    # Logs

    def container_logs(
        self, container_id: str, since: datetime | None = None, until: datetime | None = None
    ) -> ContainerLog:
        """Read stdout and stderr of one container, merged in timestamp order."""
        window = {}
        if since is not None:
            window["since"] = int(since.timestamp())
        if until is not None:
            window["until"] = int(until.timestamp())

        lines: list[LogLine] = []
        with _engine_call(f"read logs of container {container_id}"):
            container = self._client().containers.get(container_id)
            for stream in ("stdout", "stderr"):
                raw = container.logs(
                    stdout=stream == "stdout",
                    stderr=stream == "stderr",
                    timestamps=True,
                    **window,
                )
                lines.extend(_log_lines(raw, stream))
        lines.sort(key=lambda line: line.time)
        return ContainerLog(container_id=container_id, lines=lines)
