from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any

from .api_models import ManifestDocument, ModuleSpec
from .settings import settings


LABEL_MANIFEST_NAME = "manifestName"
LABEL_VERSION_NUMBER = "versionNumber"

_SLUG_RE = re.compile(r"[^a-z0-9_.\-]+")


def slugify(value: str) -> str:
    """Docker object names allow [a-zA-Z0-9][a-zA-Z0-9_.-]; keep it lowercase."""
    slug = _SLUG_RE.sub("-", value.strip().lower()).strip("-._")
    return slug or "x"


def format_version(version: float | int | str) -> str:
    """Render a manifest version the way it appears in labels (1.0 -> "1")."""
    if isinstance(version, bool):
        raise ValueError("versionNumber must be a number or string")
    if isinstance(version, float) and version.is_integer():
        return str(int(version))
    return str(version)


@dataclass(frozen=True)
class ManifestUniqueID:
    manifest_name: str
    version_number: str

    @property
    def labels(self) -> dict[str, str]:
        return {
            LABEL_MANIFEST_NAME: self.manifest_name,
            LABEL_VERSION_NUMBER: self.version_number,
        }

    def __str__(self) -> str:
        return f"{self.manifest_name}-{self.version_number}"


@dataclass(frozen=True)
class RegistryDetails:
    image_name: str
    url: str = ""
    user_name: str = ""
    password: str = ""

    @property
    def has_credentials(self) -> bool:
        return bool(self.user_name and self.password)


@dataclass
class ContainerConfig:
    container_name: str
    image_name: str
    image_tag: str
    registry: RegistryDetails
    entry_point_args: list[str] = field(default_factory=list)
    env_args: list[str] = field(default_factory=list)
    exposed_ports: list[str] = field(default_factory=list)  # e.g. "80/tcp"
    port_binding: dict[str, int] = field(default_factory=dict)  # "80/tcp" -> host port
    labels: dict[str, str] = field(default_factory=dict)
    network_name: str = ""
    network_driver: str = "bridge"
    mount_configs: list[dict[str, Any]] = field(default_factory=list)
    resources: dict[str, Any] = field(default_factory=dict)

    @property
    def image_ref(self) -> str:
        return self.registry.image_name


@dataclass
class Manifest:
    manifest_id: str
    unique_id: ManifestUniqueID
    application_id: str
    labels: dict[str, str]
    modules: list[ContainerConfig]
    network_name: str = ""

    def update_manifest(self, network_name: str) -> None:
        """Record the network created for this deployment on every module."""
        self.network_name = network_name
        for module in self.modules:
            module.network_name = network_name


def _container_config(unique_id: ManifestUniqueID, labels: dict[str, str], index: int, module: ModuleSpec) -> ContainerConfig:
    image = module.image
    tag = image.tag or ""
    ref = f"{image.name}:{tag}" if tag else image.name
    registry = RegistryDetails(
        image_name=ref,
        url=image.registry.url if image.registry else "",
        user_name=image.registry.user_name if image.registry else "",
        password=image.registry.password if image.registry else "",
    )

    exposed: list[str] = []
    binding: dict[str, int] = {}
    for p in module.ports:
        key = f"{p.container}/{p.protocol}"
        if key not in exposed:
            exposed.append(key)
        if p.host is not None:
            binding[key] = p.host

    mounts = [
        {"type": m.type, "source": m.source, "target": m.target, "read_only": m.read_only}
        for m in module.mounts
    ]

    resources: dict[str, Any] = {}
    if module.resources is not None:
        if module.resources.memory:
            resources["mem_limit"] = module.resources.memory
        if module.resources.cpus:
            resources["nano_cpus"] = int(module.resources.cpus * 1_000_000_000)

    name = "-".join(
        [slugify(unique_id.manifest_name), slugify(unique_id.version_number), slugify(module.module_name), str(index)]
    )

    return ContainerConfig(
        container_name=name,
        image_name=image.name,
        image_tag=tag,
        registry=registry,
        entry_point_args=list(module.args),
        env_args=[f"{e.key}={e.value}" for e in module.envs],
        exposed_ports=exposed,
        port_binding=binding,
        labels=dict(labels),
        network_driver=settings.network_driver,
        mount_configs=mounts,
        resources=resources,
    )


def parse_manifest(doc: ManifestDocument | dict[str, Any]) -> Manifest:
    """Build the typed manifest (one ContainerConfig per module) from a manifest document."""
    if not isinstance(doc, ManifestDocument):
        doc = ManifestDocument.model_validate(doc)

    unique_id = ManifestUniqueID(doc.manifest_name, format_version(doc.version_number))
    # Identity labels win over user-supplied ones; runtime lookups depend on them.
    labels = {**doc.labels, **unique_id.labels}
    modules = [_container_config(unique_id, labels, i, m) for i, m in enumerate(doc.modules)]

    return Manifest(
        manifest_id=doc.id or str(unique_id),
        unique_id=unique_id,
        application_id=doc.application_id or unique_id.manifest_name,
        labels=labels,
        modules=modules,
    )
