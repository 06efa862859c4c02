from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, field_validator


class _Model(BaseModel):
    # Manifests arrive camelCased; snake_case names are accepted too.
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class RegistrySpec(_Model):
    url: str = ""
    user_name: str = Field("", alias="userName")
    password: str = ""


class ImageSpec(_Model):
    name: str = Field(..., min_length=1, description="Image repository, e.g. nginx or ghcr.io/org/app")
    tag: str = Field("", description="Image tag; empty means the engine default")
    registry: RegistrySpec | None = None


class EnvVar(_Model):
    key: str = Field(..., min_length=1)
    value: str = ""


class PortSpec(_Model):
    container: int = Field(..., ge=1, le=65535)
    host: int | None = Field(None, ge=1, le=65535)
    protocol: str = Field("tcp", pattern=r"^(tcp|udp|sctp)$")


class MountSpec(_Model):
    source: str = Field(..., min_length=1)
    target: str = Field(..., min_length=1)
    type: str = Field("bind", pattern=r"^(bind|volume|tmpfs)$")
    read_only: bool = Field(False, alias="readOnly")


class ResourceSpec(_Model):
    memory: str | None = Field(None, description="Memory limit, e.g. 256m")
    cpus: float | None = Field(None, gt=0)


class ModuleSpec(_Model):
    module_name: str = Field(..., min_length=1, alias="moduleName")
    image: ImageSpec
    args: list[str] = Field(default_factory=list)
    envs: list[EnvVar] = Field(default_factory=list)
    ports: list[PortSpec] = Field(default_factory=list)
    mounts: list[MountSpec] = Field(default_factory=list)
    resources: ResourceSpec | None = None


class CommandMessage(_Model):
    manifest_name: str = Field(..., min_length=1, alias="manifestName")
    version_number: float | int | str = Field(..., alias="versionNumber")
    command: str

    @field_validator("command")
    @classmethod
    def _normalize_command(cls, v: str) -> str:
        return v.strip().lower()


class ManifestDocument(CommandMessage):
    id: str | None = None
    application_id: str | None = Field(None, alias="applicationID")
    labels: dict[str, str] = Field(default_factory=dict)
    modules: list[ModuleSpec] = Field(..., min_length=1, description="At least one module is required")
    command: str = "deploy"
