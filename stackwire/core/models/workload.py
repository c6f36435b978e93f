"""
Workload shapes — what pre- and post-processors operate on.

Two shapes exist, one per assembly phase:

    WorkloadArgs   mutable spec before the engine deploys it
                   (pre-processors append sidecar containers and volumes)
    Workload       the deployed workload handle
                   (post-processors run one-shot jobs against it)

The concrete schema belongs to the deployment target; the wiring engine
only needs "append container" and "append volume".
"""

from __future__ import annotations

from pydantic import BaseModel, Field


class VolumeMount(BaseModel):
    name: str
    mount_path: str
    read_only: bool = True


class Container(BaseModel):
    """One container in a pod-like workload."""

    name: str
    image: str
    command: list[str] = Field(default_factory=list)
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)
    secret_env: dict[str, str] = Field(default_factory=dict)
    ports: list[int] = Field(default_factory=list)
    volume_mounts: list[VolumeMount] = Field(default_factory=list)
    limits: dict[str, str] = Field(default_factory=dict)
    requests: dict[str, str] = Field(default_factory=dict)
    run_as_non_root: bool = False


class Volume(BaseModel):
    """A volume backed by a k8s secret (credentials files)."""

    name: str
    secret_name: str
    mount_path: str = ""


class WorkloadArgs(BaseModel):
    """Workload spec under assembly."""

    name: str
    namespace: str
    containers: list[Container] = Field(default_factory=list)
    volumes: list[Volume] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)
    secret_env: dict[str, str] = Field(default_factory=dict)
    depends_on: list[str] = Field(default_factory=list)

    def append_container(self, container: Container) -> None:
        if any(c.name == container.name for c in self.containers):
            raise ValueError(f"container {container.name!r} already in workload {self.name!r}")
        self.containers.append(container)

    def append_volume(self, volume: Volume) -> None:
        if any(v.name == volume.name for v in self.volumes):
            raise ValueError(f"volume {volume.name!r} already in workload {self.name!r}")
        self.volumes.append(volume)

    @property
    def main_container(self) -> Container | None:
        return self.containers[0] if self.containers else None


class Workload(BaseModel):
    """A workload the engine has deployed."""

    id: str
    name: str
    namespace: str
    containers: list[Container] = Field(default_factory=list)
    volumes: list[Volume] = Field(default_factory=list)


class ComputeEnvVariable(BaseModel):
    """One env variable contributed by a compute processor."""

    name: str
    value: str
    resource_type: str = ""
    resource_name: str = ""
    stack_name: str = ""
    secret: bool = False
    rank: int = 0
