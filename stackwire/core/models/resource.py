"""
Resource models — descriptors, per-type config base, lifecycle and outputs.

A descriptor arrives flat, as in ``stackwire.yml``::

    - name: cache
      type: gcp-redis
      adopt: true
      instance_id: legacy-cache
      region: europe-west1

Everything except ``name`` and ``type`` is folded into ``config``; the
resource type's own ``ResourceConfig`` subclass validates it later, so the
descriptor itself stays polymorphic.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator
from pydantic.alias_generators import to_camel

from stackwire.core.deferred import Deferred
from stackwire.core.naming import derive_name

_ADOPT = TypeAdapter(bool)


class ResourceDescriptor(BaseModel):
    """Name, type tag and raw (type-specific) configuration."""

    name: str
    type: str
    config: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _fold_flat_fields(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        extra = {k: v for k, v in data.items() if k not in ("name", "type", "config")}
        if not extra:
            return data
        config = dict(data.get("config") or {})
        config.update(extra)
        return {"name": data.get("name"), "type": data.get("type"), "config": config}

    @field_validator("config")
    @classmethod
    def _coerce_adopt(cls, config: dict[str, Any]) -> dict[str, Any]:
        # coerced exactly as ResourceConfig.adopt
        if "adopt" in config:
            config["adopt"] = _ADOPT.validate_python(config["adopt"])
        return config

    @property
    def adopt(self) -> bool:
        return self.config.get("adopt", False)


class ResourceConfig(BaseModel):
    """Base for per-type configuration models.

    Accepts both ``snake_case`` and ``camelCase`` keys. Unknown keys are
    rejected so typos surface as ``ConfigError`` before any cloud call.
    """

    model_config = ConfigDict(
        extra="forbid",
        populate_by_name=True,
        alias_generator=to_camel,
    )

    adopt: bool = False


class ResourceInput(BaseModel):
    """A descriptor bound to the stack context it is provisioned/consumed in."""

    descriptor: ResourceDescriptor
    stack_name: str
    environment: str
    parent_env: str | None = None

    def to_res_name(self, name: str) -> str:
        return derive_name(self.stack_name, self.environment, self.parent_env, name)

    @property
    def resource_name(self) -> str:
        """Derived name of the described resource."""
        return self.to_res_name(self.descriptor.name)


class ResourceState(StrEnum):
    """Provisioning lifecycle of one resource."""

    UNVALIDATED = "unvalidated"
    VALIDATED = "validated"
    CREATING = "creating"
    ADOPTING = "adopting"
    EXPORTED = "exported"
    READY = "ready"
    FAILED = "failed"


_TRANSITIONS: dict[ResourceState, set[ResourceState]] = {
    ResourceState.UNVALIDATED: {ResourceState.VALIDATED},
    ResourceState.VALIDATED: {ResourceState.CREATING, ResourceState.ADOPTING},
    ResourceState.CREATING: {ResourceState.EXPORTED},
    ResourceState.ADOPTING: {ResourceState.EXPORTED},
    ResourceState.EXPORTED: {ResourceState.READY},
    ResourceState.READY: set(),
    ResourceState.FAILED: set(),
}


@dataclass
class ResourceLifecycle:
    """Tracks legal state transitions; any state may move to FAILED."""

    name: str
    state: ResourceState = ResourceState.UNVALIDATED
    history: list[ResourceState] = field(default_factory=lambda: [ResourceState.UNVALIDATED])

    def advance(self, new_state: ResourceState) -> None:
        if new_state != ResourceState.FAILED and new_state not in _TRANSITIONS[self.state]:
            raise RuntimeError(
                f"illegal transition {self.state} -> {new_state} for resource {self.name!r}"
            )
        self.state = new_state
        self.history.append(new_state)

    def fail(self) -> None:
        if self.state not in (ResourceState.READY, ResourceState.FAILED):
            self.advance(ResourceState.FAILED)


@dataclass
class ResourceExport:
    """One named output a stack publishes for descendants."""

    key: str
    value: Deferred[str]
    secret: bool = False


@dataclass
class ResourceOutput:
    """What a provisioning function or compute processor returns."""

    ref: Any = None
    mode: str = ""                      # "create", "adopt" or "" for processors
    exports: list[ResourceExport] = field(default_factory=list)
    state: ResourceState = ResourceState.READY
    history: list[ResourceState] = field(default_factory=list)

    @property
    def export_keys(self) -> set[str]:
        return {e.key for e in self.exports}
