"""
Resource provisioner base — one Create/Adopt pair per resource type.

Every resource type implements two branches behind a single ``provision``
entry point:

    validate ──▶ adopt? ──no──▶ create ──┐
                   │                     ├──▶ write_exports ──▶ READY
                   └──yes──▶ adopt ──────┘

Both branches return their outputs keyed by export suffix and hand them to
the same ``write_exports`` step, which checks them against the type's
declared ``EXPORTS``. The two paths therefore cannot publish different key
sets or different secrecy flags.

Adopt looks up the live object first; every field the descriptor does not
set explicitly takes the live value (``overlay_live``), never a platform
default.

To add a resource type:
    1. Subclass ResourceProvisioner
    2. Set resource_type, config_model and EXPORTS
    3. Implement create, adopt and (if consumable) process
    4. Register it in build_default_registry
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, ClassVar

from pydantic import ValidationError

from stackwire.adapters.base import ProvisioningEngine
from stackwire.core.deferred import CancellationToken, Deferred
from stackwire.core.errors import ConfigError, ProvisioningError, StackwireError
from stackwire.core.exports import ExportStore, StagedExports
from stackwire.core.models.resource import (
    ResourceConfig,
    ResourceDescriptor,
    ResourceExport,
    ResourceInput,
    ResourceLifecycle,
    ResourceOutput,
    ResourceState,
)
from stackwire.core.models.stack import ComputeInput, StackDescriptor
from stackwire.core.naming import export_key

logger = logging.getLogger(__name__)

MAX_INIT_SQL_TIME_SEC = 30


@dataclass
class ProvisionContext:
    """Per-stack runtime handles shared by provisioners and processors."""

    engine: ProvisioningEngine
    exports: ExportStore
    staged: StagedExports
    cancel: CancellationToken = field(default_factory=CancellationToken)


@dataclass
class ProvisionParams:
    """Deployment-wide parameters (cloud project, defaults, timeouts)."""

    project: str = ""
    region: str = "europe-west1"
    namespace: str = "default"
    labels: dict[str, str] = field(default_factory=dict)
    init_sql_timeout: int = MAX_INIT_SQL_TIME_SEC
    init_job_timeout: float = 120.0


def overlay_live(live: dict[str, Any], explicit: dict[str, Any]) -> dict[str, Any]:
    """Live values, with every explicitly configured (non-None) field on top."""
    merged = dict(live)
    merged.update({k: v for k, v in explicit.items() if v is not None})
    return merged


def require_fields(config: ResourceConfig, fields: list[str], mode: str, resource: str) -> None:
    """Raise ``ConfigError`` naming every required field that is unset."""
    missing = [f for f in fields if getattr(config, f) in (None, "", [])]
    if missing:
        raise ConfigError(
            f"{mode} of {resource!r} requires {', '.join(missing)}",
            resource=resource,
        )


class ResourceProvisioner(ABC):
    """Abstract base class for all resource types."""

    resource_type: ClassVar[str]
    kind: ClassVar[str] = ""
    config_model: ClassVar[type[ResourceConfig]] = ResourceConfig
    # export suffix -> secret
    EXPORTS: ClassVar[dict[str, bool]] = {}
    has_compute_processor: ClassVar[bool] = True

    # ── Contract ────────────────────────────────────────────────────

    def validate(self, descriptor: ResourceDescriptor) -> ResourceConfig:
        """Parse the descriptor's config and check branch-specific fields."""
        try:
            config = self.config_model.model_validate(descriptor.config)
        except ValidationError as e:
            raise ConfigError(
                f"invalid config for {self.resource_type} {descriptor.name!r}: {e}",
                resource=descriptor.name,
            ) from e
        if config.adopt:
            self.validate_adopt(config, descriptor.name)
        else:
            self.validate_create(config, descriptor.name)
        return config

    def validate_create(self, config: Any, resource: str) -> None:
        """Create-only requirements. Defaults to none."""

    def validate_adopt(self, config: Any, resource: str) -> None:
        """Adopt-only requirements (external identifiers)."""

    def export_keys(self, name: str) -> dict[str, bool]:
        """Full export keys for a resource named ``name`` -> secret flag."""
        return {export_key(name, suffix): secret for suffix, secret in self.EXPORTS.items()}

    @abstractmethod
    def create(
        self,
        context: ProvisionContext,
        stack: StackDescriptor,
        resource_input: ResourceInput,
        config: Any,
        params: ProvisionParams,
    ) -> tuple[Any, dict[str, Deferred[str] | str]]:
        """Declare a new resource. Returns (ref, export values by suffix)."""

    @abstractmethod
    def adopt(
        self,
        context: ProvisionContext,
        stack: StackDescriptor,
        resource_input: ResourceInput,
        config: Any,
        params: ProvisionParams,
    ) -> tuple[Any, dict[str, Deferred[str] | str]]:
        """Import an existing resource. Returns (ref, export values by suffix)."""

    def process(
        self,
        context: ProvisionContext,
        stack: StackDescriptor,
        resource_input: ComputeInput,
        collector: Any,
        params: ProvisionParams,
    ) -> ResourceOutput:
        """Wire the resource into a consuming workload."""
        raise ConfigError(
            f"resource type {self.resource_type!r} cannot be consumed by a workload",
            resource=resource_input.descriptor.name,
        )

    # ── Lifecycle ───────────────────────────────────────────────────

    def provision(
        self,
        context: ProvisionContext,
        stack: StackDescriptor,
        resource_input: ResourceInput,
        params: ProvisionParams,
    ) -> ResourceOutput:
        """Run validate → create|adopt → write_exports for one resource."""
        descriptor = resource_input.descriptor
        name = resource_input.resource_name
        lifecycle = ResourceLifecycle(name)
        try:
            config = self.validate(descriptor)
            lifecycle.advance(ResourceState.VALIDATED)
            context.cancel.raise_if_cancelled()

            if config.adopt:
                lifecycle.advance(ResourceState.ADOPTING)
                logger.info("Adopting %s %s", self.resource_type, name)
                ref, values = self.adopt(context, stack, resource_input, config, params)
            else:
                lifecycle.advance(ResourceState.CREATING)
                logger.info("Creating %s %s", self.resource_type, name)
                ref, values = self.create(context, stack, resource_input, config, params)

            context.cancel.raise_if_cancelled()
            exports = self.write_exports(context.staged, name, values)
            lifecycle.advance(ResourceState.EXPORTED)
            lifecycle.advance(ResourceState.READY)
        except StackwireError as e:
            lifecycle.fail()
            raise e.with_context(
                stack=stack.name, environment=stack.environment, resource=descriptor.name
            )
        except Exception as e:
            lifecycle.fail()
            raise ProvisioningError(
                f"{self.resource_type} {name!r} failed: {e}",
                stack=stack.name,
                environment=stack.environment,
                resource=descriptor.name,
            ) from e

        return ResourceOutput(
            ref=ref,
            mode="adopt" if config.adopt else "create",
            exports=exports,
            state=lifecycle.state,
            history=list(lifecycle.history),
        )

    def write_exports(
        self,
        staged: StagedExports,
        name: str,
        values: dict[str, Deferred[str] | str],
    ) -> list[ResourceExport]:
        """The single export step shared by both branches."""
        expected = set(self.EXPORTS)
        got = set(values)
        if got != expected:
            raise ProvisioningError(
                f"{self.resource_type} {name!r} produced exports {sorted(got)}, "
                f"expected {sorted(expected)}",
                resource=name,
            )
        exports = []
        for suffix, secret in self.EXPORTS.items():
            key = export_key(name, suffix)
            exports.append(staged.export(key, values[suffix], secret=secret))
        return exports

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} type={self.resource_type!r}>"
