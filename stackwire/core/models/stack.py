"""
Stack model — a deployable unit of infrastructure and/or workload.

A stack owns resources (which it provisions and exports) and may run a
workload that consumes resources owned by itself or by any ancestor. It
declares consumption in two ways:

    uses:        [cache, db]                   direct consumption
    depends_on:  [{name, owner, resource}]     cross-stack consumption of a
                                               resource another stack owns

The two relations are kept distinct because credentials are scoped
differently: a ``depends_on`` relation always embeds the consumer stack and
relation name in its credential scope.
"""

from __future__ import annotations

from pydantic import BaseModel, Field, field_validator, model_validator

from stackwire.core.models.resource import ResourceDescriptor, ResourceInput
from stackwire.core.naming import STACK_ENV_SEPARATOR, effective_environment, stack_name_in_env


def _no_separator(value: str | None) -> str | None:
    if value and STACK_ENV_SEPARATOR in value:
        raise ValueError(f"{value!r} must not contain {STACK_ENV_SEPARATOR!r}")
    return value


class DependsOnResource(BaseModel):
    """A ``depends_on`` relation to a resource shared through another stack."""

    name: str                # relation name, unique within the consumer
    owner: str               # stack whose credentials/database are consumed
    resource: str            # resource name, declared by owner or its ancestors

    @field_validator("name")
    @classmethod
    def _plain_name(cls, value: str) -> str:
        return _no_separator(value)


class WorkloadConfig(BaseModel):
    """The main container a stack runs.

    Env values may contain ``${resource:<res>.<key>}`` and
    ``${dependency:<relation>.<res>.<key>}`` placeholders.
    """

    image: str
    command: list[str] = Field(default_factory=list)
    args: list[str] = Field(default_factory=list)
    port: int | None = None
    env: dict[str, str] = Field(default_factory=dict)
    secret_env: dict[str, str] = Field(default_factory=dict)


class StackDescriptor(BaseModel):
    """Declarative description of one stack, received pre-parsed."""

    name: str
    environment: str
    parent: str | None = None
    parent_env: str | None = None
    uses: list[str] = Field(default_factory=list)
    depends_on: list[DependsOnResource] = Field(default_factory=list)
    resources: list[ResourceDescriptor] = Field(default_factory=list)
    workload: WorkloadConfig | None = None

    @field_validator("name", "environment", "parent_env")
    @classmethod
    def _plain_names(cls, value: str | None) -> str | None:
        return _no_separator(value)

    @model_validator(mode="after")
    def _unique_names(self) -> StackDescriptor:
        seen: set[str] = set()
        for res in self.resources:
            if res.name in seen:
                raise ValueError(f"duplicate resource {res.name!r} in stack {self.name!r}")
            seen.add(res.name)
        relations: set[str] = set()
        for dep in self.depends_on:
            if dep.name in relations:
                raise ValueError(f"duplicate depends_on relation {dep.name!r} in stack {self.name!r}")
            relations.add(dep.name)
        return self

    @property
    def reference(self) -> str:
        """Reference under which this stack's exports are stored."""
        return stack_name_in_env(self.name, self.environment)

    @property
    def resource_environment(self) -> str:
        """Environment shared resources are consumed in (parent env wins)."""
        return effective_environment(self.environment, self.parent_env)

    @property
    def is_custom(self) -> bool:
        """Custom stacks reuse a parent environment other than their own."""
        return bool(self.parent_env) and self.parent_env != self.environment

    def get_resource(self, name: str) -> ResourceDescriptor | None:
        for res in self.resources:
            if res.name == name:
                return res
        return None


class ParentInfo(BaseModel):
    """Where a consumed resource lives and how it is consumed.

    Handed to compute processors so they know which stack reference to
    import from and which relation they are wiring.
    """

    stack_name: str                       # stack that declares the resource
    full_reference: str                   # export-store reference of that stack
    stack_env: str                        # consumer's own environment
    parent_env: str | None = None         # consumer's parent environment
    uses_resource: bool = False
    depends_on_resource: DependsOnResource | None = None

    @property
    def relation(self) -> str:
        return "depends_on" if self.depends_on_resource is not None else "uses"


class ComputeInput(ResourceInput):
    """A consumed resource bound to the consuming stack and its relation."""

    parent: ParentInfo
