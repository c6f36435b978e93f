"""
Engine base — the contract between the wiring layer and the provisioning engine.

The wiring layer never talks to cloud APIs. Everything that touches the
outside world goes through a ``ProvisioningEngine``:

    create_resource   declare a new resource; outputs resolve later
    import_resource   bring an existing object under management
    lookup_resource   read the live configuration of an existing object
    run_job           run a one-shot job; resolves to its exit code
    deploy_workload   hand a fully assembled workload spec over

Committed stack exports are persisted through a ``StateBackend`` that the
engine owns (``engine.state``).

Engines raise ``TransientProvisioningError`` for network/API failures and
``ResourceLookupError`` for missing live objects. Retry policy is theirs.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, Field

from stackwire.core.deferred import Deferred
from stackwire.core.models.workload import Container, Volume, Workload, WorkloadArgs


@dataclass
class ResourceHandle:
    """What the engine returns for a created or imported resource.

    ``outputs`` are deferred: the engine resolves them once the cloud
    object is ready, possibly on another thread.
    """

    kind: str
    name: str
    imported: bool = False
    outputs: dict[str, Deferred[str]] = field(default_factory=dict)
    properties: dict[str, Any] = field(default_factory=dict)

    def output(self, key: str) -> Deferred[str]:
        try:
            return self.outputs[key]
        except KeyError:
            raise KeyError(f"{self.kind} {self.name!r} has no output {key!r}") from None


class JobSpec(BaseModel):
    """A one-shot job (run-to-completion pod)."""

    name: str
    namespace: str
    containers: list[Container] = Field(default_factory=list)
    volumes: list[Volume] = Field(default_factory=list)
    backoff_limit: int = 5
    restart_policy: str = "Never"
    depends_on: list[str] = Field(default_factory=list)
    cluster: str = ""
    kubeconfig: str = Field(default="", repr=False)   # credentials of the cluster the job runs on


class StoredExport(BaseModel):
    """One committed export as persisted by a state backend."""

    value: str
    secret: bool = False


class StateBackend(ABC):
    """Persistent store of committed stack exports."""

    @abstractmethod
    def read_outputs(self, stack_ref: str) -> dict[str, StoredExport] | None:
        """Return the committed exports of a stack, or None if never committed."""

    @abstractmethod
    def write_outputs(self, stack_ref: str, outputs: dict[str, StoredExport]) -> None:
        """Replace the committed exports of a stack in one write."""

    def has_stack(self, stack_ref: str) -> bool:
        return self.read_outputs(stack_ref) is not None

    def list_stacks(self) -> list[str]:
        return []


class ProvisioningEngine(ABC):
    """Abstract base class for provisioning engines.

    To plug in a real engine:
        1. Subclass ProvisioningEngine
        2. Implement the five operations and ``state``
        3. Pass it to ``executor.deploy``
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """The engine identifier (e.g., 'memory', 'pulumi')."""

    @property
    @abstractmethod
    def state(self) -> StateBackend:
        """Backend that stores committed stack exports."""

    @abstractmethod
    def create_resource(self, kind: str, name: str, properties: dict[str, Any]) -> ResourceHandle:
        """Declare a new resource of ``kind`` named ``name``."""

    @abstractmethod
    def import_resource(
        self,
        kind: str,
        name: str,
        resource_id: str,
        properties: dict[str, Any],
    ) -> ResourceHandle:
        """Adopt the existing object ``resource_id`` under the logical ``name``."""

    @abstractmethod
    def lookup_resource(self, kind: str, resource_id: str) -> dict[str, Any]:
        """Return the live configuration of an existing object.

        Raises:
            ResourceLookupError: The object does not exist.
        """

    @abstractmethod
    def run_job(self, job: JobSpec) -> Deferred[int]:
        """Start a one-shot job; the deferred resolves to its exit code."""

    @abstractmethod
    def deploy_workload(self, args: WorkloadArgs) -> Workload:
        """Deploy an assembled workload and return its handle."""

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name!r}>"
