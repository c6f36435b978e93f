"""
Test helpers — descriptor builders and a fake compute processor.
"""

from __future__ import annotations

from stackwire.adapters.memory import InMemoryEngine
from stackwire.core.deferred import Deferred
from stackwire.core.exports import ExportStore
from stackwire.core.models.resource import ResourceOutput
from stackwire.core.models.stack import StackDescriptor
from stackwire.resources.base import ProvisionContext


def make_stack(name: str, environment: str = "prod", **fields) -> StackDescriptor:
    """Build a stack descriptor from plain dicts, as the loader would."""
    return StackDescriptor.model_validate({"name": name, "environment": environment, **fields})


def make_context(engine: InMemoryEngine, store: ExportStore, stack: StackDescriptor) -> ProvisionContext:
    """Provisioning context with a fresh staging area for ``stack``."""
    return ProvisionContext(engine=engine, exports=store, staged=store.stage(stack.reference))


class HostWriter:
    """Compute processor that sets ``HOST`` once ``value`` resolves."""

    def __init__(self, value: Deferred[str]):
        self.value = value

    def __call__(self, context, stack, resource_input, collector, params) -> ResourceOutput:
        res = resource_input.descriptor.name

        def _write(host: str) -> None:
            collector.add_env_variable_if_not_exist("HOST", host, "fake", res, stack.name)

        collector.add_output(self.value.map(_write))
        return ResourceOutput()
