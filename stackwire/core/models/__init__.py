"""
Domain models — Pydantic types for the wiring engine.

All models are re-exported here for convenient access:

    from stackwire.core.models import StackDescriptor, ResourceDescriptor, WorkloadArgs
"""

from stackwire.core.models.deployment import DeploymentConfig, LiveObject
from stackwire.core.models.resource import (
    ResourceConfig,
    ResourceDescriptor,
    ResourceExport,
    ResourceInput,
    ResourceLifecycle,
    ResourceOutput,
    ResourceState,
)
from stackwire.core.models.stack import (
    ComputeInput,
    DependsOnResource,
    ParentInfo,
    StackDescriptor,
    WorkloadConfig,
)
from stackwire.core.models.workload import (
    ComputeEnvVariable,
    Container,
    Volume,
    VolumeMount,
    Workload,
    WorkloadArgs,
)

__all__ = [
    # workload.py
    "ComputeEnvVariable",
    "Container",
    "ComputeInput",
    # deployment.py
    "DeploymentConfig",
    # stack.py
    "DependsOnResource",
    "LiveObject",
    "ParentInfo",
    # resource.py
    "ResourceConfig",
    "ResourceDescriptor",
    "ResourceExport",
    "ResourceInput",
    "ResourceLifecycle",
    "ResourceOutput",
    "ResourceState",
    "StackDescriptor",
    "Volume",
    "VolumeMount",
    "Workload",
    "WorkloadArgs",
    "WorkloadConfig",
]
