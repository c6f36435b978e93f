"""
Resource types — one provisioner per type tag.

    from stackwire.resources import build_default_registry
    registry = build_default_registry()
"""

from __future__ import annotations

from stackwire.core.registry import ProvisionerRegistry
from stackwire.resources.bucket import BucketProvisioner
from stackwire.resources.gke import GkeAutopilotProvisioner
from stackwire.resources.postgres import PostgresProvisioner
from stackwire.resources.pubsub import PubSubProvisioner
from stackwire.resources.redis import RedisProvisioner

ALL_PROVISIONERS = (
    RedisProvisioner,
    PostgresProvisioner,
    BucketProvisioner,
    GkeAutopilotProvisioner,
    PubSubProvisioner,
)


def build_default_registry() -> ProvisionerRegistry:
    """Registry holding every shipped resource type."""
    registry = ProvisionerRegistry()
    for cls in ALL_PROVISIONERS:
        registry.register(cls())
    return registry


__all__ = [
    "ALL_PROVISIONERS",
    "BucketProvisioner",
    "GkeAutopilotProvisioner",
    "PostgresProvisioner",
    "PubSubProvisioner",
    "RedisProvisioner",
    "build_default_registry",
]
