"""
Provisioner registry — type tag → provisioning function and compute processor.

The registry is an explicit object built at startup
(``stackwire.resources.build_default_registry``) and passed to the
orchestrator. Nothing is registered at import time, so tests can build a
registry holding only fakes.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from stackwire.core.errors import ConfigError

if TYPE_CHECKING:
    from stackwire.resources.base import ResourceProvisioner

logger = logging.getLogger(__name__)

# (context, stack, resource_input, collector, params) -> ResourceOutput
ComputeProcessor = Callable[..., Any]


class ProvisionerRegistry:
    """Central registry of resource types.

    Features:
        - Register provisioners by their ``resource_type`` tag
        - Register standalone compute processors (or override one)
        - Fail with ``ConfigError`` on unknown types
    """

    def __init__(self) -> None:
        self._provisioners: dict[str, ResourceProvisioner] = {}
        self._processors: dict[str, ComputeProcessor] = {}

    def register(self, provisioner: ResourceProvisioner) -> None:
        """Register a provisioner and, if it has one, its compute processor."""
        tag = provisioner.resource_type
        if tag in self._provisioners:
            logger.warning("Overwriting existing provisioner: %s", tag)
        self._provisioners[tag] = provisioner
        if provisioner.has_compute_processor and tag not in self._processors:
            self._processors[tag] = provisioner.process
        logger.debug("Registered provisioner: %s", tag)

    def register_compute_processor(self, resource_type: str, processor: ComputeProcessor) -> None:
        if resource_type in self._processors:
            logger.warning("Overwriting existing compute processor: %s", resource_type)
        self._processors[resource_type] = processor

    def unregister(self, resource_type: str) -> None:
        self._provisioners.pop(resource_type, None)
        self._processors.pop(resource_type, None)

    def get_provisioner(self, resource_type: str) -> ResourceProvisioner:
        provisioner = self._provisioners.get(resource_type)
        if provisioner is None:
            raise ConfigError(
                f"unknown resource type {resource_type!r} "
                f"(registered: {', '.join(self.list_types()) or 'none'})"
            )
        return provisioner

    def get_compute_processor(self, resource_type: str) -> ComputeProcessor:
        processor = self._processors.get(resource_type)
        if processor is None:
            raise ConfigError(f"resource type {resource_type!r} cannot be consumed by a workload")
        return processor

    def has_compute_processor(self, resource_type: str) -> bool:
        return resource_type in self._processors

    def list_types(self) -> list[str]:
        return sorted(self._provisioners)

    def __contains__(self, resource_type: str) -> bool:
        return resource_type in self._provisioners
