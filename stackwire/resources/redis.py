"""
gcp-redis — Memorystore Redis instance.

Exports ``<n>-host`` and ``<n>-port``. Consumers get ``REDIS_HOST`` and
``REDIS_PORT`` plus ``${resource:<name>.host|port}`` template values.
"""

from __future__ import annotations

import logging
from typing import Any

from stackwire.core.deferred import Deferred
from stackwire.core.models.resource import ResourceConfig, ResourceInput, ResourceOutput
from stackwire.core.models.stack import ComputeInput, StackDescriptor
from stackwire.core.naming import export_key
from stackwire.resources.base import (
    ProvisionContext,
    ProvisionParams,
    ResourceProvisioner,
    overlay_live,
    require_fields,
)

logger = logging.getLogger(__name__)

KIND = "redis-instance"


class RedisConfig(ResourceConfig):
    # create
    memory_size_gb: int | None = None
    redis_version: str | None = None
    tier: str | None = None
    redis_config: dict[str, str] | None = None
    # adopt
    instance_id: str | None = None
    region: str | None = None


class RedisProvisioner(ResourceProvisioner):
    resource_type = "gcp-redis"
    kind = "cache"
    config_model = RedisConfig
    EXPORTS = {"host": False, "port": False}

    DEFAULT_MEMORY_SIZE_GB = 1
    DEFAULT_VERSION = "REDIS_7_0"
    DEFAULT_TIER = "BASIC"

    def validate_adopt(self, config: RedisConfig, resource: str) -> None:
        require_fields(config, ["instance_id", "region"], "adoption", resource)

    def create(
        self,
        context: ProvisionContext,
        stack: StackDescriptor,
        resource_input: ResourceInput,
        config: RedisConfig,
        params: ProvisionParams,
    ) -> tuple[Any, dict[str, Deferred[str] | str]]:
        name = resource_input.resource_name
        handle = context.engine.create_resource(KIND, name, {
            "project": params.project,
            "region": config.region or params.region,
            "memory_size_gb": config.memory_size_gb or self.DEFAULT_MEMORY_SIZE_GB,
            "redis_version": config.redis_version or self.DEFAULT_VERSION,
            "tier": config.tier or self.DEFAULT_TIER,
            "redis_config": dict(config.redis_config or {}),
            "labels": dict(params.labels),
        })
        return handle, {"host": handle.output("host"), "port": handle.output("port")}

    def adopt(
        self,
        context: ProvisionContext,
        stack: StackDescriptor,
        resource_input: ResourceInput,
        config: RedisConfig,
        params: ProvisionParams,
    ) -> tuple[Any, dict[str, Deferred[str] | str]]:
        name = resource_input.resource_name
        live = context.engine.lookup_resource(KIND, config.instance_id)
        logger.info(
            "Adopting redis %s: live memory=%sGB version=%s region=%s",
            config.instance_id, live.get("memory_size_gb"), live.get("redis_version"), live.get("region"),
        )
        properties = overlay_live(live, {
            "region": config.region,
            "memory_size_gb": config.memory_size_gb,
            "redis_version": config.redis_version,
            "tier": config.tier,
            "redis_config": config.redis_config,
        })
        handle = context.engine.import_resource(KIND, name, config.instance_id, properties)
        return handle, {"host": handle.output("host"), "port": handle.output("port")}

    def process(
        self,
        context: ProvisionContext,
        stack: StackDescriptor,
        resource_input: ComputeInput,
        collector: Any,
        params: ProvisionParams,
    ) -> ResourceOutput:
        name = resource_input.resource_name
        owner = resource_input.parent.full_reference
        host = context.exports.import_value(owner, export_key(name, "host"))
        port = context.exports.import_value(owner, export_key(name, "port"))

        res_name = resource_input.descriptor.name
        collector.add_env_variable_if_not_exist("REDIS_HOST", host, self.resource_type, res_name, stack.name)
        collector.add_env_variable_if_not_exist("REDIS_PORT", port, self.resource_type, res_name, stack.name)
        collector.add_resource_tpl_extension(res_name, {"host": host, "port": port})
        return ResourceOutput()
