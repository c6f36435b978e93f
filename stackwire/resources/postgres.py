"""
gcp-cloudsql-postgres — Cloud SQL for PostgreSQL.

Provisioning exports the root password (secret) and the coordinates a
consumer needs to reach the instance through the Cloud SQL proxy.

Consumption wires one database user per consumer:

    uses        user and database named after the consuming stack
    depends_on  user ``<consumer>--<relation>`` on the owner stack's
                database, so dependents sharing one owner never collide

Each consumer gets a proxy sidecar (pre-processor) and a grant job run
through a throwaway proxy once the workload exists (post-processor).
"""

from __future__ import annotations

import logging
from typing import Any

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from stackwire.core.deferred import Deferred
from stackwire.core.errors import ConfigError
from stackwire.core.exports import SecretValue
from stackwire.core.models.resource import (
    ResourceConfig,
    ResourceExport,
    ResourceInput,
    ResourceOutput,
)
from stackwire.core.models.stack import ComputeInput, StackDescriptor
from stackwire.core.models.workload import Workload, WorkloadArgs
from stackwire.core.naming import (
    collapse_stack_reference,
    credential_username,
    export_key,
    sanitize_k8s_name,
    stack_name_in_env,
    to_env_variable_name,
)
from stackwire.resources.base import (
    ProvisionContext,
    ProvisionParams,
    ResourceProvisioner,
    overlay_live,
    require_fields,
)
from stackwire.resources.sidecar import (
    CloudSQLInstance,
    DbUser,
    generate_credential,
    init_job_post_processor,
    sidecar_pre_processor,
)

logger = logging.getLogger(__name__)

KIND = "cloudsql-instance"
PROXY_HOST = "localhost"
PROXY_PORT = "5432"


class UsersProvisionRuntime(BaseModel):
    """Where per-consumer init jobs run."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True, alias_generator=to_camel)

    type: str = "gke"
    resource_name: str


class PostgresConfig(ResourceConfig):
    version: str | None = None
    tier: str | None = None
    region: str | None = None
    project: str | None = None
    deletion_protection: bool | None = None
    database_flags: dict[str, str] | None = None
    users_provision_runtime: UsersProvisionRuntime | None = None
    # adopt
    instance_name: str | None = None
    connection_name: str | None = None
    root_password: str | None = None


class PostgresProvisioner(ResourceProvisioner):
    resource_type = "gcp-cloudsql-postgres"
    kind = "database"
    config_model = PostgresConfig
    EXPORTS = {
        "root-password": True,
        "instance-name": False,
        "connection-name": False,
        "project": False,
        "region": False,
    }

    DEFAULT_VERSION = "POSTGRES_14"
    DEFAULT_TIER = "db-f1-micro"

    def validate_adopt(self, config: PostgresConfig, resource: str) -> None:
        require_fields(config, ["instance_name", "connection_name"], "adoption", resource)

    def create(
        self,
        context: ProvisionContext,
        stack: StackDescriptor,
        resource_input: ResourceInput,
        config: PostgresConfig,
        params: ProvisionParams,
    ) -> tuple[Any, dict[str, Deferred[str] | str]]:
        name = resource_input.resource_name
        project = config.project or params.project
        region = config.region or params.region
        root_password = generate_credential(context.engine, f"{name}-root")
        handle = context.engine.create_resource(KIND, name, {
            "project": project,
            "region": region,
            "database_version": config.version or self.DEFAULT_VERSION,
            "tier": config.tier or self.DEFAULT_TIER,
            "deletion_protection": bool(config.deletion_protection),
            "database_flags": dict(config.database_flags or {}),
            "root_password": root_password,
        })
        return handle, {
            "root-password": root_password,
            "instance-name": handle.output("instance_name"),
            "connection-name": handle.output("connection_name"),
            "project": project,
            "region": region,
        }

    def adopt(
        self,
        context: ProvisionContext,
        stack: StackDescriptor,
        resource_input: ResourceInput,
        config: PostgresConfig,
        params: ProvisionParams,
    ) -> tuple[Any, dict[str, Deferred[str] | str]]:
        name = resource_input.resource_name
        live = context.engine.lookup_resource(KIND, config.instance_name)
        properties = overlay_live(live, {
            "project": config.project,
            "region": config.region,
            "database_version": config.version,
            "tier": config.tier,
            "deletion_protection": config.deletion_protection,
            "database_flags": config.database_flags,
            "instance_name": config.instance_name,
            "connection_name": config.connection_name,
        })
        logger.info(
            "Adopting cloudsql %s (tier=%s, version=%s)",
            config.instance_name, properties.get("tier"), properties.get("database_version"),
        )
        handle = context.engine.import_resource(KIND, name, config.instance_name, properties)
        if not config.root_password:
            logger.warning("Adopted cloudsql %s has no root password; consumers will fail", name)
        return handle, {
            "root-password": Deferred.resolved(config.root_password or "", secret=True),
            "instance-name": config.instance_name,
            "connection-name": config.connection_name,
            "project": properties.get("project") or params.project,
            "region": properties.get("region") or params.region,
        }

    # ── Consumption ─────────────────────────────────────────────────

    def process(
        self,
        context: ProvisionContext,
        stack: StackDescriptor,
        resource_input: ComputeInput,
        collector: Any,
        params: ProvisionParams,
    ) -> ResourceOutput:
        descriptor = resource_input.descriptor
        config = self.validate(descriptor)
        runtime = config.users_provision_runtime
        if runtime is None:
            raise ConfigError(
                f"{descriptor.name!r} needs users_provision_runtime to be consumed",
                resource=descriptor.name,
            )
        if runtime.type != "gke":
            raise ConfigError(
                f"unsupported users_provision_runtime type {runtime.type!r}",
                resource=descriptor.name,
            )

        exports = context.exports
        engine = context.engine
        name = resource_input.resource_name
        owner = resource_input.parent.full_reference
        cluster_name = resource_input.to_res_name(runtime.resource_name)
        kubeconfig = exports.import_value(owner, export_key(cluster_name, "kubeconfig"), secret=True)
        root_password = exports.import_value(owner, export_key(name, "root-password"), secret=True)
        instance = CloudSQLInstance(
            project=exports.import_value(owner, export_key(name, "project")),
            region=exports.import_value(owner, export_key(name, "region")),
            instance_name=exports.import_value(owner, export_key(name, "instance-name")),
        )

        dependency = resource_input.parent.depends_on_resource
        if dependency is None:
            username = credential_username(stack.name, stack.environment, stack.is_custom)
            database = stack_name_in_env(stack.name, stack.environment)
            db_handle = engine.create_resource("cloudsql-database", f"{database}-{name}", {
                "project": instance.project,
                "instance": instance.instance_name,
                "name": database,
            })
            collector.add_dependency(db_handle)
        else:
            owner_stack = collapse_stack_reference(dependency.owner)
            username = credential_username(stack.name, stack.environment, relation=dependency.name)
            database = stack_name_in_env(owner_stack, stack.resource_environment)

        scope = f"{username}-{name}"
        password = generate_credential(engine, scope)
        user_handle = engine.create_resource("cloudsql-user", f"{scope}-user", {
            "project": instance.project,
            "instance": instance.instance_name,
            "name": username,
            "password": password,
        })
        collector.add_dependency(user_handle)

        namespace = sanitize_k8s_name(stack.name)
        collector.add_pre_processor(
            WorkloadArgs,
            sidecar_pre_processor(engine, f"{scope}-sidecarcsql", instance, namespace),
            label=f"{name}-sidecar",
        )
        collector.add_post_processor(
            Workload,
            init_job_post_processor(
                engine,
                DbUser(username=username, database=database),
                root_password,
                instance,
                proxy_name=f"{scope}-initcsql",
                namespace=namespace,
                timeout_sec=params.init_sql_timeout,
                wait_timeout=params.init_job_timeout,
                cluster=cluster_name,
                kubeconfig=kubeconfig,
            ),
            label=f"{scope}-init",
        )

        if dependency is None:
            self._wire_uses(collector, descriptor.name, stack, username, database, password)
        else:
            self._wire_depends_on(
                collector, descriptor.name, stack, dependency.name,
                collapse_stack_reference(dependency.owner), username, database, password,
            )

        return ResourceOutput(
            ref=user_handle,
            exports=[
                ResourceExport(f"{scope}-username", Deferred.resolved(username), False),
                ResourceExport(f"{scope}-password", password, True),
            ],
        )

    def _wire_uses(self, collector, res_name, stack, username, database, password) -> None:
        add = collector.add_env_variable_if_not_exist
        tag = (self.resource_type, res_name, stack.name)
        add("POSTGRES_USERNAME", username, *tag)
        add("POSTGRES_DATABASE", database, *tag)
        add("POSTGRES_HOST", PROXY_HOST, *tag)
        add("POSTGRES_PORT", PROXY_PORT, *tag)
        add("PGHOST", PROXY_HOST, *tag)
        add("PGPORT", PROXY_PORT, *tag)
        add("PGDATABASE", database, *tag)
        add("PGUSER", username, *tag)

        def _on_password(value: str) -> None:
            collector.add_secret_env_variable_if_not_exist("POSTGRES_PASSWORD", value, *tag)
            collector.add_secret_env_variable_if_not_exist("PGPASSWORD", value, *tag)
            collector.add_resource_tpl_extension(res_name, {
                "password": SecretValue(value),
                "user": username,
                "database": database,
                "host": PROXY_HOST,
                "port": PROXY_PORT,
            })

        collector.add_output(password.map(_on_password, label=f"{username}-pg-env"))

    def _wire_depends_on(self, collector, res_name, stack, relation, owner_stack, username, database, password) -> None:
        tag = (self.resource_type, res_name, stack.name)
        prefix = f"POSTGRES_DEP_{owner_stack}"
        add = collector.add_env_variable_if_not_exist
        add(to_env_variable_name(f"{prefix}_USERNAME"), username, *tag)
        add(to_env_variable_name(f"{prefix}_DATABASE"), database, *tag)
        add(to_env_variable_name(f"{prefix}_HOST"), PROXY_HOST, *tag)
        add(to_env_variable_name(f"{prefix}_PORT"), PROXY_PORT, *tag)

        def _on_password(value: str) -> None:
            collector.add_secret_env_variable_if_not_exist(
                to_env_variable_name(f"{prefix}_PASSWORD"), value, *tag
            )
            collector.add_dependency_tpl_extension(relation, res_name, {
                "password": SecretValue(value),
                "user": username,
                "database": database,
                "host": PROXY_HOST,
                "port": PROXY_PORT,
            })

        collector.add_output(password.map(_on_password, label=f"{username}-pg-env"))
