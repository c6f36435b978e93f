"""
Workload assembly — the compute phase of one stack.

    compute inputs ──▶ processors (scoped by rank) ──▶ resolve outputs
        ──▶ seal collector ──▶ WorkloadArgs ──▶ pre-processors
        ──▶ engine.deploy_workload ──▶ post-processors

Each consumed resource gets its compute processor called once, inside
``collector.scoped(rank)`` where rank is the position of the relation in
the stack descriptor. Exports a processor returns (per-consumer
credentials) are staged on the consuming stack.

Explicitly configured workload env always beats processor-contributed
env. A value that pulls in a secret template value goes to secret env.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from stackwire.core.collector import ComputeContext, ComputeContextCollector
from stackwire.core.deferred import resolve_all
from stackwire.core.errors import ConfigError, StackwireError
from stackwire.core.models.stack import ComputeInput, StackDescriptor
from stackwire.core.models.workload import Container, Workload, WorkloadArgs
from stackwire.core.naming import sanitize_k8s_name
from stackwire.core.registry import ProvisionerRegistry
from stackwire.resources.base import ProvisionContext, ProvisionParams

logger = logging.getLogger(__name__)

MAIN_CONTAINER = "main"


@dataclass
class AssemblyResult:
    """What the compute phase produced for one stack."""

    args: WorkloadArgs
    workload: Workload
    context: ComputeContext


def run_compute_processors(
    context: ProvisionContext,
    stack: StackDescriptor,
    inputs: list[ComputeInput],
    registry: ProvisionerRegistry,
    params: ProvisionParams,
    collector: ComputeContextCollector,
) -> None:
    """Call each consumed resource's processor and stage what it exports."""
    for rank, compute_input in enumerate(inputs):
        context.cancel.raise_if_cancelled()
        res = compute_input.descriptor
        relation = compute_input.parent.depends_on_resource
        try:
            processor = registry.get_compute_processor(res.type)
            with collector.scoped(rank) as scoped:
                output = processor(context, stack, compute_input, scoped, params)
            context.staged.extend(output.exports)
        except StackwireError as e:
            raise e.with_context(
                stack=stack.name,
                environment=stack.environment,
                resource=res.name,
                consumer=relation.name if relation else stack.name,
            )
        logger.debug(
            "Processed %s %s for %s (%s)",
            res.type, res.name, stack.name, compute_input.parent.relation,
        )


def build_workload_args(
    stack: StackDescriptor,
    collector: ComputeContextCollector,
    computed: ComputeContext,
) -> WorkloadArgs:
    """Main container from the stack's workload config plus collected env."""
    workload = stack.workload
    if workload is None:
        raise ConfigError("stack has no workload", stack=stack.name, environment=stack.environment)

    env = dict(computed.env)
    secret_env = dict(computed.secret_env)

    for name, raw in workload.env.items():
        value, secret = collector.resolve_placeholders(raw)
        if secret:
            env.pop(name, None)
            secret_env[name] = value
        else:
            secret_env.pop(name, None)
            env[name] = value

    for name, raw in workload.secret_env.items():
        value, _ = collector.resolve_placeholders(raw)
        env.pop(name, None)
        secret_env[name] = value

    name = sanitize_k8s_name(stack.name)
    main = Container(
        name=MAIN_CONTAINER,
        image=workload.image,
        command=list(workload.command),
        args=list(workload.args),
        env=env,
        secret_env=secret_env,
        ports=[workload.port] if workload.port else [],
    )
    return WorkloadArgs(
        name=name,
        namespace=name,
        containers=[main],
        env=dict(env),
        secret_env=dict(secret_env),
        depends_on=[getattr(h, "name", str(h)) for h in computed.dependencies],
    )


def assemble_workload(
    context: ProvisionContext,
    stack: StackDescriptor,
    inputs: list[ComputeInput],
    registry: ProvisionerRegistry,
    params: ProvisionParams,
    timeout: float | None = None,
) -> AssemblyResult:
    """Run the compute phase and deploy the stack's workload.

    Raises:
        StackwireError: Any processor, resolution or hook failure; the
            caller discards the stack's staged exports.
    """
    collector = ComputeContextCollector(stack.name, stack.environment, stack.parent_env)
    run_compute_processors(context, stack, inputs, registry, params, collector)

    try:
        resolve_all(collector.outputs, timeout=timeout, cancel=context.cancel)
    except StackwireError as e:
        raise e.with_context(stack=stack.name, environment=stack.environment)

    computed = collector.seal()
    logger.info(
        "Workload %s: %d env, %d secret env, %d dependencies",
        stack.name, len(computed.env), len(computed.secret_env), len(computed.dependencies),
    )

    try:
        args = build_workload_args(stack, collector, computed)
        args = collector.run_pre_processors(args)
        context.cancel.raise_if_cancelled()
        workload = context.engine.deploy_workload(args)
        workload = collector.run_post_processors(workload)
    except StackwireError as e:
        raise e.with_context(stack=stack.name, environment=stack.environment)

    return AssemblyResult(args=args, workload=workload, context=computed)
