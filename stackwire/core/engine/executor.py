"""
Engine executor — the central deployment loop.

Takes the declared stacks, orders them, and deploys each one:

    validate ──▶ wait for upstream commits ──▶ provision resources
        (concurrently) ──▶ resolve phase ──▶ assemble workload
        ──▶ commit exports

A stack either commits all of its exports or none: any failure (or an
operator abort) discards the staged set. Stacks downstream of a failed
stack are skipped; unrelated stacks still deploy.
"""

from __future__ import annotations

import logging
import time
import uuid
from concurrent.futures import FIRST_EXCEPTION, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import UTC, datetime

from stackwire.adapters.base import ProvisioningEngine
from stackwire.core.deferred import CancellationToken
from stackwire.core.engine.assembly import assemble_workload
from stackwire.core.engine.planner import StackCatalog
from stackwire.core.errors import (
    ConfigError,
    ProvisioningCancelledError,
    ProvisioningError,
    StackwireError,
)
from stackwire.core.exports import ExportStore
from stackwire.core.models.deployment import DeploymentConfig
from stackwire.core.models.resource import ResourceInput, ResourceOutput
from stackwire.core.models.stack import ComputeInput, StackDescriptor
from stackwire.core.persistence.audit import AuditEntry, AuditWriter
from stackwire.core.registry import ProvisionerRegistry
from stackwire.resources.base import ProvisionContext, ProvisionParams

logger = logging.getLogger(__name__)

DEFAULT_MAX_WORKERS = 8


@dataclass
class StackReport:
    """Result of deploying one stack."""

    stack: str
    environment: str
    reference: str = ""
    status: str = "pending"          # ok, failed, skipped, cancelled
    created: list[str] = field(default_factory=list)
    adopted: list[str] = field(default_factory=list)
    exports: list[str] = field(default_factory=list)
    workload: str | None = None
    error: str | None = None
    duration_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.status == "ok"

    def to_dict(self) -> dict:
        return {
            "stack": self.stack,
            "environment": self.environment,
            "reference": self.reference,
            "status": self.status,
            "created": list(self.created),
            "adopted": list(self.adopted),
            "exports": list(self.exports),
            "workload": self.workload,
            "error": self.error,
            "duration_ms": self.duration_ms,
        }


@dataclass
class DeploymentReport:
    """Result of deploying a set of stacks."""

    operation_id: str = ""
    engine: str = ""
    stacks: list[StackReport] = field(default_factory=list)
    duration_ms: int = 0

    @property
    def total(self) -> int:
        return len(self.stacks)

    @property
    def succeeded(self) -> int:
        return sum(1 for s in self.stacks if s.ok)

    @property
    def failed(self) -> int:
        return sum(1 for s in self.stacks if s.status == "failed")

    @property
    def skipped(self) -> int:
        return sum(1 for s in self.stacks if s.status in ("skipped", "cancelled"))

    @property
    def all_ok(self) -> bool:
        return self.succeeded == self.total

    @property
    def status(self) -> str:
        if self.all_ok:
            return "ok"
        if self.succeeded > 0:
            return "partial"
        if any(s.status == "cancelled" for s in self.stacks):
            return "cancelled"
        return "failed"

    @property
    def errors(self) -> list[str]:
        return [f"{s.reference}: {s.error}" for s in self.stacks if s.error]

    def get(self, stack: str) -> StackReport | None:
        for report in self.stacks:
            if stack in (report.stack, report.reference):
                return report
        return None

    def to_dict(self) -> dict:
        return {
            "operation_id": self.operation_id,
            "engine": self.engine,
            "status": self.status,
            "total": self.total,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "duration_ms": self.duration_ms,
            "stacks": [s.to_dict() for s in self.stacks],
        }


def params_from_config(config: DeploymentConfig) -> ProvisionParams:
    return ProvisionParams(
        project=config.project,
        region=config.region,
        namespace=config.namespace,
        labels=dict(config.labels),
        init_job_timeout=config.init_job_timeout,
    )


# ── One stack ───────────────────────────────────────────────────────


def validate_stack(
    stack: StackDescriptor,
    catalog: StackCatalog,
    registry: ProvisionerRegistry,
) -> list[ComputeInput]:
    """Check every resource config and consumed resource before any engine call."""
    for res in stack.resources:
        try:
            registry.get_provisioner(res.type).validate(res)
        except StackwireError as e:
            raise e.with_context(stack=stack.name, environment=stack.environment, resource=res.name)

    inputs = catalog.compute_inputs(stack)
    if inputs and stack.workload is None:
        raise ConfigError(
            "stack consumes resources but declares no workload",
            stack=stack.name,
            environment=stack.environment,
        )
    for compute_input in inputs:
        res = compute_input.descriptor
        if not registry.has_compute_processor(res.type):
            raise ConfigError(
                f"resource type {res.type!r} cannot be consumed by a workload",
                stack=stack.name,
                environment=stack.environment,
                resource=res.name,
            )
    return inputs


def _provision_resources(
    context: ProvisionContext,
    stack: StackDescriptor,
    registry: ProvisionerRegistry,
    params: ProvisionParams,
    max_workers: int,
) -> list[ResourceOutput]:
    """Provision every resource of the stack concurrently.

    The first failure cancels the siblings at their next checkpoint. The
    error raised is the first one in declared order.
    """
    if not stack.resources:
        return []

    with ThreadPoolExecutor(
        max_workers=max(1, min(max_workers, len(stack.resources))),
        thread_name_prefix=f"provision-{stack.name}",
    ) as pool:
        futures: list[Future[ResourceOutput]] = []
        for res in stack.resources:
            resource_input = ResourceInput(
                descriptor=res,
                stack_name=stack.name,
                environment=stack.environment,
                parent_env=stack.parent_env,
            )
            provisioner = registry.get_provisioner(res.type)
            futures.append(pool.submit(provisioner.provision, context, stack, resource_input, params))

        _, pending = wait(futures, return_when=FIRST_EXCEPTION)
        if pending:
            context.cancel.cancel(f"sibling resource of {stack.name!r} failed")
        wait(futures)

    errors = [f.exception() for f in futures if f.exception() is not None]
    if errors:
        # prefer the root cause over sibling cancellations
        root = [e for e in errors if not isinstance(e, ProvisioningCancelledError)]
        raise (root or errors)[0]
    return [f.result() for f in futures]


def provision_stack(
    stack: StackDescriptor,
    catalog: StackCatalog,
    engine: ProvisioningEngine,
    exports: ExportStore,
    registry: ProvisionerRegistry,
    params: ProvisionParams,
    cancel: CancellationToken | None = None,
    timeout: float | None = None,
    max_workers: int = DEFAULT_MAX_WORKERS,
) -> StackReport:
    """Deploy one stack and commit its exports.

    Raises:
        StackwireError: On any failure. Nothing is committed in that case.
    """
    started = time.monotonic()
    report = StackReport(stack=stack.name, environment=stack.environment, reference=stack.reference)
    token = (cancel or CancellationToken()).child()

    inputs = validate_stack(stack, catalog, registry)

    for upstream in catalog.upstream(stack):
        try:
            exports.wait_for_stack(upstream.reference, timeout)
        except StackwireError as e:
            raise e.with_context(stack=stack.name, environment=stack.environment)

    staged = exports.stage(stack.reference)
    context = ProvisionContext(engine=engine, exports=exports, staged=staged, cancel=token)
    try:
        outputs = _provision_resources(context, stack, registry, params, max_workers)
        for res, output in zip(stack.resources, outputs, strict=True):
            (report.adopted if output.mode == "adopt" else report.created).append(res.name)

        # resolve phase: every staged value is materialised before any consumer reads it
        staged.resolve(timeout=timeout, cancel=token)

        if stack.workload is not None:
            result = assemble_workload(context, stack, inputs, registry, params, timeout=timeout)
            report.workload = result.workload.id

        committed = exports.commit(staged, timeout=timeout, cancel=token)
        report.exports = sorted(committed)
    except StackwireError as e:
        exports.discard(staged)
        raise e.with_context(stack=stack.name, environment=stack.environment)
    except Exception as e:
        exports.discard(staged)
        raise ProvisioningError(
            f"stack {stack.name!r} failed: {e}",
            stack=stack.name,
            environment=stack.environment,
        ) from e

    report.status = "ok"
    report.duration_ms = int((time.monotonic() - started) * 1000)
    logger.info(
        "✓ %s: %d created, %d adopted, %d exports",
        stack.reference, len(report.created), len(report.adopted), len(report.exports),
    )
    return report


# ── All stacks ──────────────────────────────────────────────────────


def deploy(
    stacks: list[StackDescriptor],
    engine: ProvisioningEngine,
    registry: ProvisionerRegistry,
    params: ProvisionParams | None = None,
    exports: ExportStore | None = None,
    cancel: CancellationToken | None = None,
    timeout: float | None = None,
    operation_id: str | None = None,
) -> DeploymentReport:
    """Deploy stacks in dependency order.

    A failed stack is reported, its dependents are skipped, and the rest
    of the plan continues. An operator abort marks every remaining stack
    cancelled.

    Raises:
        ConfigError: If the plan itself is invalid (unknown parent, cycle).
    """
    started = time.monotonic()
    params = params or ProvisionParams()
    exports = exports or ExportStore(engine.state)
    cancel = cancel or CancellationToken()
    catalog = StackCatalog(stacks)
    order = catalog.plan_order()

    report = DeploymentReport(operation_id=operation_id or generate_operation_id(), engine=engine.name)
    failed: set[str] = set()

    for stack in order:
        if cancel.cancelled:
            report.stacks.append(_not_run(stack, "cancelled", cancel.reason))
            continue
        blocked = [u.reference for u in catalog.upstream(stack) if u.reference in failed]
        if blocked:
            logger.warning("⊘ %s skipped: upstream %s failed", stack.reference, ", ".join(blocked))
            report.stacks.append(_not_run(stack, "skipped", f"upstream failed: {', '.join(blocked)}"))
            failed.add(stack.reference)
            continue

        try:
            stack_report = provision_stack(
                stack, catalog, engine, exports, registry, params, cancel=cancel, timeout=timeout,
            )
        except ProvisioningCancelledError as e:
            logger.warning("⊘ %s cancelled: %s", stack.reference, e)
            report.stacks.append(_not_run(stack, "cancelled", str(e)))
            failed.add(stack.reference)
            continue
        except StackwireError as e:
            logger.error("✗ %s: %s", stack.reference, e)
            report.stacks.append(_not_run(stack, "failed", str(e)))
            failed.add(stack.reference)
            continue

        report.stacks.append(stack_report)

    report.duration_ms = int((time.monotonic() - started) * 1000)
    logger.info(
        "Deployment %s: %s (%d/%d stacks)",
        report.operation_id, report.status, report.succeeded, report.total,
    )
    return report


def deploy_config(
    config: DeploymentConfig,
    engine: ProvisioningEngine,
    registry: ProvisionerRegistry,
    **kwargs,
) -> DeploymentReport:
    """Deploy every stack of a loaded configuration."""
    return deploy(config.stacks, engine, registry, params=params_from_config(config), **kwargs)


def _not_run(stack: StackDescriptor, status: str, error: str) -> StackReport:
    return StackReport(
        stack=stack.name,
        environment=stack.environment,
        reference=stack.reference,
        status=status,
        error=error,
    )


def write_audit_entries(report: DeploymentReport, audit_writer: AuditWriter) -> None:
    """Write deployment results to the audit ledger."""
    entry = AuditEntry(
        operation_id=report.operation_id,
        operation_type="deploy",
        engine=report.engine,
        stacks_affected=[s.reference for s in report.stacks],
        resources_created=[f"{s.reference}/{r}" for s in report.stacks for r in s.created],
        resources_adopted=[f"{s.reference}/{r}" for s in report.stacks for r in s.adopted],
        status=report.status,
        stacks_total=report.total,
        stacks_succeeded=report.succeeded,
        stacks_failed=report.failed,
        duration_ms=report.duration_ms,
        errors=report.errors,
    )
    audit_writer.write(entry)


def generate_operation_id() -> str:
    """Generate a unique operation ID."""
    now = datetime.now(UTC).strftime("%Y%m%d-%H%M%S")
    short = uuid.uuid4().hex[:6]
    return f"op-{now}-{short}"
