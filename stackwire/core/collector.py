"""
Compute context collector — per-workload accumulator of runtime wiring.

One collector is created for each workload assembly. Compute processors
(one call per consumed resource) populate it with:

    env / secret env      first-write-wins ordered maps
    dependencies          opaque engine handles the workload must wait for
    pre/post processors   (shape, fn) hooks run against the workload spec
    template extensions   values for ``${resource:...}`` placeholders
    outputs               deferred values that must resolve before deploy

First write wins, but "first" is defined by declared order, not by which
thread happened to get there first. The assembler wraps each processor
call in ``collector.scoped(rank)`` where rank is the relation's position
in the stack descriptor; an existing entry is only replaced by a write
from a strictly lower rank. Within one rank the earliest write wins.

The collector is consumed once (``seal``) and then discarded.
"""

from __future__ import annotations

import logging
import re
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

from stackwire.core.deferred import Deferred
from stackwire.core.errors import SecretExposureError, ShapeMismatchError
from stackwire.core.exports import SecretValue
from stackwire.core.models.workload import ComputeEnvVariable

logger = logging.getLogger(__name__)

_PLACEHOLDER = re.compile(r"\$\{(resource|dependency):([^}]+)\}")


@dataclass
class _Hook:
    shape: type
    fn: Callable[[Any], Any]
    rank: int
    seq: int
    label: str = ""


@dataclass
class ComputeContext:
    """Snapshot of a sealed collector."""

    env: dict[str, str] = field(default_factory=dict)
    secret_env: dict[str, str] = field(default_factory=dict)
    variables: list[ComputeEnvVariable] = field(default_factory=list)
    dependencies: list[Any] = field(default_factory=list)
    outputs: list[Deferred[Any]] = field(default_factory=list)


class ComputeContextCollector:
    """Thread-safe collector of env variables, hooks and template values."""

    def __init__(self, stack_name: str, environment: str, parent_env: str | None = None):
        self.stack_name = stack_name
        self.environment = environment
        self.parent_env = parent_env
        self._lock = threading.RLock()
        self._seq = 0
        self._sealed = False
        self._vars: dict[str, tuple[ComputeEnvVariable, int]] = {}
        self._dependencies: list[Any] = []
        self._pre: list[_Hook] = []
        self._post: list[_Hook] = []
        self._resource_tpl: dict[str, dict[str, tuple[str, int]]] = {}
        self._dependency_tpl: dict[str, dict[str, dict[str, tuple[str, int]]]] = {}
        self._outputs: list[Deferred[Any]] = []

    # ── Ordering ────────────────────────────────────────────────────

    @contextmanager
    def scoped(self, rank: int) -> Iterator[RankedCollector]:
        """Yield a view whose writes carry ``rank``, on any thread."""
        yield RankedCollector(self, rank)

    def _next_seq(self) -> int:
        self._seq += 1
        return self._seq

    def _check_open(self) -> None:
        if self._sealed:
            raise RuntimeError(f"collector for {self.stack_name!r} already consumed")

    # ── Env variables ───────────────────────────────────────────────

    def add_env_variable_if_not_exist(
        self,
        name: str,
        value: str,
        resource_type: str = "",
        resource_name: str = "",
        stack_name: str = "",
        rank: int = 0,
    ) -> bool:
        """Add a plain env variable unless an earlier writer already set it.

        Returns True when this call's value is the one now recorded.
        """
        if isinstance(value, SecretValue):
            raise SecretExposureError(
                f"secret value offered as plain env variable {name!r}",
                stack=self.stack_name,
                environment=self.environment,
                resource=resource_name or None,
            )
        var = ComputeEnvVariable(
            name=name, value=value, resource_type=resource_type,
            resource_name=resource_name, stack_name=stack_name, secret=False, rank=rank,
        )
        return self._put(var)

    def add_secret_env_variable_if_not_exist(
        self,
        name: str,
        value: str,
        resource_type: str = "",
        resource_name: str = "",
        stack_name: str = "",
        rank: int = 0,
    ) -> bool:
        var = ComputeEnvVariable(
            name=name, value=str(value), resource_type=resource_type,
            resource_name=resource_name, stack_name=stack_name, secret=True, rank=rank,
        )
        return self._put(var)

    def _put(self, var: ComputeEnvVariable) -> bool:
        with self._lock:
            self._check_open()
            existing = self._vars.get(var.name)
            if existing is not None and existing[0].rank <= var.rank:
                logger.debug(
                    "env %s already set by %s/%s, keeping it",
                    var.name, existing[0].resource_type, existing[0].resource_name,
                )
                return False
            self._vars[var.name] = (var, self._next_seq())
            return True

    def _ordered_vars(self) -> list[ComputeEnvVariable]:
        with self._lock:
            entries = sorted(self._vars.values(), key=lambda e: (e[0].rank, e[1]))
        return [var for var, _ in entries]

    @property
    def env_variables(self) -> list[ComputeEnvVariable]:
        return [v for v in self._ordered_vars() if not v.secret]

    @property
    def secret_env_variables(self) -> list[ComputeEnvVariable]:
        return [v for v in self._ordered_vars() if v.secret]

    def env(self) -> dict[str, str]:
        return {v.name: v.value for v in self.env_variables}

    def secret_env(self) -> dict[str, str]:
        return {v.name: v.value for v in self.secret_env_variables}

    # ── Dependencies and outputs ────────────────────────────────────

    def add_dependency(self, handle: Any) -> None:
        with self._lock:
            self._check_open()
            if not any(h is handle for h in self._dependencies):
                self._dependencies.append(handle)

    @property
    def dependencies(self) -> list[Any]:
        with self._lock:
            return list(self._dependencies)

    def add_output(self, value: Deferred[Any]) -> None:
        with self._lock:
            self._check_open()
            self._outputs.append(value)

    @property
    def outputs(self) -> list[Deferred[Any]]:
        with self._lock:
            return list(self._outputs)

    # ── Processors ──────────────────────────────────────────────────

    def add_pre_processor(self, shape: type, fn: Callable[[Any], Any], rank: int = 0, label: str = "") -> None:
        """Register a hook run against the workload spec before deploy."""
        with self._lock:
            self._check_open()
            self._pre.append(_Hook(shape, fn, rank, self._next_seq(), label))

    def add_post_processor(self, shape: type, fn: Callable[[Any], Any], rank: int = 0, label: str = "") -> None:
        """Register a hook run against the deployed workload."""
        with self._lock:
            self._check_open()
            self._post.append(_Hook(shape, fn, rank, self._next_seq(), label))

    def run_pre_processors(self, target: Any) -> Any:
        return self._run(self._pre, target, "pre")

    def run_post_processors(self, target: Any) -> Any:
        return self._run(self._post, target, "post")

    def _run(self, hooks: list[_Hook], target: Any, phase: str) -> Any:
        with self._lock:
            ordered = sorted(hooks, key=lambda h: (h.rank, h.seq))
        for hook in ordered:
            if not isinstance(target, hook.shape):
                raise ShapeMismatchError(
                    f"{phase}-processor {hook.label or hook.fn!r} expects "
                    f"{hook.shape.__name__}, got {type(target).__name__}",
                    stack=self.stack_name,
                    environment=self.environment,
                )
            result = hook.fn(target)
            if result is not None:
                if not isinstance(result, hook.shape):
                    raise ShapeMismatchError(
                        f"{phase}-processor {hook.label or hook.fn!r} returned "
                        f"{type(result).__name__}, expected {hook.shape.__name__}",
                        stack=self.stack_name,
                        environment=self.environment,
                    )
                target = result
        return target

    # ── Templates ───────────────────────────────────────────────────

    def add_resource_tpl_extension(self, resource_name: str, values: dict[str, str], rank: int = 0) -> None:
        """Publish values for ``${resource:<resource_name>.<key>}``."""
        with self._lock:
            self._check_open()
            slot = self._resource_tpl.setdefault(resource_name, {})
            self._merge_tpl(slot, values, rank)

    def add_dependency_tpl_extension(
        self, relation: str, resource_name: str, values: dict[str, str], rank: int = 0,
    ) -> None:
        """Publish values for ``${dependency:<relation>.<resource_name>.<key>}``."""
        with self._lock:
            self._check_open()
            slot = self._dependency_tpl.setdefault(relation, {}).setdefault(resource_name, {})
            self._merge_tpl(slot, values, rank)

    @staticmethod
    def _merge_tpl(slot: dict[str, tuple[str, int]], values: dict[str, str], rank: int) -> None:
        for key, value in values.items():
            existing = slot.get(key)
            if existing is None or rank < existing[1]:
                slot[key] = (value, rank)

    def _lookup_tpl(self, kind: str, path: str) -> str | None:
        with self._lock:
            if kind == "resource":
                res, _, key = path.partition(".")
                entry = self._resource_tpl.get(res, {}).get(key)
            else:
                parts = path.split(".", 2)
                if len(parts) != 3:
                    return None
                relation, res, key = parts
                entry = self._dependency_tpl.get(relation, {}).get(res, {}).get(key)
        return entry[0] if entry is not None else None

    def resolve_placeholders(self, value: str) -> tuple[str, bool]:
        """Substitute template placeholders in ``value``.

        Returns the new value and whether any substituted part was secret.
        Unknown placeholders are left untouched.
        """
        secret = False

        def _sub(match: re.Match[str]) -> str:
            nonlocal secret
            found = self._lookup_tpl(match.group(1), match.group(2).strip())
            if found is None:
                return match.group(0)
            if isinstance(found, SecretValue):
                secret = True
            return str.__str__(found)

        resolved = _PLACEHOLDER.sub(_sub, value)
        return (SecretValue(resolved) if secret else resolved), secret

    # ── Consumption ─────────────────────────────────────────────────

    def seal(self) -> ComputeContext:
        """Consume the collector; further writes raise RuntimeError."""
        with self._lock:
            self._check_open()
            variables = self._ordered_vars()
            self._sealed = True
            return ComputeContext(
                env={v.name: v.value for v in variables if not v.secret},
                secret_env={v.name: v.value for v in variables if v.secret},
                variables=variables,
                dependencies=list(self._dependencies),
                outputs=list(self._outputs),
            )


class RankedCollector:
    """A view of a collector that stamps every write with a fixed rank.

    Processors receive this view; callbacks they register on deferred
    values keep the rank regardless of the thread that runs them.
    """

    def __init__(self, collector: ComputeContextCollector, rank: int):
        self._collector = collector
        self.rank = rank

    @property
    def stack_name(self) -> str:
        return self._collector.stack_name

    @property
    def environment(self) -> str:
        return self._collector.environment

    def add_env_variable_if_not_exist(self, name, value, resource_type="", resource_name="", stack_name="") -> bool:
        return self._collector.add_env_variable_if_not_exist(
            name, value, resource_type, resource_name, stack_name, rank=self.rank
        )

    def add_secret_env_variable_if_not_exist(self, name, value, resource_type="", resource_name="", stack_name="") -> bool:
        return self._collector.add_secret_env_variable_if_not_exist(
            name, value, resource_type, resource_name, stack_name, rank=self.rank
        )

    def add_dependency(self, handle: Any) -> None:
        self._collector.add_dependency(handle)

    def add_output(self, value: Deferred[Any]) -> None:
        self._collector.add_output(value)

    def add_pre_processor(self, shape: type, fn: Callable[[Any], Any], label: str = "") -> None:
        self._collector.add_pre_processor(shape, fn, rank=self.rank, label=label)

    def add_post_processor(self, shape: type, fn: Callable[[Any], Any], label: str = "") -> None:
        self._collector.add_post_processor(shape, fn, rank=self.rank, label=label)

    def add_resource_tpl_extension(self, resource_name: str, values: dict[str, str]) -> None:
        self._collector.add_resource_tpl_extension(resource_name, values, rank=self.rank)

    def add_dependency_tpl_extension(self, relation: str, resource_name: str, values: dict[str, str]) -> None:
        self._collector.add_dependency_tpl_extension(relation, resource_name, values, rank=self.rank)
