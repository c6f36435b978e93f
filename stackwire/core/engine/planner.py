"""
Stack planner — who owns what, and in which order stacks deploy.

A stack may consume resources declared by itself or by any ancestor
(``uses``), or resources reached through another stack
(``depends_on``). Both relations are hard ordering edges: the owner
commits its exports before the consumer starts.

    infra ──▶ platform ──▶ api
                  │
                  └──────▶ worker (depends_on api)

Stacks are addressed by (name, environment). A parent or owner is looked
up in the consumer's resource environment, so a custom stack
(``parent_env`` differing from its own environment) lands on the shared
parent-env stacks.
"""

from __future__ import annotations

import logging
from typing import Any

from stackwire.core.errors import ConfigError
from stackwire.core.models.resource import ResourceDescriptor, ResourceInput
from stackwire.core.models.stack import ComputeInput, DependsOnResource, ParentInfo, StackDescriptor
from stackwire.core.naming import collapse_stack_reference, credential_username, stack_name_in_env

logger = logging.getLogger(__name__)


class StackCatalog:
    """Index of declared stacks with ancestry and resource resolution."""

    def __init__(self, stacks: list[StackDescriptor]):
        self._stacks: dict[str, StackDescriptor] = {}
        for stack in stacks:
            if stack.reference in self._stacks:
                raise ConfigError(
                    f"stack {stack.name!r} declared twice",
                    stack=stack.name,
                    environment=stack.environment,
                )
            self._stacks[stack.reference] = stack
        self._check_credential_usernames()

    def _check_credential_usernames(self) -> None:
        """A custom stack and a depends_on relation must not derive the same user."""
        claimed: dict[tuple[str, str], str] = {}
        for stack in self._stacks.values():
            claims = [
                (credential_username(stack.name, stack.environment, relation=dep.name),
                 f"{stack.reference} depends_on {dep.name!r}")
                for dep in stack.depends_on
            ]
            if stack.is_custom and stack.uses:
                claims.append((
                    credential_username(stack.name, stack.environment, is_custom=True),
                    f"{stack.reference} uses",
                ))
            for username, claimant in claims:
                other = claimed.setdefault((username, stack.resource_environment), claimant)
                if other != claimant:
                    raise ConfigError(
                        f"database user {username!r} derived by both {other} and {claimant}",
                        stack=stack.name,
                        environment=stack.environment,
                    )

    # ── Lookup ──────────────────────────────────────────────────────

    @property
    def stacks(self) -> list[StackDescriptor]:
        return list(self._stacks.values())

    def get(self, name: str, environment: str) -> StackDescriptor:
        ref = stack_name_in_env(collapse_stack_reference(name), environment)
        stack = self._stacks.get(ref)
        if stack is None:
            raise ConfigError(f"unknown stack {name!r} in environment {environment!r}")
        return stack

    def find(self, reference: str) -> StackDescriptor | None:
        """Stack by export reference (``<name>--<env>``) or bare name."""
        ref = collapse_stack_reference(reference)
        if ref in self._stacks:
            return self._stacks[ref]
        matches = [s for s in self._stacks.values() if s.name == ref]
        return matches[0] if len(matches) == 1 else None

    def parent_of(self, stack: StackDescriptor) -> StackDescriptor | None:
        if not stack.parent:
            return None
        try:
            return self.get(stack.parent, stack.resource_environment)
        except ConfigError as e:
            raise e.with_context(stack=stack.name, environment=stack.environment)

    def ancestors(self, stack: StackDescriptor) -> list[StackDescriptor]:
        """Parent chain, nearest first."""
        chain: list[StackDescriptor] = []
        seen = {stack.reference}
        current = self.parent_of(stack)
        while current is not None:
            if current.reference in seen:
                raise ConfigError(
                    f"parent cycle through {current.name!r}",
                    stack=stack.name,
                    environment=stack.environment,
                )
            seen.add(current.reference)
            chain.append(current)
            current = self.parent_of(current)
        return chain

    def find_resource(
        self, stack: StackDescriptor, name: str,
    ) -> tuple[StackDescriptor, ResourceDescriptor]:
        """The stack declaring ``name``, searching ``stack`` then its ancestors."""
        for candidate in [stack, *self.ancestors(stack)]:
            res = candidate.get_resource(name)
            if res is not None:
                return candidate, res
        raise ConfigError(
            f"resource {name!r} is not declared by {stack.name!r} or its ancestors",
            stack=stack.name,
            environment=stack.environment,
            resource=name,
        )

    def owner_of(self, stack: StackDescriptor, dependency: DependsOnResource) -> StackDescriptor:
        try:
            return self.get(dependency.owner, stack.resource_environment)
        except ConfigError as e:
            raise e.with_context(
                stack=stack.name, environment=stack.environment, consumer=dependency.name
            )

    # ── Consumption ─────────────────────────────────────────────────

    def compute_inputs(self, stack: StackDescriptor) -> list[ComputeInput]:
        """Every consumed resource, in declared order (uses, then depends_on)."""
        inputs: list[ComputeInput] = []
        for name in stack.uses:
            declaring, res = self.find_resource(stack, name)
            inputs.append(self._bind(stack, declaring, res, None))
        for dep in stack.depends_on:
            owner = self.owner_of(stack, dep)
            try:
                declaring, res = self.find_resource(owner, dep.resource)
            except ConfigError as e:
                raise e.with_context(consumer=dep.name)
            inputs.append(self._bind(stack, declaring, res, dep))
        return inputs

    @staticmethod
    def _bind(
        stack: StackDescriptor,
        declaring: StackDescriptor,
        res: ResourceDescriptor,
        dependency: DependsOnResource | None,
    ) -> ComputeInput:
        return ComputeInput(
            descriptor=res,
            stack_name=declaring.name,
            environment=declaring.environment,
            parent_env=declaring.parent_env,
            parent=ParentInfo(
                stack_name=declaring.name,
                full_reference=declaring.reference,
                stack_env=stack.environment,
                parent_env=stack.parent_env,
                uses_resource=dependency is None,
                depends_on_resource=dependency,
            ),
        )

    def upstream(self, stack: StackDescriptor) -> list[StackDescriptor]:
        """Stacks that must commit before ``stack`` deploys."""
        found: dict[str, StackDescriptor] = {}
        parent = self.parent_of(stack)
        if parent is not None:
            found[parent.reference] = parent
        for dep in stack.depends_on:
            owner = self.owner_of(stack, dep)
            found.setdefault(owner.reference, owner)
        for name in stack.uses:
            declaring, _ = self.find_resource(stack, name)
            if declaring.reference != stack.reference:
                found.setdefault(declaring.reference, declaring)
        return list(found.values())

    # ── Ordering ────────────────────────────────────────────────────

    def plan_order(self) -> list[StackDescriptor]:
        """Stacks in deploy order; ties keep declared order.

        Raises:
            ConfigError: On an unknown parent/owner or a dependency cycle.
        """
        upstream = {ref: [u.reference for u in self.upstream(s)] for ref, s in self._stacks.items()}
        ordered: list[StackDescriptor] = []
        placed: set[str] = set()
        remaining = list(self._stacks)

        while remaining:
            ready = [ref for ref in remaining if all(u in placed for u in upstream[ref])]
            if not ready:
                raise ConfigError(f"dependency cycle between stacks: {', '.join(remaining)}")
            for ref in ready:
                ordered.append(self._stacks[ref])
                placed.add(ref)
            remaining = [ref for ref in remaining if ref not in placed]

        logger.debug("Plan order: %s", " → ".join(s.reference for s in ordered))
        return ordered

    def describe(self) -> list[dict[str, Any]]:
        """Plan summary for display (one entry per stack, in deploy order)."""
        plan = []
        for stack in self.plan_order():
            resources = []
            for res in stack.resources:
                bound = ResourceInput(
                    descriptor=res,
                    stack_name=stack.name,
                    environment=stack.environment,
                    parent_env=stack.parent_env,
                )
                resources.append({
                    "name": res.name,
                    "type": res.type,
                    "mode": "adopt" if res.adopt else "create",
                    "derived_name": bound.resource_name,
                })
            plan.append({
                "stack": stack.name,
                "environment": stack.environment,
                "reference": stack.reference,
                "after": [u.reference for u in self.upstream(stack)],
                "resources": resources,
                "consumes": [
                    {
                        "resource": ci.descriptor.name,
                        "relation": ci.parent.relation,
                        "from": ci.parent.full_reference,
                    }
                    for ci in self.compute_inputs(stack)
                ],
                "workload": stack.workload.image if stack.workload else None,
            })
        return plan
