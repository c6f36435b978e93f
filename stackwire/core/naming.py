"""
Naming service — deterministic names and export keys.

Every resource name and every export key is derived here from
(stack, environment, parent environment, resource name). The same inputs
always give the same name, whether the resource is later created or
adopted, so the two paths can never drift apart.

Custom stacks (e.g. a ``preview`` stack whose parent environment is
``prod``) name shared resources after the parent environment, so they
reuse the parent's resource and its credentials instead of getting a copy.

Platform sanitisers (RFC 1123 names, service-account id limits) live at
the bottom of this module and are applied only right before an engine
call, never before an export key is computed.
"""

from __future__ import annotations

import re

STACK_ENV_SEPARATOR = "--"

_ENV_VAR_INVALID = re.compile(r"[^A-Z0-9_]")
_SERVICE_ACCOUNT_MAX = 28


def effective_environment(environment: str, parent_env: str | None = None) -> str:
    """The environment a name is derived in.

    The parent environment wins only when it is set and differs from the
    stack's own environment.
    """
    if parent_env and parent_env != environment:
        return parent_env
    return environment


def derive_name(
    stack: str,
    environment: str,
    parent_env: str | None,
    resource_name: str,
) -> str:
    """Derive the canonical name of a resource (or of the stack itself).

    Examples:
        derive_name("infra", "prod", None, "cache")       -> "cache--prod"
        derive_name("infra", "preview", "prod", "cache")  -> "cache--prod"
        derive_name("api", "prod", None, "")              -> "api--prod"
    """
    env = effective_environment(environment, parent_env)
    base = resource_name or stack
    if not env:
        return base
    return f"{base}{STACK_ENV_SEPARATOR}{env}"


def stack_name_in_env(stack: str, environment: str) -> str:
    """Name of a stack deployed into an environment (``api--prod``)."""
    return f"{stack}{STACK_ENV_SEPARATOR}{environment}"


def stack_reference(stack: str, environment: str, parent_env: str | None = None) -> str:
    """Reference under which a stack's exports are stored."""
    return stack_name_in_env(stack, effective_environment(environment, parent_env))


def collapse_stack_reference(ref: str) -> str:
    """Strip the ``org/project/`` prefix from a fully-qualified reference."""
    return ref.split("/", 2)[-1]


def export_key(resource_name: str, suffix: str) -> str:
    """Export key for one output of a named resource (``cache--prod-host``)."""
    return f"{resource_name}-{suffix}"


def credential_username(stack: str, environment: str, is_custom: bool = False, relation: str | None = None) -> str:
    """Database user of a consuming stack.

    A ``uses`` consumer is its stack name, or ``<stack>--<env>`` for a custom
    stack. A ``depends_on`` consumer is always ``<stack>--<relation>``.
    """
    if relation is not None:
        return f"{stack}{STACK_ENV_SEPARATOR}{relation}"
    return stack_name_in_env(stack, environment) if is_custom else stack


def to_env_variable_name(name: str) -> str:
    """Upper-case and replace anything outside ``[A-Z0-9_]`` with ``_``."""
    return _ENV_VAR_INVALID.sub("_", name.upper())


# ── Boundary sanitisers ─────────────────────────────────────────────


def sanitize_k8s_name(name: str) -> str:
    """Replace underscores so the name is a valid RFC 1123 label."""
    return name.replace("_", "-")


def trim_string_middle(value: str, max_len: int, separator: str = "-") -> str:
    """Shorten ``value`` to ``max_len`` by cutting out its middle.

    Both ends are kept because they carry the most identifying parts
    (resource name at the front, environment at the back).
    """
    if len(value) <= max_len:
        return value
    keep = max_len - len(separator)
    head = keep - keep // 2
    tail = keep // 2
    return value[:head] + separator + (value[-tail:] if tail else "")


def to_service_account_id(name: str) -> str:
    """GCP service account ids: lower-case, hyphens, at most 28 chars."""
    sanitized = sanitize_k8s_name(name).lower()
    trimmed = trim_string_middle(sanitized, _SERVICE_ACCOUNT_MAX, "-")
    while "--" in trimmed:
        trimmed = trimmed.replace("--", "-")
    return trimmed.strip("-")
