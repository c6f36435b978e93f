"""
Error taxonomy — every failure the wiring engine can surface.

All errors derive from ``StackwireError`` and carry optional context
(stack, environment, resource, consumer). Each boundary the error crosses
fills in the context it knows about via ``with_context``, so a top-level
message names exactly which resource/consumer pairing failed:

    ExportEmptyError: export 'db--prod-root-password' of 'infra--prod' is empty
        [stack=api, environment=prod, resource=db]

Nothing here is ever swallowed: the orchestrator aborts the stack on the
first error and discards staged exports.
"""

from __future__ import annotations

_CONTEXT_FIELDS = ("stack", "environment", "resource", "consumer")


class StackwireError(Exception):
    """Base exception for all stackwire errors."""

    def __init__(
        self,
        message: str,
        *,
        stack: str | None = None,
        environment: str | None = None,
        resource: str | None = None,
        consumer: str | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.stack = stack
        self.environment = environment
        self.resource = resource
        self.consumer = consumer

    def with_context(self, **context: str | None) -> StackwireError:
        """Fill in context fields that are still unset and return self.

        Inner boundaries know the most specific context, so values that
        are already set are never overwritten.
        """
        for name, value in context.items():
            if name not in _CONTEXT_FIELDS:
                raise TypeError(f"unknown error context field {name!r}")
            if value and getattr(self, name) is None:
                setattr(self, name, value)
        return self

    @property
    def context(self) -> dict[str, str]:
        return {
            name: getattr(self, name)
            for name in _CONTEXT_FIELDS
            if getattr(self, name) is not None
        }

    def __str__(self) -> str:
        if not self.context:
            return self.message
        details = ", ".join(f"{k}={v}" for k, v in self.context.items())
        return f"{self.message} [{details}]"


class ConfigError(StackwireError):
    """Invalid or missing descriptor fields. Raised before any cloud call."""


class ResourceLookupError(StackwireError):
    """The adopt path could not find the external object."""

    def __init__(self, message: str, resource_id: str | None = None, **context):
        super().__init__(message, **context)
        self.resource_id = resource_id


class ExportError(StackwireError):
    """Base for stack export read/write failures."""

    def __init__(self, message: str, key: str = "", stack_ref: str = "", **context):
        super().__init__(message, **context)
        self.key = key
        self.stack_ref = stack_ref


class ExportNotFoundError(ExportError):
    """A consumer asked for an export that the owner stack never wrote."""


class ExportEmptyError(ExportError):
    """The export exists but its value is blank."""


class ExportSecrecyError(ExportError):
    """A secret export was read through the plain (non-secret) path."""


class ExportConflictError(ExportError):
    """An export key was written twice during one deploy."""


class ShapeMismatchError(StackwireError):
    """A pre/post-processor received a workload shape it was not registered for.

    This is a programming error: it is never retried and never skipped.
    """


class SecretExposureError(StackwireError):
    """A secret value was about to populate a plain env variable."""


class TransientProvisioningError(StackwireError):
    """Network/API failure surfaced by the provisioning engine.

    Retry policy belongs to the engine; the wiring layer only propagates.
    """


class ProvisioningError(StackwireError):
    """Provisioning failed for a reason outside the other categories."""


class InitJobError(ProvisioningError):
    """A one-shot credential initialisation job failed or timed out."""

    def __init__(self, message: str, job_name: str = "", **context):
        super().__init__(message, **context)
        self.job_name = job_name


class ProvisioningCancelledError(StackwireError):
    """An operator abort stopped provisioning before it completed."""
