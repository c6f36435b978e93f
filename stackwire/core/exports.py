"""
Stack export store — write-once outputs that descendant stacks import.

Exports are produced in two steps:

    1. staging:  provisioning functions (and, for per-consumer
                 credentials, compute processors) call
                 ``StagedExports.export(key, deferred, secret)``
    2. commit:   once the whole stack succeeded, ``ExportStore.commit``
                 resolves every staged value and hands them to the state
                 backend in a single write. A failure anywhere discards the
                 staged set, so no stack is ever half-exported.

Consumers read with ``ExportStore.import_value(owner_ref, key, secret)``.
Any committed stack reference can be read, not only the immediate parent.
While a stack is being deployed it also reads its own staged exports.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable

from stackwire.adapters.base import StateBackend, StoredExport
from stackwire.core.deferred import CancellationToken, Deferred, resolve_all
from stackwire.core.errors import (
    ExportConflictError,
    ExportEmptyError,
    ExportNotFoundError,
    ExportSecrecyError,
)
from stackwire.core.models.resource import ResourceExport
from stackwire.core.naming import collapse_stack_reference

logger = logging.getLogger(__name__)


class SecretValue(str):
    """A string that must not reach logs or plain env variables."""

    __slots__ = ()

    def __repr__(self) -> str:
        return "SecretValue('********')"


def mask(value: str) -> str:
    return "********" if isinstance(value, SecretValue) else value


class StagedExports:
    """Exports of one stack, collected during a deploy and not yet committed."""

    def __init__(self, stack_ref: str):
        self.stack_ref = stack_ref
        self._lock = threading.Lock()
        self._entries: dict[str, ResourceExport] = {}
        self.committed = False

    def export(self, key: str, value: Deferred[str] | str, secret: bool = False) -> ResourceExport:
        """Stage one export. Each key may be staged once per deploy."""
        deferred = Deferred.of(value, label=key, secret=secret)
        entry = ResourceExport(key=key, value=deferred, secret=secret or deferred.secret)
        with self._lock:
            if self.committed:
                raise ExportConflictError(
                    f"exports of {self.stack_ref!r} already committed",
                    key=key,
                    stack_ref=self.stack_ref,
                )
            if key in self._entries:
                raise ExportConflictError(
                    f"export {key!r} staged twice in {self.stack_ref!r}",
                    key=key,
                    stack_ref=self.stack_ref,
                )
            self._entries[key] = entry
        logger.debug("Staged export %s/%s (secret=%s)", self.stack_ref, key, entry.secret)
        return entry

    def extend(self, exports: Iterable[ResourceExport]) -> None:
        for entry in exports:
            self.export(entry.key, entry.value, entry.secret)

    def get(self, key: str) -> ResourceExport | None:
        with self._lock:
            return self._entries.get(key)

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._entries)

    def entries(self) -> list[ResourceExport]:
        with self._lock:
            return list(self._entries.values())

    def discard(self) -> None:
        with self._lock:
            self._entries.clear()

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def resolve(
        self,
        timeout: float | None = None,
        cancel: CancellationToken | None = None,
    ) -> dict[str, StoredExport]:
        """Materialise every staged value (the resolve phase)."""
        entries = self.entries()
        values = resolve_all([e.value for e in entries], timeout=timeout, cancel=cancel)
        resolved: dict[str, StoredExport] = {}
        for entry, value in zip(entries, values, strict=True):
            if not isinstance(value, str):
                value = str(value)
            resolved[entry.key] = StoredExport(value=str.__str__(value), secret=entry.secret)
        return resolved


class ExportStore:
    """Reads and writes stack exports through a state backend."""

    def __init__(self, backend: StateBackend):
        self._backend = backend
        self._cond = threading.Condition()
        self._staged: dict[str, StagedExports] = {}

    @property
    def backend(self) -> StateBackend:
        return self._backend

    # ── Write ───────────────────────────────────────────────────────

    def stage(self, stack_ref: str) -> StagedExports:
        """Open a fresh staging area for a stack about to be deployed."""
        staged = StagedExports(stack_ref)
        with self._cond:
            self._staged[stack_ref] = staged
        return staged

    def commit(
        self,
        staged: StagedExports,
        timeout: float | None = None,
        cancel: CancellationToken | None = None,
    ) -> dict[str, StoredExport]:
        """Resolve and persist staged exports in one backend write.

        Nothing is written when any value fails to resolve.
        """
        if staged.committed:
            raise ExportConflictError(
                f"exports of {staged.stack_ref!r} already committed",
                stack_ref=staged.stack_ref,
            )
        try:
            resolved = staged.resolve(timeout=timeout, cancel=cancel)
        except BaseException:
            self.discard(staged)
            raise
        with self._cond:
            self._backend.write_outputs(staged.stack_ref, resolved)
            staged.committed = True
            if self._staged.get(staged.stack_ref) is staged:
                del self._staged[staged.stack_ref]
            self._cond.notify_all()
        logger.info("Committed %d exports for %s", len(resolved), staged.stack_ref)
        return resolved

    def discard(self, staged: StagedExports) -> None:
        """Drop staged exports without writing anything."""
        with self._cond:
            if self._staged.get(staged.stack_ref) is staged:
                del self._staged[staged.stack_ref]
        if len(staged):
            logger.warning("Discarding %d staged exports of %s", len(staged), staged.stack_ref)
        staged.discard()

    # ── Read ────────────────────────────────────────────────────────

    def import_value(
        self,
        owner_ref: str,
        key: str,
        secret: bool = False,
        timeout: float | None = None,
    ) -> str:
        """Read one export of ``owner_ref``.

        Secret exports come back as ``SecretValue``; asking for a secret
        export through the plain path raises ``ExportSecrecyError``.

        Raises:
            ExportNotFoundError: The stack or key was never exported.
            ExportEmptyError: The export exists but is blank.
        """
        ref = collapse_stack_reference(owner_ref)
        stored = self._read_staged(ref, key, timeout)
        if stored is None:
            outputs = self._backend.read_outputs(ref)
            if outputs is None:
                raise ExportNotFoundError(
                    f"stack {ref!r} has no committed exports (reading {key!r})",
                    key=key,
                    stack_ref=ref,
                )
            stored = outputs.get(key)
        if stored is None:
            raise ExportNotFoundError(
                f"export {key!r} not found in {ref!r}", key=key, stack_ref=ref
            )
        if stored.secret and not secret:
            raise ExportSecrecyError(
                f"export {key!r} of {ref!r} is secret and cannot be read as plain",
                key=key,
                stack_ref=ref,
            )
        if not stored.value.strip():
            raise ExportEmptyError(
                f"export {key!r} of {ref!r} is empty", key=key, stack_ref=ref
            )
        return SecretValue(stored.value) if secret else stored.value

    def _read_staged(self, ref: str, key: str, timeout: float | None) -> StoredExport | None:
        with self._cond:
            staged = self._staged.get(ref)
        if staged is None:
            return None
        entry = staged.get(key)
        if entry is None:
            return None
        value = entry.value.result(timeout)
        return StoredExport(value=str(value), secret=entry.secret)

    def read_stack(self, stack_ref: str) -> dict[str, StoredExport]:
        ref = collapse_stack_reference(stack_ref)
        outputs = self._backend.read_outputs(ref)
        if outputs is None:
            raise ExportNotFoundError(f"stack {ref!r} has no committed exports", stack_ref=ref)
        return outputs

    def wait_for_stack(self, stack_ref: str, timeout: float | None = None) -> None:
        """Block until ``stack_ref`` has committed exports."""
        ref = collapse_stack_reference(stack_ref)
        with self._cond:
            ready = self._cond.wait_for(lambda: self._backend.has_stack(ref), timeout)
        if not ready:
            raise ExportNotFoundError(
                f"stack {ref!r} did not commit exports within {timeout}s", stack_ref=ref
            )
