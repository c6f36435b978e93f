"""
Deferred values — futures for outputs that resolve asynchronously.

Resource outputs (hosts, ports, generated passwords) are not known when a
provisioning function returns; the engine resolves them later, possibly on
a worker thread. A ``Deferred`` wraps such a value and is composed with
``map`` and ``combine`` instead of being read synchronously.

Guarantees:
    - A deferred resolves exactly once (value or exception).
    - Callbacks run on whichever thread resolves the value, or immediately
      on the registering thread if it is already resolved. They must not
      assume a specific thread.
    - ``combine`` waits for both operands and calls its combinator once.
    - Secrecy is sticky: anything derived from a secret deferred is secret.
    - There is no ordering guarantee between independent deferreds.

``resolve_all`` is the resolve phase: it blocks until every given value is
materialised (or one fails), so later phases only ever see plain values.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable
from typing import Any, Generic, TypeVar

from stackwire.core.errors import ProvisioningCancelledError

logger = logging.getLogger(__name__)

T = TypeVar("T")
U = TypeVar("U")
V = TypeVar("V")

_POLL_INTERVAL = 0.05


class CancellationToken:
    """Operator abort signal shared by everything in one provisioning run.

    ``child()`` gives a token that is also cancelled when its parent is,
    so one stack can abort its own siblings without stopping the run.
    """

    def __init__(self, parent: CancellationToken | None = None) -> None:
        self._event = threading.Event()
        self._reason = ""
        self._parent = parent

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._parent is not None and self._parent.cancelled

    @property
    def reason(self) -> str:
        if self._event.is_set() or self._parent is None:
            return self._reason
        return self._parent.reason

    def cancel(self, reason: str = "cancelled by operator") -> None:
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    def child(self) -> CancellationToken:
        return CancellationToken(parent=self)

    def raise_if_cancelled(self) -> None:
        """Raise ``ProvisioningCancelledError`` if an abort was requested."""
        if self.cancelled:
            raise ProvisioningCancelledError(self.reason)


class Deferred(Generic[T]):
    """A value that will be available later."""

    def __init__(self, label: str = "", secret: bool = False):
        self.label = label
        self.secret = secret
        self._lock = threading.Lock()
        self._done = threading.Event()
        self._value: T | None = None
        self._error: BaseException | None = None
        self._callbacks: list[Callable[[Deferred[T]], None]] = []

    # ── Construction ────────────────────────────────────────────────

    @classmethod
    def resolved(cls, value: T, label: str = "", secret: bool = False) -> Deferred[T]:
        d: Deferred[T] = cls(label=label, secret=secret)
        d.set_result(value)
        return d

    @classmethod
    def failed(cls, error: BaseException, label: str = "") -> Deferred[Any]:
        d: Deferred[Any] = cls(label=label)
        d.set_exception(error)
        return d

    @staticmethod
    def of(value: T | Deferred[T], label: str = "", secret: bool = False) -> Deferred[T]:
        """Wrap a plain value; pass a deferred through unchanged."""
        if isinstance(value, Deferred):
            return value
        return Deferred.resolved(value, label=label, secret=secret)

    # ── Resolution ──────────────────────────────────────────────────

    def set_result(self, value: T) -> None:
        self._complete(value, None)

    def set_exception(self, error: BaseException) -> None:
        self._complete(None, error)

    def _complete(self, value: T | None, error: BaseException | None) -> None:
        with self._lock:
            if self._done.is_set():
                raise RuntimeError(f"deferred {self.label or id(self)} already resolved")
            self._value = value
            self._error = error
            self._done.set()
            callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback(self)

    def done(self) -> bool:
        return self._done.is_set()

    def exception(self) -> BaseException | None:
        return self._error if self._done.is_set() else None

    def result(self, timeout: float | None = None) -> T:
        """Block until resolved and return the value (or raise its error)."""
        if not self._done.wait(timeout):
            raise TimeoutError(f"deferred {self.label or id(self)} not resolved after {timeout}s")
        if self._error is not None:
            raise self._error
        return self._value  # type: ignore[return-value]

    def add_done_callback(self, callback: Callable[[Deferred[T]], None]) -> None:
        with self._lock:
            if not self._done.is_set():
                self._callbacks.append(callback)
                return
        callback(self)

    # ── Composition ─────────────────────────────────────────────────

    def map(self, fn: Callable[[T], U], label: str = "") -> Deferred[U]:
        out: Deferred[U] = Deferred(label=label or self.label, secret=self.secret)

        def _on_done(src: Deferred[T]) -> None:
            if src._error is not None:
                out.set_exception(src._error)
                return
            try:
                mapped = fn(src._value)  # type: ignore[arg-type]
            except Exception as e:
                out.set_exception(e)
                return
            out.set_result(mapped)

        self.add_done_callback(_on_done)
        return out

    def combine(self, other: Deferred[U], fn: Callable[[T, U], V], label: str = "") -> Deferred[V]:
        out: Deferred[V] = Deferred(
            label=label or f"{self.label}+{other.label}",
            secret=self.secret or other.secret,
        )
        lock = threading.Lock()
        pending = [2]

        def _on_done(_: Deferred[Any]) -> None:
            with lock:
                pending[0] -= 1
                if pending[0] > 0:
                    return
            error = self._error or other._error
            if error is not None:
                out.set_exception(error)
                return
            try:
                combined = fn(self._value, other._value)  # type: ignore[arg-type]
            except Exception as e:
                out.set_exception(e)
                return
            out.set_result(combined)

        self.add_done_callback(_on_done)
        other.add_done_callback(_on_done)
        return out

    @staticmethod
    def all(values: Iterable[Deferred[Any]], label: str = "") -> Deferred[list[Any]]:
        """Resolve to the list of all values, in the order given."""
        items = list(values)
        out: Deferred[list[Any]] = Deferred(
            label=label or "all", secret=any(d.secret for d in items)
        )
        if not items:
            out.set_result([])
            return out
        lock = threading.Lock()
        pending = [len(items)]

        def _on_done(_: Deferred[Any]) -> None:
            with lock:
                pending[0] -= 1
                if pending[0] > 0:
                    return
            for d in items:
                if d._error is not None:
                    out.set_exception(d._error)
                    return
            out.set_result([d._value for d in items])

        for d in items:
            d.add_done_callback(_on_done)
        return out

    def __repr__(self) -> str:
        if not self._done.is_set():
            state = "pending"
        elif self._error is not None:
            state = f"failed={self._error!r}"
        elif self.secret:
            state = "value=[secret]"
        else:
            state = f"value={self._value!r}"
        return f"<Deferred {self.label!r} {state}>"


def resolve_all(
    values: Iterable[Deferred[Any]],
    timeout: float | None = None,
    cancel: CancellationToken | None = None,
) -> list[Any]:
    """Block until every deferred is resolved; return values in order.

    Raises the first failure in the given order, ``TimeoutError`` when the
    deadline passes, or ``ProvisioningCancelledError`` on abort.
    """
    items = list(values)
    deadline = None if timeout is None else time.monotonic() + timeout
    for d in items:
        while not d.done():
            if cancel is not None:
                cancel.raise_if_cancelled()
            wait = _POLL_INTERVAL
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise TimeoutError(f"deferred {d.label or id(d)} not resolved after {timeout}s")
                wait = min(wait, remaining)
            d._done.wait(wait)
    results = []
    for d in items:
        results.append(d.result(0))
    logger.debug("Resolved %d deferred values", len(items))
    return results
