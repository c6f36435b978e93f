"""
In-memory engine — universal test double for all engine operations.

Simulates a provisioning engine without touching any cloud API. Used by
the test suite and by ``stackwire deploy`` for dry runs.

Features:
    - Live-object catalogue (``seed_live``) backing adoption lookups
    - Synchronous or asynchronous output resolution, with per-resource
      delays so tests can force a specific resolution order
    - Failure injection at call time, at output-resolution time and for jobs
    - A call log of every operation received
"""

from __future__ import annotations

import base64
import hashlib
import json
import logging
import secrets
import string
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from stackwire.adapters.base import (
    JobSpec,
    ProvisioningEngine,
    ResourceHandle,
    StateBackend,
    StoredExport,
)
from stackwire.core.deferred import Deferred
from stackwire.core.errors import ProvisioningError, ResourceLookupError
from stackwire.core.models.workload import Workload, WorkloadArgs

logger = logging.getLogger(__name__)

_ALNUM = string.ascii_letters + string.digits


class MemoryStateBackend(StateBackend):
    """Committed exports kept in a dict. Thread-safe."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._stacks: dict[str, dict[str, StoredExport]] = {}

    def read_outputs(self, stack_ref: str) -> dict[str, StoredExport] | None:
        with self._lock:
            outputs = self._stacks.get(stack_ref)
            return dict(outputs) if outputs is not None else None

    def write_outputs(self, stack_ref: str, outputs: dict[str, StoredExport]) -> None:
        with self._lock:
            self._stacks[stack_ref] = dict(outputs)

    def list_stacks(self) -> list[str]:
        with self._lock:
            return sorted(self._stacks)


@dataclass
class EngineCall:
    """One operation received by the in-memory engine."""

    operation: str
    kind: str
    name: str
    properties: dict[str, Any] = field(default_factory=dict)


# ── Output synthesis ────────────────────────────────────────────────


def _digest(name: str) -> bytes:
    return hashlib.sha256(name.encode()).digest()


def _fake_ip(name: str) -> str:
    d = _digest(name)
    return f"10.{d[0]}.{d[1]}.{max(d[2], 2)}"


def _random_string(length: int, special: bool = False) -> str:
    alphabet = _ALNUM + ("!#$%&*()-_=+[]{}<>:?" if special else "")
    return "".join(secrets.choice(alphabet) for _ in range(length))


def _redis_outputs(name: str, props: dict[str, Any]) -> dict[str, str]:
    return {"host": props.get("host") or _fake_ip(name), "port": str(props.get("port") or 6379)}


def _cloudsql_outputs(name: str, props: dict[str, Any]) -> dict[str, str]:
    instance = props.get("instance_name") or name
    project = props.get("project", "")
    region = props.get("region", "")
    return {
        "instance_name": instance,
        "connection_name": props.get("connection_name") or f"{project}:{region}:{instance}",
        "public_ip": _fake_ip(instance),
    }


def _password_outputs(name: str, props: dict[str, Any]) -> dict[str, str]:
    return {"result": _random_string(int(props.get("length", 20)), bool(props.get("special", False)))}


def _bucket_outputs(name: str, props: dict[str, Any]) -> dict[str, str]:
    bucket = props.get("bucket_name") or name
    return {"bucket_name": bucket, "url": f"gs://{bucket}"}


def _hmac_outputs(name: str, props: dict[str, Any]) -> dict[str, str]:
    return {
        "access_id": "GOOG1E" + _digest(name).hex()[:24].upper(),
        "secret": _random_string(40),
    }


def _gke_outputs(name: str, props: dict[str, Any]) -> dict[str, str]:
    return {
        "endpoint": props.get("endpoint") or _fake_ip(name),
        "cluster_ca_certificate": base64.b64encode(_digest(name)).decode(),
    }


def _service_account_outputs(name: str, props: dict[str, Any]) -> dict[str, str]:
    account_id = props.get("account_id") or name
    project = props.get("project", "")
    return {"email": f"{account_id}@{project}.iam.gserviceaccount.com"}


def _service_account_key_outputs(name: str, props: dict[str, Any]) -> dict[str, str]:
    key = {"type": "service_account", "client_email": props.get("service_account", ""),
           "private_key_id": _digest(name).hex()[:16]}
    return {"private_key": base64.b64encode(json.dumps(key).encode()).decode()}


def _topic_outputs(name: str, props: dict[str, Any]) -> dict[str, str]:
    topic = props.get("topic_name") or name
    return {"id": f"projects/{props.get('project', '')}/topics/{topic}"}


_SYNTHESIZERS: dict[str, Callable[[str, dict[str, Any]], dict[str, str]]] = {
    "redis-instance": _redis_outputs,
    "cloudsql-instance": _cloudsql_outputs,
    "random-password": _password_outputs,
    "gcs-bucket": _bucket_outputs,
    "hmac-key": _hmac_outputs,
    "gke-cluster": _gke_outputs,
    "service-account": _service_account_outputs,
    "service-account-key": _service_account_key_outputs,
    "pubsub-topic": _topic_outputs,
}


def _synthesize(kind: str, name: str, props: dict[str, Any]) -> dict[str, str]:
    outputs = {"name": name}
    for key, value in props.items():
        if isinstance(value, (str, int, float, bool)):
            outputs[key] = str(value)
    synth = _SYNTHESIZERS.get(kind)
    if synth is not None:
        outputs.update(synth(name, props))
    return outputs


# ── Engine ──────────────────────────────────────────────────────────


class InMemoryEngine(ProvisioningEngine):
    """Universal in-memory engine for testing and dry runs.

    By default, every call succeeds and outputs resolve immediately.
    With ``async_outputs=True`` outputs resolve on timer threads after
    ``default_delay`` seconds (or a per-resource delay).
    """

    def __init__(
        self,
        state: StateBackend | None = None,
        async_outputs: bool = False,
        default_delay: float = 0.01,
    ):
        self._state = state or MemoryStateBackend()
        self._async = async_outputs
        self._default_delay = default_delay
        self._lock = threading.Lock()
        self._live: dict[tuple[str, str], dict[str, Any]] = {}
        self._handles: dict[tuple[str, str], ResourceHandle] = {}
        self._delays: dict[str, float] = {}
        self._failures: dict[str, Exception] = {}
        self._output_failures: dict[str, Exception] = {}
        self._job_exit_codes: dict[str, int] = {}
        self._hanging_jobs: set[str] = set()
        self._call_log: list[EngineCall] = []
        self.jobs: dict[str, JobSpec] = {}
        self.workloads: dict[str, WorkloadArgs] = {}

    @property
    def name(self) -> str:
        return "memory"

    @property
    def state(self) -> StateBackend:
        return self._state

    @property
    def call_log(self) -> list[EngineCall]:
        """All operations this engine has received."""
        with self._lock:
            return list(self._call_log)

    @property
    def call_count(self) -> int:
        return len(self._call_log)

    def calls(self, operation: str | None = None, kind: str | None = None) -> list[EngineCall]:
        return [
            c for c in self.call_log
            if (operation is None or c.operation == operation)
            and (kind is None or c.kind == kind)
        ]

    def handle(self, kind: str, name: str) -> ResourceHandle | None:
        with self._lock:
            return self._handles.get((kind, name))

    # ── Configuration ───────────────────────────────────────────────

    def seed_live(self, kind: str, resource_id: str, properties: dict[str, Any]) -> None:
        """Register an existing cloud object that can be looked up and adopted."""
        with self._lock:
            self._live[(kind, resource_id)] = dict(properties)

    def set_delay(self, name: str, seconds: float) -> None:
        """Delay output resolution of the resource ``name`` (async mode)."""
        self._delays[name] = seconds

    def set_failure(self, name: str, error: Exception) -> None:
        """Make create/import of ``name`` raise ``error``."""
        self._failures[name] = error

    def set_output_failure(self, name: str, error: Exception) -> None:
        """Make the outputs of ``name`` resolve to ``error``."""
        self._output_failures[name] = error

    def set_job_failure(self, name: str, exit_code: int = 1) -> None:
        self._job_exit_codes[name] = exit_code

    def set_job_hang(self, name: str) -> None:
        """Make job ``name`` never complete."""
        self._hanging_jobs.add(name)

    def reset(self) -> None:
        """Clear call log, handles, workloads and injected failures."""
        with self._lock:
            self._call_log.clear()
            self._handles.clear()
        self._delays.clear()
        self._failures.clear()
        self._output_failures.clear()
        self._job_exit_codes.clear()
        self._hanging_jobs.clear()
        self.jobs.clear()
        self.workloads.clear()

    # ── Operations ──────────────────────────────────────────────────

    def create_resource(self, kind: str, name: str, properties: dict[str, Any]) -> ResourceHandle:
        self._record("create", kind, name, properties)
        return self._declare(kind, name, dict(properties), imported=False)

    def import_resource(
        self,
        kind: str,
        name: str,
        resource_id: str,
        properties: dict[str, Any],
    ) -> ResourceHandle:
        self._record("import", kind, name, {**properties, "resource_id": resource_id})
        with self._lock:
            live = self._live.get((kind, resource_id))
        if live is None:
            raise ResourceLookupError(
                f"cannot import {kind} {resource_id!r}: no such object",
                resource_id=resource_id,
            )
        return self._declare(kind, name, {**live, **properties}, imported=True)

    def lookup_resource(self, kind: str, resource_id: str) -> dict[str, Any]:
        self._record("lookup", kind, resource_id, {})
        with self._lock:
            live = self._live.get((kind, resource_id))
        if live is None:
            raise ResourceLookupError(
                f"{kind} {resource_id!r} not found",
                resource_id=resource_id,
            )
        return dict(live)

    def run_job(self, job: JobSpec) -> Deferred[int]:
        self._record("job", "job", job.name, {"namespace": job.namespace, "cluster": job.cluster})
        self.jobs[job.name] = job
        result: Deferred[int] = Deferred(label=f"job:{job.name}")
        if job.name in self._hanging_jobs:
            return result
        exit_code = self._job_exit_codes.get(job.name, 0)
        self._schedule(job.name, lambda: result.set_result(exit_code))
        return result

    def deploy_workload(self, args: WorkloadArgs) -> Workload:
        self._record("deploy", "workload", args.name, {"namespace": args.namespace})
        self.workloads[args.name] = args.model_copy(deep=True)
        return Workload(
            id=f"{args.namespace}/{args.name}",
            name=args.name,
            namespace=args.namespace,
            containers=[c.model_copy(deep=True) for c in args.containers],
            volumes=[v.model_copy(deep=True) for v in args.volumes],
        )

    # ── Internals ───────────────────────────────────────────────────

    def _record(self, operation: str, kind: str, name: str, properties: dict[str, Any]) -> None:
        with self._lock:
            self._call_log.append(EngineCall(operation, kind, name, dict(properties)))
        logger.debug("memory engine: %s %s %s", operation, kind, name)

    def _declare(self, kind: str, name: str, props: dict[str, Any], imported: bool) -> ResourceHandle:
        if name in self._failures:
            raise self._failures[name]
        with self._lock:
            if (kind, name) in self._handles:
                raise ProvisioningError(f"duplicate resource {kind} {name!r}")
            handle = ResourceHandle(kind=kind, name=name, imported=imported, properties=props)
            self._handles[(kind, name)] = handle

        plain = {k: v for k, v in props.items() if not isinstance(v, Deferred)}
        keys = list(_synthesize(kind, name, plain))
        for key in keys:
            handle.outputs[key] = Deferred(label=f"{name}.{key}")

        pending = [v for v in props.values() if isinstance(v, Deferred)]

        def _resolve(_: Deferred[Any] | None = None) -> None:
            error = self._output_failures.get(name)
            if error is None:
                error = next((d.exception() for d in pending if d.exception() is not None), None)
            if error is not None:
                for d in handle.outputs.values():
                    d.set_exception(error)
                return
            resolved = {k: (v.result(0) if isinstance(v, Deferred) else v) for k, v in props.items()}
            values = _synthesize(kind, name, resolved)
            for key in keys:
                handle.outputs[key].set_result(values[key])

        def _when_inputs_ready(_: Deferred[Any]) -> None:
            self._schedule(name, _resolve)

        Deferred.all(pending).add_done_callback(_when_inputs_ready)
        return handle

    def _schedule(self, name: str, fn: Callable[[], None]) -> None:
        if not self._async:
            fn()
            return
        timer = threading.Timer(self._delays.get(name, self._default_delay), fn)
        timer.daemon = True
        timer.start()
