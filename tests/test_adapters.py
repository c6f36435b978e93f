"""
Tests for engine adapters — in-memory engine, state backend, handles.
"""

import pytest

from stackwire.adapters.base import JobSpec, ResourceHandle, StoredExport
from stackwire.adapters.memory import InMemoryEngine, MemoryStateBackend
from stackwire.core.deferred import Deferred
from stackwire.core.errors import ProvisioningError, ResourceLookupError
from stackwire.core.models.workload import Container, WorkloadArgs

# ── Resource Handles ─────────────────────────────────────────────────


class TestResourceHandle:
    def test_output(self):
        host = Deferred.resolved("10.0.0.1")
        handle = ResourceHandle(kind="redis-instance", name="cache--prod", outputs={"host": host})
        assert handle.output("host") is host

    def test_missing_output(self):
        handle = ResourceHandle(kind="redis-instance", name="cache--prod")
        with pytest.raises(KeyError, match="has no output 'port'"):
            handle.output("port")


# ── State Backend ────────────────────────────────────────────────────


class TestMemoryStateBackend:
    def test_unknown_stack(self):
        backend = MemoryStateBackend()
        assert backend.read_outputs("infra--prod") is None
        assert not backend.has_stack("infra--prod")

    def test_write_replaces(self):
        backend = MemoryStateBackend()
        backend.write_outputs("infra--prod", {"a": StoredExport(value="1")})
        backend.write_outputs("infra--prod", {"b": StoredExport(value="2", secret=True)})
        assert backend.read_outputs("infra--prod") == {"b": StoredExport(value="2", secret=True)}

    def test_read_returns_copy(self):
        backend = MemoryStateBackend()
        backend.write_outputs("infra--prod", {"a": StoredExport(value="1")})
        backend.read_outputs("infra--prod")["x"] = StoredExport(value="leak")
        assert "x" not in backend.read_outputs("infra--prod")

    def test_list_stacks(self):
        backend = MemoryStateBackend()
        backend.write_outputs("web--prod", {})
        backend.write_outputs("api--prod", {})
        assert backend.list_stacks() == ["api--prod", "web--prod"]


# ── In-Memory Engine ─────────────────────────────────────────────────


class TestInMemoryEngine:
    def test_repr(self, engine: InMemoryEngine):
        assert repr(engine) == "<InMemoryEngine name='memory'>"

    def test_create_synthesizes_outputs(self, engine: InMemoryEngine):
        handle = engine.create_resource("redis-instance", "cache--prod", {"tier": "BASIC"})
        assert not handle.imported
        assert handle.output("name").result(0) == "cache--prod"
        assert handle.output("tier").result(0) == "BASIC"
        assert handle.output("host").result(0).startswith("10.")
        assert handle.output("port").result(0) == "6379"

    def test_outputs_are_deterministic(self):
        a = InMemoryEngine().create_resource("redis-instance", "cache--prod", {})
        b = InMemoryEngine().create_resource("redis-instance", "cache--prod", {})
        assert a.output("host").result(0) == b.output("host").result(0)

    def test_password_length(self, engine: InMemoryEngine):
        handle = engine.create_resource("random-password", "db--prod-root", {"length": 32})
        assert len(handle.output("result").result(0)) == 32

    def test_deferred_property_waits(self, engine: InMemoryEngine):
        account = Deferred(label="email")
        handle = engine.create_resource("iam-member", "proxy-iam", {"member": account, "role": "r"})
        assert not handle.output("role").done()
        assert "member" not in handle.outputs

        account.set_result("sa@acme.iam.gserviceaccount.com")
        assert handle.output("role").result(0) == "r"

    def test_failed_input_fails_outputs(self, engine: InMemoryEngine):
        handle = engine.create_resource("iam-member", "proxy-iam", {
            "member": Deferred.failed(RuntimeError("no account")),
        })
        with pytest.raises(RuntimeError, match="no account"):
            handle.output("name").result(0)

    def test_async_outputs(self, async_engine: InMemoryEngine):
        async_engine.set_delay("cache--prod", 0.05)
        handle = async_engine.create_resource("redis-instance", "cache--prod", {})
        assert not handle.output("host").done()
        assert handle.output("host").result(2).startswith("10.")

    def test_duplicate_name(self, engine: InMemoryEngine):
        engine.create_resource("redis-instance", "cache--prod", {})
        with pytest.raises(ProvisioningError, match="duplicate resource"):
            engine.create_resource("redis-instance", "cache--prod", {})

    def test_same_name_different_kind(self, engine: InMemoryEngine):
        engine.create_resource("service-account", "proxy", {})
        engine.create_resource("k8s-secret", "proxy", {})
        assert engine.handle("k8s-secret", "proxy") is not None

    def test_call_failure(self, engine: InMemoryEngine):
        engine.set_failure("cache--prod", ProvisioningError("quota exceeded"))
        with pytest.raises(ProvisioningError, match="quota exceeded"):
            engine.create_resource("redis-instance", "cache--prod", {})
        assert engine.handle("redis-instance", "cache--prod") is None

    def test_output_failure(self, engine: InMemoryEngine):
        engine.set_output_failure("cache--prod", ProvisioningError("instance broken"))
        handle = engine.create_resource("redis-instance", "cache--prod", {})
        with pytest.raises(ProvisioningError, match="instance broken"):
            handle.output("host").result(0)


class TestLiveObjects:
    def test_lookup(self, engine: InMemoryEngine):
        engine.seed_live("redis-instance", "legacy", {"tier": "STANDARD_HA"})
        assert engine.lookup_resource("redis-instance", "legacy") == {"tier": "STANDARD_HA"}

    def test_lookup_missing(self, engine: InMemoryEngine):
        with pytest.raises(ResourceLookupError, match="not found") as exc:
            engine.lookup_resource("redis-instance", "ghost")
        assert exc.value.resource_id == "ghost"

    def test_import_merges_live_properties(self, engine: InMemoryEngine):
        engine.seed_live("redis-instance", "legacy", {"host": "10.7.7.7", "tier": "BASIC"})
        handle = engine.import_resource("redis-instance", "cache--prod", "legacy", {"tier": "STANDARD_HA"})
        assert handle.imported
        assert handle.output("host").result(0) == "10.7.7.7"
        assert handle.output("tier").result(0) == "STANDARD_HA"

    def test_import_missing(self, engine: InMemoryEngine):
        with pytest.raises(ResourceLookupError, match="no such object"):
            engine.import_resource("redis-instance", "cache--prod", "ghost", {})


class TestJobsAndWorkloads:
    def _job(self, name: str = "api-db-user-init") -> JobSpec:
        return JobSpec(name=name, namespace="default", containers=[Container(name="job", image="postgres")])

    def test_job_succeeds(self, engine: InMemoryEngine):
        assert engine.run_job(self._job()).result(0) == 0
        assert "api-db-user-init" in engine.jobs

    def test_job_failure(self, engine: InMemoryEngine):
        engine.set_job_failure("api-db-user-init", exit_code=3)
        assert engine.run_job(self._job()).result(0) == 3

    def test_job_hang(self, engine: InMemoryEngine):
        engine.set_job_hang("api-db-user-init")
        with pytest.raises(TimeoutError):
            engine.run_job(self._job()).result(0.01)

    def test_deploy_workload(self, engine: InMemoryEngine):
        args = WorkloadArgs(name="api", namespace="apps", containers=[Container(name="api", image="api:1")])
        workload = engine.deploy_workload(args)
        assert workload.id == "apps/api"
        assert workload.containers[0].image == "api:1"

        args.containers[0].image = "mutated"
        assert engine.workloads["api"].main_container.image == "api:1"


class TestCallLog:
    def test_calls_filtered(self, engine: InMemoryEngine):
        engine.seed_live("redis-instance", "legacy", {})
        engine.create_resource("redis-instance", "cache--prod", {})
        engine.lookup_resource("redis-instance", "legacy")
        engine.create_resource("gcs-bucket", "assets--prod", {})

        assert engine.call_count == 3
        assert [c.name for c in engine.calls("create")] == ["cache--prod", "assets--prod"]
        assert [c.operation for c in engine.calls(kind="redis-instance")] == ["create", "lookup"]

    def test_import_records_resource_id(self, engine: InMemoryEngine):
        engine.seed_live("redis-instance", "legacy", {})
        engine.import_resource("redis-instance", "cache--prod", "legacy", {})
        [call] = engine.calls("import")
        assert call.properties["resource_id"] == "legacy"

    def test_reset(self, engine: InMemoryEngine):
        engine.set_failure("cache--prod", ProvisioningError("boom"))
        engine.create_resource("gcs-bucket", "assets--prod", {})
        engine.reset()

        assert engine.call_log == []
        assert engine.handle("gcs-bucket", "assets--prod") is None
        handle = engine.create_resource("redis-instance", "cache--prod", {})
        assert handle.name == "cache--prod"
