"""
Tests for the planner and the deployment executor.
"""

import re

import pytest

from stackwire.core.deferred import CancellationToken
from stackwire.core.engine.executor import (
    deploy,
    deploy_config,
    generate_operation_id,
    provision_stack,
    validate_stack,
    write_audit_entries,
)
from stackwire.core.engine.planner import StackCatalog
from stackwire.core.errors import ConfigError, ProvisioningError, TransientProvisioningError
from stackwire.core.exports import ExportStore
from stackwire.core.models.deployment import DeploymentConfig
from stackwire.core.persistence.audit import AuditWriter
from tests.helpers import make_stack

GKE = {"name": "gke", "type": "gcp-gke-autopilot", "location": "europe-west1"}
CACHE = {"name": "cache", "type": "gcp-redis"}
DB = {"name": "db", "type": "gcp-cloudsql-postgres",
      "users_provision_runtime": {"type": "gke", "resource_name": "gke"}}


def _infra(**fields):
    return make_stack("infra", resources=[GKE, CACHE, DB], **fields)


def _api(**fields):
    fields.setdefault("workload", {"image": "api:1", "port": 8080})
    return make_stack("api", parent="infra", uses=["cache", "db"], **fields)


def _worker():
    return make_stack(
        "worker", parent="infra",
        depends_on=[{"name": "shared", "owner": "api", "resource": "db"}],
        workload={"image": "worker:1"},
    )


def _refs(stacks) -> list[str]:
    return [s.reference for s in stacks]


# ── Planner ─────────────────────────────────────────────────────────


class TestPlanOrder:
    def test_parents_first(self):
        platform = make_stack("platform", parent="infra")
        api = make_stack("api", parent="platform")
        catalog = StackCatalog([api, platform, _infra()])
        assert _refs(catalog.plan_order()) == ["infra--prod", "platform--prod", "api--prod"]

    def test_ties_keep_declared_order(self):
        catalog = StackCatalog([make_stack("b"), make_stack("a"), make_stack("c")])
        assert _refs(catalog.plan_order()) == ["b--prod", "a--prod", "c--prod"]

    def test_depends_on_owner_first(self):
        catalog = StackCatalog([_worker(), _api(), _infra()])
        order = _refs(catalog.plan_order())
        assert order.index("api--prod") < order.index("worker--prod")
        assert order[0] == "infra--prod"

    def test_cycle(self):
        a = make_stack("a", depends_on=[{"name": "r", "owner": "b", "resource": "db"}])
        b = make_stack("b", parent="a")
        with pytest.raises(ConfigError, match="dependency cycle"):
            StackCatalog([a, b]).plan_order()

    def test_unknown_parent(self):
        with pytest.raises(ConfigError, match="unknown stack") as exc:
            StackCatalog([make_stack("api", parent="ghost")]).plan_order()
        assert exc.value.stack == "api"

    def test_duplicate_stack(self):
        with pytest.raises(ConfigError, match="declared twice"):
            StackCatalog([make_stack("api"), make_stack("api")])

    def test_same_name_other_environment(self):
        catalog = StackCatalog([make_stack("api"), make_stack("api", environment="staging")])
        assert len(catalog.stacks) == 2


class TestAncestry:
    def test_parent_cycle(self):
        a = make_stack("a", parent="b")
        b = make_stack("b", parent="a")
        with pytest.raises(ConfigError, match="parent cycle"):
            StackCatalog([a, b]).ancestors(a)

    def test_resource_from_grandparent(self):
        platform = make_stack("platform", parent="infra")
        api = make_stack("api", parent="platform", uses=["cache"], workload={"image": "api:1"})
        catalog = StackCatalog([_infra(), platform, api])
        [compute_input] = catalog.compute_inputs(api)
        assert compute_input.parent.full_reference == "infra--prod"
        assert compute_input.parent.stack_name == "infra"
        assert compute_input.resource_name == "cache--prod"
        assert compute_input.parent.relation == "uses"

    def test_undeclared_resource(self):
        api = make_stack("api", parent="infra", uses=["search"], workload={"image": "api:1"})
        with pytest.raises(ConfigError) as exc:
            StackCatalog([_infra(), api]).compute_inputs(api)
        assert exc.value.resource == "search"

    def test_custom_stack_lands_on_parent_env(self):
        preview = make_stack(
            "api", environment="preview", parent="infra", parent_env="prod",
            uses=["cache"], workload={"image": "api:1"},
        )
        catalog = StackCatalog([_infra(), preview])
        [compute_input] = catalog.compute_inputs(preview)
        assert compute_input.parent.full_reference == "infra--prod"
        assert compute_input.resource_name == "cache--prod"
        assert compute_input.parent.stack_env == "preview"

    def test_upstream_collapses_shared_parent(self):
        catalog = StackCatalog([_infra(), _api()])
        assert _refs(catalog.upstream(_api())) == ["infra--prod"]

    def test_depends_on_binds_declaring_stack(self):
        catalog = StackCatalog([_infra(), _api(), _worker()])
        [compute_input] = catalog.compute_inputs(_worker())
        assert compute_input.parent.full_reference == "infra--prod"
        assert compute_input.parent.depends_on_resource.name == "shared"
        assert compute_input.parent.relation == "depends_on"

    def test_unknown_owner(self):
        worker = make_stack(
            "worker", depends_on=[{"name": "shared", "owner": "ghost", "resource": "db"}],
            workload={"image": "w:1"},
        )
        with pytest.raises(ConfigError) as exc:
            StackCatalog([worker]).compute_inputs(worker)
        assert exc.value.consumer == "shared"


class TestDescribe:
    def test_summary(self):
        catalog = StackCatalog([_infra(), _api()])
        plan = catalog.describe()
        assert [p["reference"] for p in plan] == ["infra--prod", "api--prod"]
        infra = plan[0]
        assert {r["name"]: r["derived_name"] for r in infra["resources"]} == {
            "gke": "gke--prod", "cache": "cache--prod", "db": "db--prod",
        }
        api = plan[1]
        assert api["after"] == ["infra--prod"]
        assert api["consumes"][0] == {"resource": "cache", "relation": "uses", "from": "infra--prod"}
        assert api["workload"] == "api:1"


class TestValidateStack:
    def test_inputs_without_workload(self, registry):
        api = make_stack("api", parent="infra", uses=["cache"])
        with pytest.raises(ConfigError, match="no workload"):
            validate_stack(api, StackCatalog([_infra(), api]), registry)

    def test_cluster_not_consumable(self, registry):
        api = make_stack("api", parent="infra", uses=["gke"], workload={"image": "api:1"})
        with pytest.raises(ConfigError, match="cannot be consumed") as exc:
            validate_stack(api, StackCatalog([_infra(), api]), registry)
        assert exc.value.resource == "gke"

    def test_invalid_resource_config(self, registry):
        bad = make_stack("infra", resources=[{"name": "cache", "type": "gcp-redis", "adopt": True}])
        with pytest.raises(ConfigError) as exc:
            validate_stack(bad, StackCatalog([bad]), registry)
        assert (exc.value.stack, exc.value.resource) == ("infra", "cache")


# ── Executor ────────────────────────────────────────────────────────


class TestDeploy:
    def test_full_deployment(self, engine, store, registry, params):
        report = deploy([_infra(), _api(), _worker()], engine, registry, params, exports=store)
        assert report.status == "ok"
        assert report.all_ok
        assert report.succeeded == 3
        assert report.engine == "memory"

        infra = report.get("infra")
        assert infra.created == ["gke", "cache", "db"]
        assert "cache--prod-host" in infra.exports
        assert report.get("api--prod").workload == "api/api"
        assert "api-db--prod-password" in report.get("api").exports

    def test_workload_shape(self, engine, store, registry, params):
        deploy([_infra(), _api()], engine, registry, params, exports=store)
        args = engine.workloads["api"]
        assert [c.name for c in args.containers] == ["main", "cloudsql-proxy"]
        main = args.main_container
        assert main.ports == [8080]
        assert main.env["REDIS_HOST"] == store.import_value("infra--prod", "cache--prod-host")
        assert main.env["POSTGRES_USERNAME"] == "api"
        assert "POSTGRES_PASSWORD" in main.secret_env
        assert "api-db-user-init" in engine.jobs

    def test_explicit_env_beats_processor_env(self, engine, store, registry, params):
        api = _api(workload={
            "image": "api:1",
            "env": {
                "REDIS_HOST": "redis.internal",
                "DATABASE_URL": "postgres://${resource:db.user}:${resource:db.password}@${resource:db.host}",
                "CACHE_URL": "redis://${resource:cache.host}:${resource:cache.port}",
            },
        })
        deploy([_infra(), api], engine, registry, params, exports=store)
        main = engine.workloads["api"].main_container
        assert main.env["REDIS_HOST"] == "redis.internal"
        assert main.env["CACHE_URL"].startswith("redis://")
        assert "DATABASE_URL" not in main.env
        assert main.secret_env["DATABASE_URL"].startswith("postgres://api:")

    def test_infra_failure_skips_dependents(self, engine, store, registry, params):
        engine.set_failure("db--prod", RuntimeError("quota exceeded"))
        unrelated = make_stack("tools", resources=[{"name": "events", "type": "gcp-pubsub", "topics": ["a"]}])
        report = deploy([_infra(), _api(), _worker(), unrelated], engine, registry, params, exports=store)

        assert report.get("infra").status == "failed"
        assert "quota exceeded" in report.get("infra").error
        assert report.get("api").status == "skipped"
        assert report.get("worker").status == "skipped"
        assert report.get("tools").ok
        assert report.status == "partial"
        assert engine.state.read_outputs("infra--prod") is None

    def test_transient_engine_error_keeps_its_type(self, engine, store, registry, params):
        engine.set_failure("cache--prod", TransientProvisioningError("redis API unavailable"))
        infra = _infra()
        with pytest.raises(TransientProvisioningError) as exc:
            provision_stack(infra, StackCatalog([infra]), engine, store, registry, params)

        assert not isinstance(exc.value, ProvisioningError)
        assert exc.value.context == {"stack": "infra", "environment": "prod", "resource": "cache"}
        assert engine.state.read_outputs("infra--prod") is None

    def test_transient_engine_error_fails_stack(self, engine, store, registry, params):
        engine.set_failure("cache--prod", TransientProvisioningError("redis API unavailable"))
        report = deploy([_infra(), _api()], engine, registry, params, exports=store)

        assert report.get("infra").status == "failed"
        assert "redis API unavailable" in report.get("infra").error
        assert report.get("api").status == "skipped"
        assert engine.state.list_stacks() == []

    def test_workload_failure_discards_stack_exports(self, engine, store, registry, params):
        engine.set_job_failure("api-db-user-init", exit_code=2)
        report = deploy([_infra(), _api()], engine, registry, params, exports=store)

        assert report.get("infra").ok
        api = report.get("api")
        assert api.status == "failed"
        assert "exit code 2" in api.error
        assert engine.state.read_outputs("api--prod") is None
        assert engine.state.read_outputs("infra--prod") is not None

    def test_config_error_reported(self, engine, store, registry, params):
        api = make_stack("api", parent="infra", uses=["cache"])
        report = deploy([_infra(), api], engine, registry, params, exports=store)
        assert report.get("api").status == "failed"
        assert "no workload" in report.get("api").error
        assert not engine.workloads

    def test_cancelled_before_start(self, engine, store, registry, params):
        token = CancellationToken()
        token.cancel("operator abort")
        report = deploy([_infra(), _api()], engine, registry, params, exports=store, cancel=token)
        assert [s.status for s in report.stacks] == ["cancelled", "cancelled"]
        assert report.status == "cancelled"
        assert engine.call_log == []

    def test_plan_errors_raise(self, engine, registry):
        with pytest.raises(ConfigError):
            deploy([make_stack("api", parent="ghost")], engine, registry)

    def test_async_engine(self, async_engine, registry, params):
        report = deploy(
            [_infra(), _api(), _worker()], async_engine, registry, params,
            exports=ExportStore(async_engine.state), timeout=5,
        )
        assert report.all_ok, report.errors

    def test_deploy_config(self, engine, registry):
        config = DeploymentConfig(project="acme", stacks=[_infra(), _api()])
        report = deploy_config(config, engine, registry)
        assert report.all_ok, report.errors
        instance = engine.calls("create", "cloudsql-instance")[0]
        assert instance.properties["project"] == "acme"


class TestReport:
    def test_to_dict(self, engine, store, registry, params):
        report = deploy([_infra()], engine, registry, params, exports=store, operation_id="op-test")
        data = report.to_dict()
        assert data["operation_id"] == "op-test"
        assert data["status"] == "ok"
        assert data["stacks"][0]["reference"] == "infra--prod"
        assert data["stacks"][0]["status"] == "ok"

    def test_errors_list(self, engine, store, registry, params):
        engine.set_failure("cache--prod", RuntimeError("boom"))
        report = deploy([_infra()], engine, registry, params, exports=store)
        assert report.status == "failed"
        assert report.errors[0].startswith("infra--prod: ")


class TestAudit:
    def test_entry_written(self, engine, store, registry, params, tmp_path):
        report = deploy([_infra(), _api()], engine, registry, params, exports=store)
        writer = AuditWriter(path=tmp_path / "audit.ndjson")
        write_audit_entries(report, writer)

        [entry] = writer.read_all()
        assert entry.operation_type == "deploy"
        assert entry.operation_id == report.operation_id
        assert entry.status == "ok"
        assert entry.stacks_affected == ["infra--prod", "api--prod"]
        assert "infra--prod/cache" in entry.resources_created

    def test_operation_id_format(self):
        op_id = generate_operation_id()
        assert re.fullmatch(r"op-\d{8}-\d{6}-[0-9a-f]{6}", op_id)
        assert generate_operation_id() != op_id
