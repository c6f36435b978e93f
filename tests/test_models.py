"""
Tests for domain models — descriptors, stacks, lifecycle, workload shapes.
"""

import pytest
from pydantic import ValidationError

from stackwire.core.deferred import Deferred
from stackwire.core.models import (
    Container,
    DeploymentConfig,
    DependsOnResource,
    ParentInfo,
    ResourceConfig,
    ResourceDescriptor,
    ResourceExport,
    ResourceInput,
    ResourceLifecycle,
    ResourceOutput,
    ResourceState,
    StackDescriptor,
    Volume,
    WorkloadArgs,
)


class TestResourceDescriptor:
    """Descriptor parsing tests."""

    def test_flat_fields_folded(self):
        res = ResourceDescriptor.model_validate({
            "name": "cache", "type": "gcp-redis", "tier": "BASIC", "memorySizeGb": 2,
        })
        assert res.config == {"tier": "BASIC", "memorySizeGb": 2}
        assert not res.adopt

    def test_explicit_config_merged(self):
        res = ResourceDescriptor.model_validate({
            "name": "cache", "type": "gcp-redis", "config": {"tier": "BASIC"}, "adopt": True,
        })
        assert res.config == {"tier": "BASIC", "adopt": True}
        assert res.adopt

    @pytest.mark.parametrize(("raw", "expected"), [("false", False), ("no", False), ("true", True), (1, True)])
    def test_adopt_coerced_like_resource_config(self, raw, expected):
        res = ResourceDescriptor.model_validate({"name": "cache", "type": "gcp-redis", "adopt": raw})
        assert res.adopt is expected
        assert ResourceConfig.model_validate(res.config).adopt is expected

    def test_adopt_not_a_boolean(self):
        with pytest.raises(ValidationError):
            ResourceDescriptor.model_validate({"name": "cache", "type": "gcp-redis", "adopt": "maybe"})

    def test_name_and_type_required(self):
        with pytest.raises(ValidationError):
            ResourceDescriptor.model_validate({"type": "gcp-redis"})


class TestResourceInput:
    def _input(self, environment: str = "prod", parent_env: str | None = None) -> ResourceInput:
        return ResourceInput(
            descriptor=ResourceDescriptor(name="cache", type="gcp-redis"),
            stack_name="infra",
            environment=environment,
            parent_env=parent_env,
        )

    def test_resource_name(self):
        assert self._input().resource_name == "cache--prod"

    def test_parent_env_wins(self):
        item = self._input("preview", "prod")
        assert item.resource_name == "cache--prod"
        assert item.to_res_name("root") == "root--prod"


class TestResourceLifecycle:
    """Lifecycle transition tests."""

    def test_create_path(self):
        life = ResourceLifecycle("cache")
        for state in (ResourceState.VALIDATED, ResourceState.CREATING,
                      ResourceState.EXPORTED, ResourceState.READY):
            life.advance(state)
        assert life.state == ResourceState.READY
        assert life.history[0] == ResourceState.UNVALIDATED
        assert len(life.history) == 5

    def test_adopt_path(self):
        life = ResourceLifecycle("cache")
        life.advance(ResourceState.VALIDATED)
        life.advance(ResourceState.ADOPTING)
        life.advance(ResourceState.EXPORTED)
        assert life.state == ResourceState.EXPORTED

    def test_illegal_transition(self):
        life = ResourceLifecycle("cache")
        with pytest.raises(RuntimeError, match="illegal transition"):
            life.advance(ResourceState.CREATING)

    def test_fail_from_any_state(self):
        life = ResourceLifecycle("cache")
        life.advance(ResourceState.VALIDATED)
        life.fail()
        assert life.state == ResourceState.FAILED
        life.fail()
        assert life.history.count(ResourceState.FAILED) == 1

    def test_ready_never_fails(self):
        life = ResourceLifecycle("cache", state=ResourceState.READY)
        life.fail()
        assert life.state == ResourceState.READY


class TestResourceOutput:
    def test_export_keys(self):
        output = ResourceOutput(exports=[
            ResourceExport("cache--prod-host", Deferred.resolved("10.0.0.1")),
            ResourceExport("cache--prod-port", Deferred.resolved("6379")),
        ])
        assert output.export_keys == {"cache--prod-host", "cache--prod-port"}
        assert output.state == ResourceState.READY


# ── Stacks ───────────────────────────────────────────────────────────


class TestStackDescriptor:
    """Stack descriptor tests."""

    def test_reference(self):
        stack = StackDescriptor(name="api", environment="prod")
        assert stack.reference == "api--prod"
        assert stack.resource_environment == "prod"
        assert not stack.is_custom

    def test_custom_stack(self):
        stack = StackDescriptor(name="api", environment="preview", parent="infra", parent_env="prod")
        assert stack.reference == "api--preview"
        assert stack.resource_environment == "prod"
        assert stack.is_custom

    def test_parent_env_equal_is_not_custom(self):
        stack = StackDescriptor(name="api", environment="prod", parent_env="prod")
        assert not stack.is_custom

    def test_duplicate_resource(self):
        with pytest.raises(ValidationError, match="duplicate resource"):
            StackDescriptor(name="infra", environment="prod", resources=[
                {"name": "cache", "type": "gcp-redis"},
                {"name": "cache", "type": "gcp-bucket"},
            ])

    def test_duplicate_relation(self):
        dep = {"name": "shared", "owner": "api", "resource": "db"}
        with pytest.raises(ValidationError, match="duplicate depends_on"):
            StackDescriptor(name="worker", environment="prod", depends_on=[dep, dep])

    @pytest.mark.parametrize("fields", [
        {"name": "worker--shared", "environment": "prod"},
        {"name": "worker", "environment": "prod--eu"},
        {"name": "worker", "environment": "preview", "parent_env": "prod--eu"},
    ])
    def test_separator_rejected_in_names(self, fields):
        with pytest.raises(ValidationError, match="must not contain"):
            StackDescriptor(**fields)

    def test_separator_rejected_in_relation(self):
        with pytest.raises(ValidationError, match="must not contain"):
            DependsOnResource(name="b--c", owner="api", resource="db")

    def test_get_resource(self):
        stack = StackDescriptor(name="infra", environment="prod", resources=[{"name": "db", "type": "gcp-cloudsql-postgres"}])
        assert stack.get_resource("db").type == "gcp-cloudsql-postgres"
        assert stack.get_resource("cache") is None


class TestParentInfo:
    def test_relation(self):
        uses = ParentInfo(stack_name="infra", full_reference="infra--prod", stack_env="prod", uses_resource=True)
        assert uses.relation == "uses"
        dep = ParentInfo(
            stack_name="infra", full_reference="infra--prod", stack_env="prod",
            depends_on_resource=DependsOnResource(name="shared", owner="api", resource="db"),
        )
        assert dep.relation == "depends_on"


# ── Workloads ────────────────────────────────────────────────────────


class TestWorkloadArgs:
    def test_main_container(self):
        args = WorkloadArgs(name="api", namespace="default")
        assert args.main_container is None
        args.append_container(Container(name="api", image="api:1"))
        args.append_container(Container(name="cloudsql-proxy", image="proxy"))
        assert args.main_container.name == "api"

    def test_duplicate_container(self):
        args = WorkloadArgs(name="api", namespace="default", containers=[Container(name="api", image="api:1")])
        with pytest.raises(ValueError, match="already in workload"):
            args.append_container(Container(name="api", image="api:2"))

    def test_duplicate_volume(self):
        args = WorkloadArgs(name="api", namespace="default")
        args.append_volume(Volume(name="creds", secret_name="creds"))
        with pytest.raises(ValueError, match="volume 'creds'"):
            args.append_volume(Volume(name="creds", secret_name="other"))


class TestDeploymentConfig:
    def test_duplicate_stack(self):
        with pytest.raises(ValidationError, match="declared twice"):
            DeploymentConfig(project="acme", stacks=[
                {"name": "api", "environment": "prod"},
                {"name": "api", "environment": "prod"},
            ])

    def test_stacks_as_mapping(self):
        config = DeploymentConfig.model_validate({
            "project": "acme",
            "stacks": {"infra": {"environment": "prod"}, "api": {"environment": "prod", "parent": "infra"}},
        })
        assert [s.name for s in config.stacks] == ["infra", "api"]
