"""
gcp-gke-autopilot — GKE Autopilot cluster.

Exports a kubeconfig (secret) built from the cluster endpoint and CA
certificate. The cluster is not consumed by workloads directly; other
processors read its kubeconfig export to run jobs on it.
"""

from __future__ import annotations

import logging
from typing import Any

import yaml

from stackwire.core.deferred import Deferred
from stackwire.core.models.resource import ResourceConfig, ResourceInput
from stackwire.core.models.stack import StackDescriptor
from stackwire.resources.base import (
    ProvisionContext,
    ProvisionParams,
    ResourceProvisioner,
    overlay_live,
    require_fields,
)

logger = logging.getLogger(__name__)

KIND = "gke-cluster"


class GkeAutopilotConfig(ResourceConfig):
    location: str | None = None
    gke_min_version: str | None = None
    release_channel: str | None = None
    # adopt
    cluster_name: str | None = None


def build_kubeconfig(cluster: str, endpoint: str, ca_certificate: str) -> str:
    """kubeconfig that authenticates through the gke-gcloud-auth-plugin."""
    config = {
        "apiVersion": "v1",
        "kind": "Config",
        "current-context": cluster,
        "clusters": [{
            "name": cluster,
            "cluster": {
                "server": f"https://{endpoint}",
                "certificate-authority-data": ca_certificate,
            },
        }],
        "contexts": [{"name": cluster, "context": {"cluster": cluster, "user": cluster}}],
        "users": [{
            "name": cluster,
            "user": {
                "exec": {
                    "apiVersion": "client.authentication.k8s.io/v1beta1",
                    "command": "gke-gcloud-auth-plugin",
                    "installHint": "Install gke-gcloud-auth-plugin for kubectl",
                    "provideClusterInfo": True,
                },
            },
        }],
    }
    return yaml.safe_dump(config, sort_keys=False)


class GkeAutopilotProvisioner(ResourceProvisioner):
    resource_type = "gcp-gke-autopilot"
    kind = "cluster"
    config_model = GkeAutopilotConfig
    EXPORTS = {"kubeconfig": True, "endpoint": False, "location": False}
    has_compute_processor = False

    DEFAULT_RELEASE_CHANNEL = "REGULAR"

    def validate_create(self, config: GkeAutopilotConfig, resource: str) -> None:
        require_fields(config, ["location"], "creation", resource)

    def validate_adopt(self, config: GkeAutopilotConfig, resource: str) -> None:
        require_fields(config, ["cluster_name", "location"], "adoption", resource)

    def create(
        self,
        context: ProvisionContext,
        stack: StackDescriptor,
        resource_input: ResourceInput,
        config: GkeAutopilotConfig,
        params: ProvisionParams,
    ) -> tuple[Any, dict[str, Deferred[str] | str]]:
        name = resource_input.resource_name
        properties: dict[str, Any] = {
            "project": params.project,
            "location": config.location,
            "enable_autopilot": True,
            "release_channel": config.release_channel or self.DEFAULT_RELEASE_CHANNEL,
        }
        if config.gke_min_version:
            properties["min_master_version"] = config.gke_min_version
        handle = context.engine.create_resource(KIND, name, properties)
        return handle, self._exports(name, handle.output("endpoint"),
                                     handle.output("cluster_ca_certificate"), config.location)

    def adopt(
        self,
        context: ProvisionContext,
        stack: StackDescriptor,
        resource_input: ResourceInput,
        config: GkeAutopilotConfig,
        params: ProvisionParams,
    ) -> tuple[Any, dict[str, Deferred[str] | str]]:
        name = resource_input.resource_name
        live = context.engine.lookup_resource(KIND, config.cluster_name)
        properties = overlay_live(live, {
            "location": config.location,
            "release_channel": config.release_channel,
            "min_master_version": config.gke_min_version,
        })
        handle = context.engine.import_resource(KIND, name, config.cluster_name, properties)
        return handle, self._exports(name, handle.output("endpoint"),
                                     handle.output("cluster_ca_certificate"), properties["location"])

    @staticmethod
    def _exports(
        name: str,
        endpoint: Deferred[str],
        ca_certificate: Deferred[str],
        location: str,
    ) -> dict[str, Deferred[str] | str]:
        kubeconfig = endpoint.combine(
            ca_certificate,
            lambda ep, ca: build_kubeconfig(name, ep, ca),
            label=f"{name}-kubeconfig",
        )
        kubeconfig.secret = True
        return {"kubeconfig": kubeconfig, "endpoint": endpoint, "location": location}
