"""
gcp-pubsub — Pub/Sub topics and subscriptions.

Exports the project id and the comma-separated topic names. Consumers get
the project id and the path of the mounted GCP credentials file.
"""

from __future__ import annotations

import logging
from typing import Any

from pydantic import BaseModel, Field

from stackwire.core.deferred import Deferred
from stackwire.core.errors import ConfigError
from stackwire.core.models.resource import ResourceConfig, ResourceInput, ResourceOutput
from stackwire.core.models.stack import ComputeInput, StackDescriptor
from stackwire.core.naming import export_key
from stackwire.resources.base import (
    ProvisionContext,
    ProvisionParams,
    ResourceProvisioner,
    require_fields,
)

logger = logging.getLogger(__name__)

CREDENTIALS_PATH = "/gcp-credentials.json"


class Subscription(BaseModel):
    name: str
    topic: str
    ack_deadline_sec: int = 10
    exactly_once_delivery: bool = False


class PubSubConfig(ResourceConfig):
    project_id: str | None = None
    topics: list[str] = Field(default_factory=list)
    subscriptions: list[Subscription] = Field(default_factory=list)


class PubSubProvisioner(ResourceProvisioner):
    resource_type = "gcp-pubsub"
    kind = "messaging"
    config_model = PubSubConfig
    EXPORTS = {"project-id": False, "topics": False}

    def validate_create(self, config: PubSubConfig, resource: str) -> None:
        require_fields(config, ["topics"], "creation", resource)
        known = set(config.topics)
        for sub in config.subscriptions:
            if sub.topic not in known:
                raise ConfigError(
                    f"subscription {sub.name!r} references undeclared topic {sub.topic!r}",
                    resource=resource,
                )

    def validate_adopt(self, config: PubSubConfig, resource: str) -> None:
        require_fields(config, ["topics"], "adoption", resource)

    def create(
        self,
        context: ProvisionContext,
        stack: StackDescriptor,
        resource_input: ResourceInput,
        config: PubSubConfig,
        params: ProvisionParams,
    ) -> tuple[Any, dict[str, Deferred[str] | str]]:
        project = config.project_id or params.project
        handles = []
        topic_names = []
        for topic in config.topics:
            topic_name = resource_input.to_res_name(topic)
            handles.append(context.engine.create_resource("pubsub-topic", topic_name, {
                "project": project,
                "topic_name": topic_name,
                "labels": dict(params.labels),
            }))
            topic_names.append(topic_name)
        for sub in config.subscriptions:
            sub_name = resource_input.to_res_name(sub.name)
            handles.append(context.engine.create_resource("pubsub-subscription", sub_name, {
                "project": project,
                "topic": resource_input.to_res_name(sub.topic),
                "ack_deadline_seconds": sub.ack_deadline_sec,
                "enable_exactly_once_delivery": sub.exactly_once_delivery,
            }))
        return handles, {"project-id": project, "topics": ",".join(topic_names)}

    def adopt(
        self,
        context: ProvisionContext,
        stack: StackDescriptor,
        resource_input: ResourceInput,
        config: PubSubConfig,
        params: ProvisionParams,
    ) -> tuple[Any, dict[str, Deferred[str] | str]]:
        handles = []
        project = config.project_id
        for topic in config.topics:
            live = context.engine.lookup_resource("pubsub-topic", topic)
            project = project or live.get("project") or params.project
            handles.append(context.engine.import_resource(
                "pubsub-topic", resource_input.to_res_name(topic), topic,
                {**live, "topic_name": topic},
            ))
        for sub in config.subscriptions:
            live = context.engine.lookup_resource("pubsub-subscription", sub.name)
            handles.append(context.engine.import_resource(
                "pubsub-subscription", resource_input.to_res_name(sub.name), sub.name, live,
            ))
        return handles, {"project-id": project or params.project, "topics": ",".join(config.topics)}

    def process(
        self,
        context: ProvisionContext,
        stack: StackDescriptor,
        resource_input: ComputeInput,
        collector: Any,
        params: ProvisionParams,
    ) -> ResourceOutput:
        name = resource_input.resource_name
        owner = resource_input.parent.full_reference
        project_id = context.exports.import_value(owner, export_key(name, "project-id"))
        topics = context.exports.import_value(owner, export_key(name, "topics"))

        res_name = resource_input.descriptor.name
        tag = (self.resource_type, res_name, stack.name)
        collector.add_env_variable_if_not_exist("PUBSUB_PROJECT_ID", project_id, *tag)
        collector.add_env_variable_if_not_exist("GOOGLE_CLOUD_PROJECT", project_id, *tag)
        collector.add_env_variable_if_not_exist("GOOGLE_APPLICATION_CREDENTIALS", CREDENTIALS_PATH, *tag)
        collector.add_resource_tpl_extension(res_name, {"project-id": project_id, "topics": topics})
        return ResourceOutput(ref=owner)
