"""
gcp-bucket — GCS bucket with S3-compatible HMAC credentials.

Both branches create the same service account, IAM bindings and HMAC key,
so adopted buckets are consumed exactly like created ones.
"""

from __future__ import annotations

import logging
from typing import Any

from stackwire.adapters.base import ProvisioningEngine
from stackwire.core.deferred import Deferred
from stackwire.core.exports import SecretValue
from stackwire.core.models.resource import ResourceConfig, ResourceInput, ResourceOutput
from stackwire.core.models.stack import ComputeInput, StackDescriptor
from stackwire.core.naming import export_key, to_env_variable_name, to_service_account_id
from stackwire.resources.base import (
    ProvisionContext,
    ProvisionParams,
    ResourceProvisioner,
    overlay_live,
    require_fields,
)

logger = logging.getLogger(__name__)

KIND = "gcs-bucket"
S3_ENDPOINT = "https://storage.googleapis.com"

# S3 client defaults for GCS interoperability
_S3_CLIENT_ENV = {
    "AWS_DEFAULT_REGION": "auto",
    "AWS_S3_SIGNATURE_VERSION": "s3v4",
    "AWS_S3_ADDRESSING_STYLE": "path",
    "AWS_S3_PAYLOAD_SIGNING_ENABLED": "false",
    "AWS_REQUEST_CHECKSUM_CALCULATION": "when_required",
    "AWS_RESPONSE_CHECKSUM_VALIDATION": "when_required",
}


class BucketConfig(ResourceConfig):
    name: str | None = None
    location: str | None = None
    storage_class: str | None = None
    # adopt
    bucket_name: str | None = None


class BucketProvisioner(ResourceProvisioner):
    resource_type = "gcp-bucket"
    kind = "storage"
    config_model = BucketConfig
    EXPORTS = {"name": False, "location": False, "access-key-id": False, "secret-key": True}

    DEFAULT_LOCATION = "EU"

    def validate_adopt(self, config: BucketConfig, resource: str) -> None:
        require_fields(config, ["bucket_name"], "adoption", resource)

    def create(
        self,
        context: ProvisionContext,
        stack: StackDescriptor,
        resource_input: ResourceInput,
        config: BucketConfig,
        params: ProvisionParams,
    ) -> tuple[Any, dict[str, Deferred[str] | str]]:
        name = resource_input.resource_name
        bucket_name = resource_input.to_res_name(config.name) if config.name else name
        handle = context.engine.create_resource(KIND, name, {
            "bucket_name": bucket_name,
            "location": config.location or self.DEFAULT_LOCATION,
            "storage_class": config.storage_class or "STANDARD",
            "project": params.project,
            "labels": dict(params.labels),
        })
        access_id, secret = self._s3_credentials(context.engine, name, handle.output("bucket_name"), params)
        return handle, {
            "name": handle.output("bucket_name"),
            "location": handle.output("location"),
            "access-key-id": access_id,
            "secret-key": secret,
        }

    def adopt(
        self,
        context: ProvisionContext,
        stack: StackDescriptor,
        resource_input: ResourceInput,
        config: BucketConfig,
        params: ProvisionParams,
    ) -> tuple[Any, dict[str, Deferred[str] | str]]:
        name = resource_input.resource_name
        live = context.engine.lookup_resource(KIND, config.bucket_name)
        properties = overlay_live(live, {
            "bucket_name": config.bucket_name,
            "location": config.location,
            "storage_class": config.storage_class,
        })
        handle = context.engine.import_resource(KIND, name, config.bucket_name, properties)
        access_id, secret = self._s3_credentials(context.engine, name, handle.output("bucket_name"), params)
        return handle, {
            "name": handle.output("bucket_name"),
            "location": handle.output("location"),
            "access-key-id": access_id,
            "secret-key": secret,
        }

    def _s3_credentials(
        self,
        engine: ProvisioningEngine,
        name: str,
        bucket: Deferred[str],
        params: ProvisionParams,
    ) -> tuple[Deferred[str], Deferred[str]]:
        account_id = to_service_account_id(f"{name}-sa")
        account = engine.create_resource("service-account", account_id, {
            "account_id": account_id,
            "project": params.project,
            "display_name": f"Service Account for {name}",
        })
        member = account.output("email").map(lambda email: f"serviceAccount:{email}")
        for suffix, role in (("object", "roles/storage.objectAdmin"), ("bucket", "roles/storage.legacyBucketWriter")):
            engine.create_resource("bucket-iam-member", f"{name}-iam-{suffix}", {
                "bucket": bucket,
                "role": role,
                "member": member,
            })
        hmac = engine.create_resource("hmac-key", f"{name}-hmac", {
            "service_account_email": account.output("email"),
        })
        secret = hmac.output("secret")
        secret.secret = True
        return hmac.output("access_id"), secret

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
        read = context.exports.import_value
        bucket = read(owner, export_key(name, "name"))
        location = read(owner, export_key(name, "location"))
        access_key = read(owner, export_key(name, "access-key-id"))
        secret_key = read(owner, export_key(name, "secret-key"), secret=True)

        res_name = resource_input.descriptor.name
        tag = (self.resource_type, res_name, stack.name)
        plain = collector.add_env_variable_if_not_exist
        hidden = collector.add_secret_env_variable_if_not_exist
        for prefix in (f"GCS_{res_name}", f"S3_{res_name}"):
            plain(to_env_variable_name(f"{prefix}_BUCKET"), bucket, *tag)
            plain(to_env_variable_name(f"{prefix}_{'LOCATION' if prefix.startswith('GCS') else 'REGION'}"), location, *tag)
            hidden(to_env_variable_name(f"{prefix}_ACCESS_KEY"), access_key, *tag)
            hidden(to_env_variable_name(f"{prefix}_SECRET_KEY"), secret_key, *tag)
            plain(to_env_variable_name(f"{prefix}_ENDPOINT"), S3_ENDPOINT, *tag)

        plain("GCS_BUCKET", bucket, *tag)
        plain("GCS_LOCATION", location, *tag)
        hidden("GCS_ACCESS_KEY", access_key, *tag)
        hidden("GCS_SECRET_KEY", secret_key, *tag)
        plain("GCS_ENDPOINT", S3_ENDPOINT, *tag)
        hidden("AWS_ACCESS_KEY_ID", access_key, *tag)
        hidden("AWS_SECRET_ACCESS_KEY", secret_key, *tag)
        plain("S3_ENDPOINT", S3_ENDPOINT, *tag)
        plain("S3_BUCKET", bucket, *tag)
        plain("S3_REGION", location, *tag)
        for key, value in _S3_CLIENT_ENV.items():
            plain(key, value, *tag)

        collector.add_resource_tpl_extension(res_name, {
            "bucket": bucket,
            "location": location,
            "access-key": SecretValue(access_key),
            "secret-key": secret_key,
            "endpoint": S3_ENDPOINT,
        })
        return ResourceOutput(ref=owner)
