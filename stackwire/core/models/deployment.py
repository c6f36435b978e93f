"""
Deployment model — the top-level ``stackwire.yml`` document.

    project: acme-prod              # cloud project id
    region: europe-west1
    stacks:
      - name: infra
        environment: prod
        resources:
          - {name: cache, type: gcp-redis}
      - name: api
        environment: prod
        parent: infra
        uses: [cache]
        workload: {image: "ghcr.io/acme/api:1.4"}
    live:                           # existing objects, for dry-run adoption
      - {kind: redis-instance, id: legacy-cache, properties: {memory_size_gb: 4}}
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, model_validator

from stackwire.core.models.stack import StackDescriptor


class LiveObject(BaseModel):
    """An object that already exists in the cloud and may be adopted."""

    kind: str
    id: str
    properties: dict[str, Any] = Field(default_factory=dict)


class DeploymentConfig(BaseModel):
    project: str
    region: str = "europe-west1"
    namespace: str = "default"
    labels: dict[str, str] = Field(default_factory=dict)
    init_job_timeout: float = 120.0
    stacks: list[StackDescriptor] = Field(default_factory=list)
    live: list[LiveObject] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _stacks_as_mapping(cls, data: Any) -> Any:
        """Accept ``stacks: {name: {...}}`` as well as a list."""
        if isinstance(data, dict) and isinstance(data.get("stacks"), dict):
            data = dict(data)
            data["stacks"] = [
                {"name": name, **(body or {})} for name, body in data["stacks"].items()
            ]
        return data

    @model_validator(mode="after")
    def _unique_stacks(self) -> DeploymentConfig:
        seen: set[tuple[str, str]] = set()
        for stack in self.stacks:
            key = (stack.name, stack.environment)
            if key in seen:
                raise ValueError(f"stack {stack.name!r} declared twice for {stack.environment!r}")
            seen.add(key)
        return self
