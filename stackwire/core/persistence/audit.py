"""
Audit ledger — one NDJSON line per deployment run.

Each line records the operation id, the engine, which stacks were touched,
which resources were created or adopted, and the errors of failed stacks.
Lines are only ever appended.
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_AUDIT_FILE = "audit.ndjson"


class AuditEntry(BaseModel):
    """What one ``deploy`` run did."""

    timestamp: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    operation_id: str = ""
    operation_type: str = "deploy"
    engine: str = ""

    stacks_affected: list[str] = Field(default_factory=list)      # stack references, plan order
    resources_created: list[str] = Field(default_factory=list)    # <stack ref>/<resource>
    resources_adopted: list[str] = Field(default_factory=list)

    status: str = ""               # ok, partial, failed, cancelled
    stacks_total: int = 0
    stacks_succeeded: int = 0
    stacks_failed: int = 0
    duration_ms: int = 0
    errors: list[str] = Field(default_factory=list)


class AuditWriter:
    """Appends deployment entries to an NDJSON ledger."""

    def __init__(self, path: Path):
        self.path = path

    def write(self, entry: AuditEntry) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as f:
            f.write(entry.model_dump_json() + "\n")
        logger.debug("Audit: %s %s (%s)", entry.operation_id, entry.status, self.path)

    def read_all(self) -> list[AuditEntry]:
        """Entries oldest first; a line that does not parse is logged and skipped."""
        if not self.path.is_file():
            return []
        entries: list[AuditEntry] = []
        for line_num, line in enumerate(self.path.read_text(encoding="utf-8").splitlines(), start=1):
            if not line.strip():
                continue
            try:
                entries.append(AuditEntry.model_validate(json.loads(line)))
            except (json.JSONDecodeError, ValidationError) as e:
                logger.warning("Skipping corrupt audit entry at line %d: %s", line_num, e)
        return entries
