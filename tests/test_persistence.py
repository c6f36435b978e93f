"""
Tests for persistence — encrypted export state and audit ledger.
"""

import json
from pathlib import Path

import pytest

from stackwire.adapters.base import StoredExport
from stackwire.core.errors import ConfigError
from stackwire.core.exports import ExportStore
from stackwire.core.persistence.audit import DEFAULT_AUDIT_FILE, AuditEntry, AuditWriter
from stackwire.core.persistence.export_state import (
    PASSPHRASE_ENV,
    FileStateBackend,
    default_exports_dir,
)

OUTPUTS = {
    "cache--prod-host": StoredExport(value="10.0.0.1"),
    "db--prod-root-password": StoredExport(value="s3cret-root", secret=True),
}


class TestFileStateBackend:
    """Tests for export state files."""

    def test_roundtrip(self, tmp_state_dir: Path):
        backend = FileStateBackend(tmp_state_dir, passphrase="hunter2")
        backend.write_outputs("infra--prod", OUTPUTS)
        assert backend.has_stack("infra--prod")
        assert backend.read_outputs("infra--prod") == OUTPUTS

    def test_missing_stack(self, tmp_state_dir: Path):
        backend = FileStateBackend(tmp_state_dir, passphrase="hunter2")
        assert backend.read_outputs("infra--prod") is None
        assert not backend.has_stack("infra--prod")

    def test_secret_not_in_plaintext(self, tmp_state_dir: Path):
        backend = FileStateBackend(tmp_state_dir, passphrase="hunter2")
        backend.write_outputs("infra--prod", OUTPUTS)
        raw = (tmp_state_dir / "infra--prod.json").read_text()
        assert "s3cret-root" not in raw
        assert "10.0.0.1" in raw

        data = json.loads(raw)
        record = data["exports"]["db--prod-root-password"]
        assert record["secret"] is True
        assert record["value"] is None
        assert data["algorithm"] == "aes-256-gcm"

    def test_wrong_passphrase(self, tmp_state_dir: Path):
        FileStateBackend(tmp_state_dir, passphrase="hunter2").write_outputs("infra--prod", OUTPUTS)
        with pytest.raises(ConfigError, match="wrong passphrase") as exc:
            FileStateBackend(tmp_state_dir, passphrase="nope").read_outputs("infra--prod")
        assert exc.value.stack == "infra--prod"

    def test_secret_write_needs_passphrase(self, tmp_state_dir: Path, monkeypatch):
        monkeypatch.delenv(PASSPHRASE_ENV, raising=False)
        backend = FileStateBackend(tmp_state_dir)
        with pytest.raises(ConfigError, match=PASSPHRASE_ENV):
            backend.write_outputs("infra--prod", OUTPUTS)
        assert not backend.has_stack("infra--prod")

    def test_plain_only_needs_no_passphrase(self, tmp_state_dir: Path, monkeypatch):
        monkeypatch.delenv(PASSPHRASE_ENV, raising=False)
        backend = FileStateBackend(tmp_state_dir)
        plain = {"cache--prod-host": StoredExport(value="10.0.0.1")}
        backend.write_outputs("infra--prod", plain)
        assert backend.read_outputs("infra--prod") == plain

    def test_passphrase_from_env(self, tmp_state_dir: Path, monkeypatch):
        monkeypatch.setenv(PASSPHRASE_ENV, "from-env")
        FileStateBackend(tmp_state_dir).write_outputs("infra--prod", OUTPUTS)
        assert FileStateBackend(tmp_state_dir, passphrase="from-env").read_outputs("infra--prod") == OUTPUTS

    def test_read_masked(self, tmp_state_dir: Path):
        FileStateBackend(tmp_state_dir, passphrase="hunter2").write_outputs("infra--prod", OUTPUTS)
        masked = FileStateBackend(tmp_state_dir, passphrase="").read_masked("infra--prod")
        assert masked["cache--prod-host"].value == "10.0.0.1"
        assert masked["db--prod-root-password"] == StoredExport(value="", secret=True)

    def test_corrupt_file(self, tmp_state_dir: Path):
        (tmp_state_dir / "infra--prod.json").write_text('{"exports": "nope"}')
        with pytest.raises(ConfigError, match="corrupt"):
            FileStateBackend(tmp_state_dir).read_outputs("infra--prod")

    def test_overwrite_is_atomic(self, tmp_state_dir: Path):
        backend = FileStateBackend(tmp_state_dir, passphrase="hunter2")
        backend.write_outputs("infra--prod", OUTPUTS)
        backend.write_outputs("infra--prod", {"cache--prod-host": StoredExport(value="10.0.0.2")})
        assert backend.read_outputs("infra--prod")["cache--prod-host"].value == "10.0.0.2"
        assert [p.name for p in tmp_state_dir.iterdir()] == ["infra--prod.json"]

    def test_list_stacks(self, tmp_state_dir: Path):
        backend = FileStateBackend(tmp_state_dir, passphrase="hunter2")
        backend.write_outputs("infra--prod", OUTPUTS)
        backend.write_outputs("api--prod", {})
        assert backend.list_stacks() == ["api--prod", "infra--prod"]

    def test_creates_directory(self, tmp_path: Path):
        directory = default_exports_dir(tmp_path)
        FileStateBackend(directory, passphrase="x").write_outputs("infra--prod", OUTPUTS)
        assert (tmp_path / ".state" / "exports" / "infra--prod.json").is_file()

    def test_behind_export_store(self, tmp_state_dir: Path):
        store = ExportStore(FileStateBackend(tmp_state_dir, passphrase="hunter2"))
        staged = store.stage("infra--prod")
        staged.export("db--prod-root-password", "s3cret-root", secret=True)
        store.commit(staged)

        fresh = ExportStore(FileStateBackend(tmp_state_dir, passphrase="hunter2"))
        assert fresh.import_value("infra--prod", "db--prod-root-password", secret=True) == "s3cret-root"


class TestAuditWriter:
    """Tests for the deployment ledger."""

    def test_write_and_read(self, tmp_path: Path):
        writer = AuditWriter(tmp_path / "audit.ndjson")
        writer.write(AuditEntry(operation_id="op-1", status="ok", stacks_affected=["infra--prod"]))
        writer.write(AuditEntry(operation_id="op-2", status="failed", errors=["api--prod: boom"]))

        entries = writer.read_all()
        assert [e.operation_id for e in entries] == ["op-1", "op-2"]
        assert entries[0].stacks_affected == ["infra--prod"]
        assert entries[1].errors == ["api--prod: boom"]
        assert entries[0].operation_type == "deploy"

    def test_append_only(self, tmp_path: Path):
        path = tmp_path / "audit.ndjson"
        AuditWriter(path).write(AuditEntry(operation_id="op-1"))
        AuditWriter(path).write(AuditEntry(operation_id="op-2"))
        assert len(path.read_text().strip().splitlines()) == 2

    def test_creates_parent_directory(self, tmp_path: Path):
        path = tmp_path / ".state" / DEFAULT_AUDIT_FILE
        AuditWriter(path).write(AuditEntry(operation_id="op-1"))
        assert path.is_file()

    def test_corrupt_line_skipped(self, tmp_path: Path):
        path = tmp_path / "audit.ndjson"
        writer = AuditWriter(path)
        writer.write(AuditEntry(operation_id="op-1"))
        with path.open("a") as f:
            f.write("not json\n")
            f.write('{"stacks_total": "many"}\n')
        writer.write(AuditEntry(operation_id="op-2"))
        assert [e.operation_id for e in writer.read_all()] == ["op-1", "op-2"]

    def test_missing_ledger(self, tmp_path: Path):
        assert AuditWriter(tmp_path / "audit.ndjson").read_all() == []
