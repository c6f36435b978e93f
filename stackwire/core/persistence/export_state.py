"""
Export state persistence — committed stack exports on disk.

Each stack's exports live in ``.state/exports/<stack-ref>.json``. Writes
are atomic (write to temp file, then rename), so a crash mid-commit leaves
the previous export set intact.

Secret exports are encrypted with AES-256-GCM under a key derived with
PBKDF2-SHA256 from ``STACKWIRE_SECRETS_PASSPHRASE``. Without a passphrase
a stack holding secret exports can be neither written nor read back.
"""

from __future__ import annotations

import base64
import json
import logging
import os
import tempfile
import threading
from datetime import UTC, datetime
from pathlib import Path

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from pydantic import BaseModel, Field, ValidationError

from stackwire.adapters.base import StateBackend, StoredExport
from stackwire.core.errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_STATE_DIR = ".state"
DEFAULT_EXPORTS_DIR = "exports"
PASSPHRASE_ENV = "STACKWIRE_SECRETS_PASSPHRASE"

# ── Crypto constants ─────────────────────────────────────────────────
KDF_ITERATIONS = 100_000
SALT_BYTES = 16
IV_BYTES = 12
KEY_BYTES = 32
TAG_BYTES = 16


class ExportRecord(BaseModel):
    """One export as stored on disk; secrets carry ciphertext instead of value."""

    secret: bool = False
    value: str | None = None
    iv: str | None = None
    tag: str | None = None
    ciphertext: str | None = None


class StackExportsFile(BaseModel):
    stack: str
    committed_at: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    algorithm: str = "aes-256-gcm"
    kdf: str = "pbkdf2-sha256"
    kdf_iterations: int = KDF_ITERATIONS
    salt: str | None = None
    exports: dict[str, ExportRecord] = Field(default_factory=dict)


def default_exports_dir(project_root: Path) -> Path:
    return project_root / DEFAULT_STATE_DIR / DEFAULT_EXPORTS_DIR


def _derive_key(passphrase: str, salt: bytes, iterations: int = KDF_ITERATIONS) -> bytes:
    """Derive AES-256 key from passphrase using PBKDF2-SHA256."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_BYTES,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(passphrase.encode("utf-8"))


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


class FileStateBackend(StateBackend):
    """State backend writing one JSON file per stack."""

    def __init__(self, directory: Path, passphrase: str | None = None):
        self._dir = Path(directory)
        self._passphrase = passphrase if passphrase is not None else os.environ.get(PASSPHRASE_ENV)
        self._lock = threading.Lock()

    @property
    def directory(self) -> Path:
        return self._dir

    def _path(self, stack_ref: str) -> Path:
        return self._dir / f"{stack_ref.replace('/', '__')}.json"

    # ── Read ────────────────────────────────────────────────────────

    def has_stack(self, stack_ref: str) -> bool:
        return self._path(stack_ref).is_file()

    def list_stacks(self) -> list[str]:
        if not self._dir.is_dir():
            return []
        return sorted(p.stem for p in self._dir.glob("*.json"))

    def _load(self, stack_ref: str) -> StackExportsFile | None:
        path = self._path(stack_ref)
        with self._lock:
            if not path.is_file():
                return None
            try:
                return StackExportsFile.model_validate_json(path.read_text(encoding="utf-8"))
            except ValidationError as e:
                raise ConfigError(f"corrupt export state {path}: {e}", stack=stack_ref) from e

    def read_outputs(self, stack_ref: str) -> dict[str, StoredExport] | None:
        data = self._load(stack_ref)
        if data is None:
            return None

        key: bytes | None = None
        outputs: dict[str, StoredExport] = {}
        for name, record in data.exports.items():
            if not record.secret:
                outputs[name] = StoredExport(value=record.value or "", secret=False)
                continue
            if key is None:
                key = self._key_for(data, stack_ref)
            outputs[name] = StoredExport(value=self._decrypt(key, record, stack_ref, name), secret=True)
        logger.debug("Loaded %d exports of %s", len(outputs), stack_ref)
        return outputs

    def read_masked(self, stack_ref: str) -> dict[str, StoredExport] | None:
        """Committed exports without decrypting; secret values come back blank."""
        data = self._load(stack_ref)
        if data is None:
            return None
        return {
            name: StoredExport(value="" if record.secret else (record.value or ""), secret=record.secret)
            for name, record in data.exports.items()
        }

    def _key_for(self, data: StackExportsFile, stack_ref: str) -> bytes:
        if not self._passphrase:
            raise ConfigError(
                f"{PASSPHRASE_ENV} is required to read secret exports", stack=stack_ref
            )
        if not data.salt:
            raise ConfigError(f"export state of {stack_ref!r} has no salt", stack=stack_ref)
        return _derive_key(self._passphrase, base64.b64decode(data.salt), data.kdf_iterations)

    @staticmethod
    def _decrypt(key: bytes, record: ExportRecord, stack_ref: str, name: str) -> str:
        try:
            iv = base64.b64decode(record.iv or "")
            blob = base64.b64decode(record.ciphertext or "") + base64.b64decode(record.tag or "")
            return AESGCM(key).decrypt(iv, blob, None).decode("utf-8")
        except InvalidTag as e:
            raise ConfigError(
                f"cannot decrypt export {name!r}: wrong passphrase or tampered state",
                stack=stack_ref,
            ) from e

    # ── Write ───────────────────────────────────────────────────────

    def write_outputs(self, stack_ref: str, outputs: dict[str, StoredExport]) -> None:
        data = StackExportsFile(stack=stack_ref)
        aesgcm: AESGCM | None = None
        for name, stored in outputs.items():
            if not stored.secret:
                data.exports[name] = ExportRecord(value=stored.value)
                continue
            if aesgcm is None:
                if not self._passphrase:
                    raise ConfigError(
                        f"{PASSPHRASE_ENV} is required to persist secret exports", stack=stack_ref
                    )
                salt = os.urandom(SALT_BYTES)
                data.salt = _b64(salt)
                aesgcm = AESGCM(_derive_key(self._passphrase, salt))
            iv = os.urandom(IV_BYTES)
            ct_and_tag = aesgcm.encrypt(iv, stored.value.encode("utf-8"), None)
            data.exports[name] = ExportRecord(
                secret=True,
                iv=_b64(iv),
                tag=_b64(ct_and_tag[-TAG_BYTES:]),
                ciphertext=_b64(ct_and_tag[:-TAG_BYTES]),
            )

        content = json.dumps(data.model_dump(mode="json"), indent=2, ensure_ascii=False) + "\n"
        path = self._path(stack_ref)
        with self._lock:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=".exports_", suffix=".tmp")
            os.close(fd)
            tmp = Path(tmp_path)
            try:
                tmp.write_text(content, encoding="utf-8")
                tmp.replace(path)
            except OSError:
                tmp.unlink(missing_ok=True)
                raise
        logger.debug("Exports of %s saved to %s", stack_ref, path)
