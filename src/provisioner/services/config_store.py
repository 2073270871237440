"""Namespaced key-value blob store modelled on ESP-IDF NVS."""

import base64
import binascii
import json
import logging
import os
import threading
from pathlib import Path
from typing import Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError

from provisioner.errors import ConfigCorrupt, InvalidArgument, IoFault

MAX_KEY_LENGTH = 15

ModelT = TypeVar("ModelT", bound=BaseModel)


class NvsStore:
    """Blob storage for one namespace inside a shared JSON file.

    Changes are staged in memory and become durable on ``commit()``, which
    rewrites the file through a temp file and an atomic rename.
    """

    def __init__(self, path: str, namespace: str):
        self.logger = logging.getLogger("provisioner.nvs")
        self.path = Path(path)
        self.namespace = namespace
        self._lock = threading.Lock()
        self._pending: dict = {}
        self._erase_all = False

    def _read_file(self) -> dict:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except OSError as e:
            raise IoFault(f"cannot read {self.path}: {e}") from e
        except json.JSONDecodeError as e:
            raise IoFault(f"storage file {self.path} is unreadable: {e}") from e
        if not isinstance(data, dict):
            raise IoFault(f"storage file {self.path} has an unexpected layout")
        return data

    def _check_key(self, key: str) -> None:
        if not key or len(key) > MAX_KEY_LENGTH:
            raise InvalidArgument(f"key must be 1-{MAX_KEY_LENGTH} characters: {key!r}")

    def get_blob(self, key: str) -> Optional[bytes]:
        """Return the blob stored under ``key``, or None if absent.

        Raises:
            IoFault: If the storage file cannot be read
            ConfigCorrupt: If the stored value is not valid base64
        """
        self._check_key(key)
        with self._lock:
            if key in self._pending:
                return self._pending[key]
            if self._erase_all:
                return None
            encoded = self._read_file().get(self.namespace, {}).get(key)
        if encoded is None:
            return None
        try:
            return base64.b64decode(encoded, validate=True)
        except (binascii.Error, TypeError) as e:
            raise ConfigCorrupt(f"{self.namespace}/{key}: {e}") from e

    def set_blob(self, key: str, value: bytes) -> None:
        self._check_key(key)
        with self._lock:
            self._pending[key] = bytes(value)

    def erase_key(self, key: str) -> None:
        self._check_key(key)
        with self._lock:
            self._pending[key] = None

    def erase_all(self) -> None:
        with self._lock:
            self._pending.clear()
            self._erase_all = True

    def commit(self) -> None:
        """Persist staged changes.

        Raises:
            IoFault: If the file cannot be written; the previous content stays intact
        """
        with self._lock:
            data = self._read_file()
            entries = {} if self._erase_all else dict(data.get(self.namespace, {}))
            for key, value in self._pending.items():
                if value is None:
                    entries.pop(key, None)
                else:
                    entries[key] = base64.b64encode(value).decode("ascii")
            data[self.namespace] = entries

            tmp_path = self.path.parent / f"{self.path.name}.tmp"
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with open(tmp_path, "w", encoding="utf-8") as f:
                    json.dump(data, f, indent=2)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_path, self.path)
            except OSError as e:
                tmp_path.unlink(missing_ok=True)
                self.logger.error(f"Failed to commit namespace {self.namespace}: {e}", exc_info=True)
                raise IoFault(f"cannot write {self.path}: {e}") from e

            self._pending.clear()
            self._erase_all = False
            self.logger.debug(f"Committed namespace {self.namespace} ({len(entries)} keys)")


# Persisted blob layout: magic, format version byte, UTF-8 JSON of the model
BLOB_MAGIC = b"PVCF"
BLOB_VERSION = 1


def encode_config(config: BaseModel) -> bytes:
    return BLOB_MAGIC + bytes([BLOB_VERSION]) + config.model_dump_json().encode("utf-8")


def decode_config(blob: bytes, model: Type[ModelT]) -> ModelT:
    """Decode a blob written by ``encode_config``.

    Raises:
        ConfigCorrupt: Wrong magic, unknown version or invalid content
    """
    header_size = len(BLOB_MAGIC) + 1
    if len(blob) < header_size or not blob.startswith(BLOB_MAGIC):
        raise ConfigCorrupt(f"{model.__name__}: missing format header")
    version = blob[len(BLOB_MAGIC)]
    if version != BLOB_VERSION:
        raise ConfigCorrupt(f"{model.__name__}: unsupported format version {version}")
    try:
        return model.model_validate_json(blob[header_size:])
    except ValidationError as e:
        raise ConfigCorrupt(f"{model.__name__}: {e}") from e
