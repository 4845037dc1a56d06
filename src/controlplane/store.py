"""
Config store for deployment records.

Backs the resumability contract: each environment and region owns one
JSON record holding the step counter and the identifiers discovered by
earlier stages. Records are updated atomically (temporary file plus
rename) so an interrupted write never leaves a truncated record behind.

Store layout:
    <config_dir>/
    ├── config                 # generic defaults (key=value, operator owned)
    ├── DEVWEEU.json           # deployment record per environment+region
    └── DEVWEEU.json.err       # one-line marker written on fatal failures

The store does not lock records. Two concurrent invocations for the same
identity can race on the step counter; callers must not run them.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional

from controlplane.errors import StoreError
from controlplane.models import DEFAULTABLE_FIELDS, DeploymentRecord, utc_now

__all__ = ["ConfigStore", "read_generic_config"]

logger = logging.getLogger(__name__)


def read_generic_config(path: Path) -> Dict[str, str]:
    """
    Parse the generic defaults file.

    The file is shared with other tooling and uses shell-style
    ``key=value`` lines. ``export`` prefixes, comments, blank lines and
    surrounding quotes are tolerated. A missing file yields no defaults.
    """
    if not path.exists():
        return {}
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise StoreError(f"Cannot read generic config {path}: {e}") from e

    values: Dict[str, str] = {}
    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        if line.startswith("export "):
            line = line[len("export "):].lstrip()
        key, _, value = line.partition("=")
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
            value = value[1:-1]
        if value:
            values[key.strip()] = value
    return values


class ConfigStore:
    """
    Persistence for a single deployment record.

    Args:
        store_dir: Directory holding the generic config and the records
        generic_path: Environment-independent defaults (read only)
        record_path: Record of the identity being deployed
    """

    def __init__(self, store_dir: Path, generic_path: Path, record_path: Path):
        self.store_dir = Path(store_dir)
        self.generic_path = Path(generic_path)
        self.record_path = Path(record_path)

    @property
    def error_marker_path(self) -> Path:
        return self.record_path.with_name(self.record_path.name + ".err")

    def exists(self) -> bool:
        """Check if the record exists."""
        return self.record_path.exists()

    def init(self, environment: str, region_code: str) -> DeploymentRecord:
        """
        Ensure the store directory and record exist.

        Creates a record seeded with ``step=0`` when none exists. Generic
        defaults are merged underneath: they fill fields the record leaves
        unset and are not written back. Calling this on an existing record
        changes nothing on disk.

        Returns:
            The merged record.
        """
        try:
            self.store_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StoreError(f"Cannot create config store {self.store_dir}: {e}") from e

        if not self.exists():
            logger.info(f"Creating deployment record {self.record_path}")
            self._write(DeploymentRecord(environment=environment, region_code=region_code))

        record = self.read()
        for key, value in read_generic_config(self.generic_path).items():
            if DeploymentRecord.field_for(key) not in DEFAULTABLE_FIELDS:
                continue
            if record.get(key) in (None, ""):
                record.set(key, value)
        return record

    def read(self) -> DeploymentRecord:
        """
        Load the full record from disk.

        Raises:
            StoreError: If the record is missing, unreadable or corrupted.
        """
        try:
            with open(self.record_path, "r", encoding="utf-8") as f:
                data = json.load(f)
            return DeploymentRecord.from_document(data)
        except (OSError, ValueError) as e:
            raise StoreError(f"Cannot read deployment record {self.record_path}: {e}") from e

    def load(self, key: str) -> Optional[Any]:
        """
        Value of ``key`` in the stored record.

        Returns None when the key is not yet known; many keys are only
        populated by later stages, so an absent key is not an error.
        """
        if not self.exists():
            return None
        return self.read().get(key)

    def save(self, key: str, record: DeploymentRecord) -> None:
        """
        Persist the in-process value of ``key`` into the stored record.

        Only that key is written; any prior value is overwritten.
        """
        name = DeploymentRecord.field_for(key)
        if name is None:
            raise KeyError(f"Unknown deployment record key: {key}")

        stored = self.read() if self.exists() else record.model_copy(deep=True)
        value = getattr(record, name)
        if name == "step":
            stored.advance_to(value)
        else:
            setattr(stored, name, value)
        self._write(stored)
        logger.debug(f"Saved {key}={value!r} to {self.record_path}")

    def reset(self) -> None:
        """Delete the record and its error marker (force re-deployment)."""
        for path in (self.record_path, self.error_marker_path):
            try:
                path.unlink()
                logger.info(f"Removed {path}")
            except FileNotFoundError:
                continue
            except OSError as e:
                raise StoreError(f"Cannot remove {path}: {e}") from e

    def write_error_marker(self, message: str) -> None:
        """Write the one-line failure marker next to the record."""
        try:
            self.error_marker_path.parent.mkdir(parents=True, exist_ok=True)
            self.error_marker_path.write_text(message + "\n", encoding="utf-8")
        except OSError as e:
            raise StoreError(f"Cannot write {self.error_marker_path}: {e}") from e

    def clear_error_marker(self) -> None:
        """Remove a stale failure marker."""
        try:
            self.error_marker_path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            raise StoreError(f"Cannot remove {self.error_marker_path}: {e}") from e

    def _write(self, record: DeploymentRecord) -> None:
        """
        Save the record atomically.

        Uses temporary file + rename so readers never see a partial write.
        Sets file permissions to 600 (owner read/write only).
        """
        record.updated_at = utc_now()
        try:
            self.record_path.parent.mkdir(parents=True, exist_ok=True)
            fd, temp_path = tempfile.mkstemp(
                dir=self.record_path.parent,
                prefix=f".{self.record_path.stem}-",
                suffix=".tmp",
            )
        except OSError as e:
            raise StoreError(f"Cannot write deployment record {self.record_path}: {e}") from e

        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(record.to_document(), f, indent=2, sort_keys=True)
                f.write("\n")
            os.chmod(temp_path, 0o600)
            os.replace(temp_path, self.record_path)
        except OSError as e:
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            raise StoreError(f"Cannot write deployment record {self.record_path}: {e}") from e
