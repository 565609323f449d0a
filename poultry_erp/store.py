"""
Entity store: the whole dataset persisted as one JSON snapshot.

The store never raises to its callers. Loading falls back to an empty
dataset when there is nothing to read or the snapshot cannot be parsed;
saving reports success as a boolean. Storage is injected through a small
backend protocol so sessions can run against a file or plain memory.
"""

import json
import os
import re
import tempfile
from datetime import date, datetime
from typing import Any, Dict, Optional, Protocol

from pydantic import ValidationError

from poultry_erp.schemas.dataset import Dataset
from poultry_erp.utils import now
from poultry_erp.utils.logging import setup_logging


logger = setup_logging(__name__)

BACKUP_FORMAT_VERSION = "1.0"

_DATETIME_RE = re.compile(
    r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}(:\d{2}(\.\d{1,6})?)?(Z|[+-]\d{2}:?\d{2})?$"
)
_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


class StorageBackend(Protocol):
    """Where the serialized snapshot lives."""

    def read(self) -> Optional[str]:
        ...

    def write(self, text: str) -> None:
        ...


class MemoryStorage:
    """Keeps the snapshot in memory. Used by tests and throwaway sessions."""

    def __init__(self, text: Optional[str] = None):
        self.text = text

    def read(self) -> Optional[str]:
        return self.text

    def write(self, text: str) -> None:
        self.text = text


class FileStorage:
    """Keeps the snapshot in a JSON file, replaced atomically on write."""

    def __init__(self, path: str):
        self.path = path

    def read(self) -> Optional[str]:
        if not os.path.exists(self.path):
            return None
        with open(self.path, "r", encoding="utf-8") as f:
            return f.read()

    def write(self, text: str) -> None:
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=directory, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(text)
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise


class StoredDate(date):
    """A date read back from snapshot text; ``source`` is that text."""
    source: str = ""


class StoredDatetime(datetime):
    """A datetime read back from snapshot text; ``source`` is that text."""
    source: str = ""


def _stored_date(text: str) -> StoredDate:
    parsed = date.fromisoformat(text)
    value = StoredDate(parsed.year, parsed.month, parsed.day)
    value.source = text
    return value


def _stored_datetime(text: str) -> StoredDatetime:
    parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    value = StoredDatetime(
        parsed.year, parsed.month, parsed.day,
        parsed.hour, parsed.minute, parsed.second, parsed.microsecond,
        tzinfo=parsed.tzinfo,
    )
    value.source = text
    return value


def rehydrate_dates(data: Any) -> Any:
    """
    Turn ISO-8601 strings back into dates, at any depth.

    The snapshot is plain text, so every date went out as a string. Lists
    and mappings are walked recursively rather than only known fields.
    Each value keeps the exact text it came from, so text fields that only
    look like dates get their original string back.
    """
    if isinstance(data, str):
        try:
            if _DATETIME_RE.match(data):
                return _stored_datetime(data)
            if _DATE_RE.match(data):
                return _stored_date(data)
        except ValueError:
            return data
        return data
    if isinstance(data, list):
        return [rehydrate_dates(item) for item in data]
    if isinstance(data, dict):
        return {key: rehydrate_dates(value) for key, value in data.items()}
    return data


class EntityStore:
    """Loads and saves the full dataset through a storage backend."""

    def __init__(self, backend: StorageBackend):
        self.backend = backend
        self.last_load_recovered = False

    def load(self) -> Dataset:
        """
        Load the dataset.

        Returns an empty default dataset if nothing was stored yet or the
        stored snapshot is unreadable. The latter also sets
        ``last_load_recovered`` and logs a warning, since the unreadable
        data is not kept.
        """
        self.last_load_recovered = False

        try:
            text = self.backend.read()
        except Exception as e:
            logger.error(f"Could not read snapshot: {e}")
            self.last_load_recovered = True
            return Dataset()

        if not text:
            logger.info("No snapshot found, starting with an empty dataset")
            return Dataset()

        try:
            return self._parse(text)
        except (ValueError, TypeError, ValidationError) as e:
            self.last_load_recovered = True
            logger.warning(f"Snapshot is corrupted, falling back to an empty dataset: {e}")
            return Dataset()

    def save(self, dataset: Dataset) -> bool:
        """Serialize and persist the dataset. Returns False on failure."""
        try:
            text = self.export_snapshot(dataset)
            self.backend.write(text)
        except Exception as e:
            logger.error(f"Failed to save snapshot: {e}")
            return False

        logger.debug(
            f"Saved snapshot: {len(dataset.delivery_documents)} deliveries, "
            f"{len(dataset.invoices)} invoices, {len(dataset.ledger_entries)} ledger entries"
        )
        return True

    def export_snapshot(self, dataset: Dataset) -> str:
        """Serialize the dataset to a portable text blob."""
        return json.dumps(dataset.to_snapshot(), indent=2)

    def import_snapshot(self, text: str, mode: str) -> bool:
        """
        Restore an exported blob.

        Args:
            text: Blob produced by ``export_snapshot``
            mode: "overwrite" replaces the stored dataset; "merge" replaces
                only the top-level collections present in the blob

        Returns:
            True if the result was validated and saved
        """
        if mode not in ("overwrite", "merge"):
            raise ValueError(f"Unknown import mode: {mode}")

        try:
            imported = json.loads(text)
            if not isinstance(imported, dict):
                raise ValueError("Snapshot must be a JSON object")

            if mode == "merge":
                current = self.load().to_snapshot()
                current.update(imported)
                imported = current

            dataset = Dataset.model_validate(rehydrate_dates(imported))
        except (ValueError, TypeError, ValidationError) as e:
            logger.error(f"Import ({mode}) rejected: {e}")
            return False

        logger.info(f"Importing snapshot ({mode})")
        return self.save(dataset)

    def create_backup(self, dataset: Dataset) -> str:
        """Serialize the dataset with backup markers."""
        dataset.settings.last_backup_at = now()
        backup: Dict[str, Any] = dataset.to_snapshot()
        backup["backupDate"] = now().isoformat()
        backup["version"] = BACKUP_FORMAT_VERSION
        return json.dumps(backup, indent=2)

    def restore_backup(self, text: str) -> bool:
        """Overwrite the stored dataset with a blob from ``create_backup``."""
        try:
            backup = json.loads(text)
        except ValueError as e:
            logger.error(f"Backup is not valid JSON: {e}")
            return False

        if not isinstance(backup, dict) or not backup.get("version") or not backup.get("backupDate"):
            logger.error("Backup is missing its version or backupDate marker")
            return False

        backup.pop("backupDate")
        backup.pop("version")
        return self.import_snapshot(json.dumps(backup), mode="overwrite")

    def _parse(self, text: str) -> Dataset:
        raw = json.loads(text)
        if not isinstance(raw, dict):
            raise ValueError("Snapshot root is not an object")
        return Dataset.model_validate(rehydrate_dates(raw))
