"""Library catalog (library_index.json) loading and crash-safe saving."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger(__name__)

REQUIRES_FIELD = "requires"
LOCAL_REQUIRES_FIELD = "providedByCore"


class InputError(Exception):
    """Malformed catalog or cache input."""

    def __init__(
        self,
        message: str,
        file: Optional[str] = None,
        error_type: str = "input_invalid",
    ):
        super().__init__(message)
        self.message = message
        self.file = file
        self.error_type = error_type

    def to_json(self) -> dict[str, Any]:
        """Serialize error to JSON format for machine parsing."""
        result: dict[str, Any] = {
            "error": self.error_type,
            "message": self.message,
        }
        if self.file:
            result["file"] = self.file
        return result

    def __str__(self) -> str:
        if self.file:
            return f"{self.message} | file: {self.file}"
        return self.message


def atomic_write_json(filepath: Path | str, data: Any) -> None:
    """Write JSON atomically using tempfile + rename.

    Writes to a temporary file in the same directory, then renames it over
    the target so readers see either the old or the new file, never a
    partial one.

    Args:
        filepath: Target file path.
        data: JSON-serializable object.
    """
    filepath = Path(filepath)
    parent = filepath.parent
    parent.mkdir(parents=True, exist_ok=True)

    fd, tmp_path = tempfile.mkstemp(dir=str(parent), prefix=f".{filepath.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=4)
            f.write("\n")
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, str(filepath))
    except BaseException:
        # Clean up temp file on failure
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


class Catalog:
    """Ordered collection of catalog entries.

    Entries are kept as the decoded JSON objects so that every field this
    tool does not manage survives a rewrite unchanged.
    """

    def __init__(self, data: dict[str, Any], path: Optional[Path] = None):
        self.data = data
        self.path = path

    @property
    def entries(self) -> list[dict[str, Any]]:
        return self.data["libraries"]

    def __len__(self) -> int:
        return len(self.entries)

    def find(self, name: str, version: str) -> int:
        """Return the index of the entry with this (name, version), or -1."""
        for idx, entry in enumerate(self.entries):
            if entry.get("name") == name and entry.get("version") == version:
                return idx
        return -1

    def set_requires(
        self,
        index: int,
        external: list[str],
        local: Optional[list[str]] = None,
    ) -> None:
        """Overwrite the dependency fields of one entry.

        The entry is replaced, never edited in place, so snapshots taken
        earlier keep the record they saw.
        """
        entry = dict(self.entries[index])
        entry[REQUIRES_FIELD] = list(external)
        if local is not None:
            entry[LOCAL_REQUIRES_FIELD] = list(local)
        self.entries[index] = entry

    def snapshot(self) -> dict[str, Any]:
        """Return a copy that later ``set_requires`` calls cannot reach.

        Only the top level and the entry list are copied; entries are shared.
        """
        snapshot = dict(self.data)
        snapshot["libraries"] = list(self.entries)
        return snapshot


def load_catalog(catalog_path: Path | str) -> Catalog:
    """Load the catalog from file.

    Raises:
        InputError: If the file is missing, is not valid JSON, or has no
            ``libraries`` array of objects.
    """
    catalog_path = Path(catalog_path)
    catalog_file = str(catalog_path)

    try:
        content = catalog_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise InputError("Catalog file not found", file=catalog_file, error_type="catalog_missing")
    except (IOError, OSError, UnicodeDecodeError) as e:
        raise InputError(f"Cannot read catalog: {e}", file=catalog_file, error_type="catalog_invalid")

    try:
        data = json.loads(content)
    except json.JSONDecodeError as e:
        raise InputError(f"Invalid JSON: {e}", file=catalog_file, error_type="catalog_invalid")

    if not isinstance(data, dict):
        raise InputError("Top-level catalog must be an object", file=catalog_file, error_type="catalog_invalid")

    libraries = data.get("libraries")
    if libraries is None:
        data["libraries"] = []
    elif not isinstance(libraries, list) or not all(isinstance(e, dict) for e in libraries):
        raise InputError(
            "'libraries' must be an array of objects",
            file=catalog_file,
            error_type="catalog_invalid",
        )

    logger.debug("Loaded %d catalog entries from %s", len(data["libraries"]), catalog_file)
    return Catalog(data, path=catalog_path)


def save_catalog(data: dict[str, Any], catalog_path: Path | str) -> None:
    """Atomically write catalog data (a Catalog's data or a snapshot of it)."""
    atomic_write_json(catalog_path, data)
