"""Processed-library cache for incremental runs."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path

from scripts.depprobe.catalog import InputError, atomic_write_json

logger = logging.getLogger(__name__)

# Top-level key kept for compatibility with existing cached_results.json files
CACHE_KEY = "name"


@dataclass
class ProcessedCache:
    """Persisted record of which libraries were already attempted.

    Membership means "was attempted", not "succeeded". Entries are only
    ever added.
    """

    processed: dict[str, bool] = field(default_factory=dict)

    def is_processed(self, name: str) -> bool:
        return self.processed.get(name, False) is True

    def mark_processed(self, name: str) -> None:
        self.processed[name] = True

    def to_dict(self) -> dict:
        return {CACHE_KEY: dict(self.processed)}


def load_cache(cache_path: Path | str) -> ProcessedCache:
    """Load the processed cache from file.

    Args:
        cache_path: Path to cached_results.json.

    Returns:
        ProcessedCache, empty if the file doesn't exist.

    Raises:
        InputError: If the file exists but is corrupted. Treating corrupt
            state as empty would silently reprocess or skip libraries.
    """
    cache_path = Path(cache_path)
    cache_file = str(cache_path)

    if not cache_path.exists():
        logger.debug("No processed cache at %s, starting empty", cache_file)
        return ProcessedCache()

    try:
        data = json.loads(cache_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise InputError(f"Invalid JSON: {e}", file=cache_file, error_type="cache_invalid")
    except (IOError, OSError, UnicodeDecodeError) as e:
        raise InputError(f"Cannot read cache: {e}", file=cache_file, error_type="cache_invalid")

    if not isinstance(data, dict):
        raise InputError("Top-level cache must be an object", file=cache_file, error_type="cache_invalid")

    processed = data.get(CACHE_KEY) or {}
    if not isinstance(processed, dict) or not all(isinstance(v, bool) for v in processed.values()):
        raise InputError(
            f"'{CACHE_KEY}' must map library names to booleans",
            file=cache_file,
            error_type="cache_invalid",
        )

    return ProcessedCache(processed=dict(processed))


def save_cache(cache: ProcessedCache, cache_path: Path | str) -> None:
    """Atomically save the processed cache to file."""
    atomic_write_json(cache_path, cache.to_dict())
