"""Installed library discovery.

Each immediate subfolder of a libraries root is one library. Metadata comes
from its ``library.properties`` file; folders without one are legacy
libraries named after the folder and compatible with every architecture.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Optional

logger = logging.getLogger(__name__)

PROPERTIES_FILE = "library.properties"


@dataclass
class LibraryRecord:
    """An installed library as found on disk."""

    name: str  # canonical name from library.properties
    folder: Path
    version: str = ""
    architectures: list[str] = field(default_factory=list)
    requires: list[str] = field(default_factory=list)

    @property
    def folder_name(self) -> str:
        return self.folder.name

    @property
    def needs_alias(self) -> bool:
        return self.folder_name != self.name


def find_files_in_folder(folder: Path | str, extensions: Iterable[str], recurse: bool = True) -> list[Path]:
    """Find files with the given extensions, in deterministic order.

    A folder's own files come first (sorted by name), then each subfolder
    is visited in sorted order. Extension matching is case-insensitive.
    Symlinked subfolders are not followed; unreadable ones are logged and skipped.

    Returns:
        List of matching file paths; empty if the folder does not exist.
    """
    folder = Path(folder)
    exts = {e.lower() for e in extensions}

    try:
        with os.scandir(folder) as it:
            entries = sorted(it, key=lambda e: e.name)
    except (FileNotFoundError, NotADirectoryError):
        return []
    except OSError as e:
        logger.warning("Cannot list %s: %s", folder, e)
        return []

    files = []
    subfolders = []
    for entry in entries:
        if entry.name.startswith("."):
            continue
        # symlinked folders can loop back on themselves
        if entry.is_dir(follow_symlinks=False):
            subfolders.append(Path(entry.path))
        elif entry.is_file() and os.path.splitext(entry.name)[1].lower() in exts:
            files.append(Path(entry.path))

    if recurse:
        for sub in subfolders:
            files.extend(find_files_in_folder(sub, exts, recurse))

    return files


def parse_properties(properties_path: Path | str) -> dict[str, str]:
    """Parse a ``key=value`` properties file. Comments start with ``#``."""
    props: dict[str, str] = {}
    content = Path(properties_path).read_text(encoding="utf-8", errors="replace")
    for line in content.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        props[key.strip()] = value.strip()
    return props


def load_library(folder: Path | str) -> LibraryRecord:
    """Build a LibraryRecord from a library folder."""
    folder = Path(folder)
    properties_path = folder / PROPERTIES_FILE

    if not properties_path.is_file():
        return LibraryRecord(name=folder.name, folder=folder, architectures=["*"])

    props = parse_properties(properties_path)
    archs = [a.strip() for a in props.get("architectures", "").split(",") if a.strip()]
    return LibraryRecord(
        name=props.get("name") or folder.name,
        folder=folder,
        version=props.get("version", ""),
        architectures=archs,
    )


def scan_libraries(roots: Iterable[Path | str]) -> list[LibraryRecord]:
    """Scan libraries roots and return every installed library.

    Roots are visited in the given order; within a root, library folders
    are sorted by name.
    """
    libraries = []
    for root in roots:
        root = Path(root)
        if not root.is_dir():
            logger.warning("Libraries folder does not exist, skipping: %s", root)
            continue
        for child in sorted(root.iterdir(), key=lambda p: p.name):
            if child.name.startswith(".") or not child.is_dir():
                continue
            try:
                libraries.append(load_library(child))
            except (IOError, OSError) as e:
                logger.warning("Skipping library %s: %s", child, e)
    return libraries


class LibraryIndex:
    """Lookup of installed libraries by folder, for naming imported libraries."""

    def __init__(self, libraries: Iterable[LibraryRecord]):
        self._by_folder: dict[Path, LibraryRecord] = {}
        for lib in libraries:
            self._by_folder[lib.folder.resolve()] = lib

    def by_folder(self, folder: Path | str) -> Optional[LibraryRecord]:
        """Return the library whose folder is or contains ``folder``."""
        folder = Path(folder).resolve()
        for candidate in (folder, *folder.parents):
            lib = self._by_folder.get(candidate)
            if lib is not None:
                return lib
        return None

    def canonical_name(self, folder: Path | str, fallback: str) -> str:
        lib = self.by_folder(folder)
        return lib.name if lib is not None else fallback
