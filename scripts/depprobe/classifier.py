"""Dependency classification.

Imported libraries living under an "other libraries" root are distributed
through the library manager; everything else comes with a core or the
built-in libraries.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable

from scripts.depprobe.pipeline import ImportedLibrary


@dataclass
class DependencyClassification:
    """Disjoint external/local partitions, in first-seen order."""

    external: list[str] = field(default_factory=list)  # provided by the library manager
    local: list[str] = field(default_factory=list)  # provided by cores or built-in

    def __contains__(self, name: str) -> bool:
        return name in self.external or name in self.local

    def copy(self) -> "DependencyClassification":
        return DependencyClassification(external=list(self.external), local=list(self.local))


def is_under(folder: Path | str, roots: Iterable[Path]) -> bool:
    """True if ``folder`` is one of ``roots`` or inside one of them."""
    folder = Path(folder).resolve()
    for root in roots:
        root = Path(root).resolve()
        if folder == root or root in folder.parents:
            return True
    return False


def classify_dependencies(
    imported: Iterable[ImportedLibrary],
    library_name: str,
    other_roots: list[Path],
    into: DependencyClassification | None = None,
) -> DependencyClassification:
    """Partition imported libraries, excluding the probed library itself.

    Args:
        imported: Libraries reported by the pipeline.
        library_name: Canonical name of the probed library.
        other_roots: The configured "other libraries" folders.
        into: Existing classification to extend; results are unioned by
            name and a name already in either partition keeps its place.

    Returns:
        The extended (or a new) classification.
    """
    result = into if into is not None else DependencyClassification()

    for dep in imported:
        if dep.name == library_name or dep.name in result:
            continue
        if is_under(dep.folder, other_roots):
            result.external.append(dep.name)
        else:
            result.local.append(dep.name)

    return result
