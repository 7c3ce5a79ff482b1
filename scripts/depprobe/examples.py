"""Probing a library's bundled example sketches."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from scripts.depprobe.classifier import DependencyClassification, classify_dependencies
from scripts.depprobe.libraries import LibraryRecord, find_files_in_folder
from scripts.depprobe.pipeline import BuildPipeline, ImportedLibrary, SearchContext
from scripts.depprobe.probe import build_unit

logger = logging.getLogger(__name__)

EXAMPLES_FOLDER = "examples"


@dataclass
class ExamplePassResult:
    examples: list[Path] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    imported_libraries: list[ImportedLibrary] = field(default_factory=list)

    @property
    def failed_count(self) -> int:
        return len(self.errors)


def find_examples(library: LibraryRecord, extensions: list[str]) -> list[Path]:
    return find_files_in_folder(library.folder / EXAMPLES_FOLDER, extensions)


def run_examples(
    library: LibraryRecord,
    profile: str,
    pipeline: BuildPipeline,
    context: SearchContext,
    classification: DependencyClassification,
    other_roots: list[Path],
    extensions: list[str],
    timeout: Optional[float] = None,
) -> ExamplePassResult:
    """Build every example of ``library`` and union what they import.

    ``classification`` is extended in place; nothing found by the main
    probe or an earlier example is ever dropped. A failing example is
    recorded and the pass moves on.
    """
    result = ExamplePassResult(examples=find_examples(library, extensions))

    for example in result.examples:
        build = build_unit(example, profile, pipeline, context, timeout=timeout)
        if not build.succeeded:
            message = f"{example}: {build.status.value}"
            if build.error:
                message += f": {build.error}"
            logger.debug("Example failed: %s", message)
            result.errors.append(message)
        classify_dependencies(build.imported_libraries, library.name, other_roots, into=classification)
        known = {lib.name for lib in result.imported_libraries}
        result.imported_libraries.extend(lib for lib in build.imported_libraries if lib.name not in known)

    return result
