"""Synthetic probe compilation.

A probe is an otherwise empty sketch that includes a library's main
headers. Building it shows which other libraries the toolchain pulls in.
"""

from __future__ import annotations

import logging
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import jellyfish

from scripts.depprobe.libraries import LibraryRecord, find_files_in_folder
from scripts.depprobe.pipeline import (
    BuildPipeline,
    ImportedLibrary,
    PipelineResult,
    ProbeStatus,
    SearchContext,
)

logger = logging.getLogger(__name__)

HEADER_EXTENSIONS = (".h",)
MATCH_THRESHOLD = 0.9
SKETCH_NAME = "sketch"
LIFECYCLE_STUBS = "\nvoid loop(){}\nvoid setup(){}\n"


@dataclass
class ProbeJob:
    """State of one probe: what was built and what it pulled in."""

    profile: str
    unit: Optional[Path] = None
    imported_libraries: list[ImportedLibrary] = field(default_factory=list)
    include_folders: list[Path] = field(default_factory=list)
    status: Optional[ProbeStatus] = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status is ProbeStatus.SUCCEEDED

    def absorb(self, result: PipelineResult) -> None:
        """Merge a pipeline result into this job."""
        self.status = result.status
        self.error = result.error
        known = {lib.name for lib in self.imported_libraries}
        for lib in result.imported_libraries:
            if lib.name not in known:
                known.add(lib.name)
                self.imported_libraries.append(lib)
        for folder in result.include_folders:
            if folder not in self.include_folders:
                self.include_folders.append(folder)


def header_similarity(header: Path | str, library_name: str) -> float:
    """Jaro-Winkler similarity between a header filename and a library name."""
    return jellyfish.jaro_winkler_similarity(Path(header).name, library_name)


def select_headers(headers: list[Path], library_name: str) -> list[Path]:
    """Choose which headers the probe includes.

    Every header scoring above MATCH_THRESHOLD is included. If none does,
    the first header in traversal order is used as a best guess.
    """
    confident = [h for h in headers if header_similarity(h, library_name) > MATCH_THRESHOLD]
    if confident:
        return confident
    return headers[:1]


def render_sketch(headers: list[Path]) -> str:
    """Render the probe sketch source for the given headers."""
    source = "\n"
    for header in headers:
        source += f'#include "{header.name}"\n'
    return source + LIFECYCLE_STUBS


def build_unit(
    unit: Path,
    profile: str,
    pipeline: BuildPipeline,
    context: SearchContext,
    timeout: Optional[float] = None,
) -> PipelineResult:
    """Run the pipeline on an existing unit inside a throwaway scratch folder."""
    with tempfile.TemporaryDirectory(prefix="depprobe-build-") as scratch:
        return pipeline.run(unit, profile, context, Path(scratch), timeout=timeout)


def run_probe(
    library: LibraryRecord,
    profile: str,
    pipeline: BuildPipeline,
    context: SearchContext,
    timeout: Optional[float] = None,
) -> ProbeJob:
    """Build a synthetic sketch for ``library`` and record what it imports.

    The sketch and every scratch file live in a temporary directory that is
    removed when the probe ends, whatever the outcome.
    """
    job = ProbeJob(profile=profile)

    headers = find_files_in_folder(library.folder, HEADER_EXTENSIONS)
    selected = select_headers(headers, library.name)
    if not headers:
        logger.warning("No headers found for %s in %s", library.name, library.folder)
    logger.debug("Probe for %s includes %s", library.name, [h.name for h in selected])

    with tempfile.TemporaryDirectory(prefix=f"sketch{library.folder_name}-") as tmp:
        sketch_dir = Path(tmp) / SKETCH_NAME
        sketch_dir.mkdir()
        unit = sketch_dir / f"{SKETCH_NAME}.ino"
        unit.write_text(render_sketch(selected), encoding="utf-8")
        job.unit = unit

        workdir = Path(tmp) / "work"
        workdir.mkdir()
        result = pipeline.run(unit, profile, context, workdir, timeout=timeout)
        job.absorb(result)

    if not job.succeeded:
        logger.info("Probe of %s on %s: %s (%s)", library.name, profile, job.status.value, job.error)
    return job
