"""Build pipeline interface and the arduino-builder implementation.

The pipeline is an external collaborator: given a compilation unit, a
target profile and a search context it reports which libraries were pulled
in and whether the build succeeded.
"""

from __future__ import annotations

import logging
import re
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Optional

from scripts.depprobe.aliases import materialize_aliases
from scripts.depprobe.libraries import LibraryIndex

logger = logging.getLogger(__name__)

CORE_API_VERSION = "10800"

_USING_LIBRARY_VERSIONED = re.compile(
    r"^Using library (?P<name>.+?) at version (?P<version>\S+) in folder: (?P<folder>.+?)(?: \(legacy\))?\s*$"
)
_USING_LIBRARY = re.compile(r"^Using library (?P<name>.+?) in folder: (?P<folder>.+?)(?: \(legacy\))?\s*$")
_INCLUDE_FLAG = re.compile(r'(?:^|\s)"?-I"?(?P<folder>[^"\s]+)"?')


class ProbeStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class ImportedLibrary:
    """A library the pipeline pulled into a build."""

    name: str
    folder: Path


@dataclass
class SearchContext:
    """Folders and name mappings handed to the pipeline."""

    hardware: list[Path] = field(default_factory=list)
    tools: list[Path] = field(default_factory=list)
    built_in_libraries: list[Path] = field(default_factory=list)
    libraries: list[Path] = field(default_factory=list)
    build_path: Optional[Path] = None
    build_cache: Optional[Path] = None  # compiled cores, shared by every build of a run
    aliases: dict[str, Path] = field(default_factory=dict)  # canonical name -> real folder


@dataclass
class PipelineResult:
    status: ProbeStatus
    imported_libraries: list[ImportedLibrary] = field(default_factory=list)
    include_folders: list[Path] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status is ProbeStatus.SUCCEEDED


class BuildPipeline(ABC):
    """Compiles one unit and reports what it imported."""

    @abstractmethod
    def run(
        self,
        unit: Path,
        profile: str,
        context: SearchContext,
        workdir: Path,
        timeout: Optional[float] = None,
    ) -> PipelineResult:
        """Build ``unit`` for ``profile``.

        Args:
            unit: Path to the compilation unit (a sketch file).
            profile: Target profile (FQBN).
            context: Search folders and aliases.
            workdir: Scratch directory owned by the caller for this build;
                removed by the caller afterwards.
            timeout: Seconds before the build is abandoned.
        """


def parse_builder_output(
    output: str,
    library_index: Optional[LibraryIndex] = None,
) -> tuple[list[ImportedLibrary], list[Path]]:
    """Extract imported libraries and include folders from verbose output.

    Folders are resolved so that aliases report their real location, and
    names are mapped to canonical names when the folder is a known library.
    """
    imported: list[ImportedLibrary] = []
    includes: list[Path] = []
    seen_folders: set[Path] = set()
    seen_includes: set[Path] = set()

    for line in output.splitlines():
        line = line.strip()
        match = _USING_LIBRARY_VERSIONED.match(line) or _USING_LIBRARY.match(line)
        if match:
            folder = Path(match.group("folder").strip()).resolve()
            if folder in seen_folders:
                continue
            seen_folders.add(folder)
            name = match.group("name").strip()
            if library_index is not None:
                name = library_index.canonical_name(folder, name)
            imported.append(ImportedLibrary(name=name, folder=folder))
            continue

        if "-I" in line:
            for inc in _INCLUDE_FLAG.finditer(line):
                folder = Path(inc.group("folder"))
                if folder not in seen_includes:
                    seen_includes.add(folder)
                    includes.append(folder)

    return imported, includes


class ArduinoBuilderPipeline(BuildPipeline):
    """Runs the ``arduino-builder`` executable in verbose compile mode."""

    def __init__(self, executable: str = "arduino-builder", library_index: Optional[LibraryIndex] = None):
        self.executable = executable
        self.library_index = library_index

    def build_command(self, unit: Path, profile: str, context: SearchContext, build_path: Path) -> list[str]:
        cmd = [self.executable, "-compile", "-verbose"]
        for folder in context.hardware:
            cmd += ["-hardware", str(folder)]
        for folder in context.tools:
            cmd += ["-tools", str(folder)]
        for folder in context.built_in_libraries:
            cmd += ["-built-in-libraries", str(folder)]
        for folder in context.libraries:
            cmd += ["-libraries", str(folder)]
        cmd += [
            "-fqbn", profile,
            "-core-api-version", CORE_API_VERSION,
            "-build-path", str(build_path),
        ]
        if context.build_cache is not None:
            cmd += ["-build-cache", str(context.build_cache)]
        cmd.append(str(unit))
        return cmd

    def run(
        self,
        unit: Path,
        profile: str,
        context: SearchContext,
        workdir: Path,
        timeout: Optional[float] = None,
    ) -> PipelineResult:
        staged = materialize_aliases(context.aliases, workdir / "aliases")
        if staged is not None:
            # Staged aliases go first so headers resolve to the canonical name
            context = replace(context, libraries=[staged, *context.libraries])

        build_path = context.build_path or workdir / "build"
        build_path.mkdir(parents=True, exist_ok=True)
        cmd = self.build_command(unit, profile, context, build_path)
        logger.debug("Running: %s", " ".join(cmd))

        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as e:
            logger.warning("Build of %s timed out after %ss", unit, timeout)
            output = e.stdout or ""
            if isinstance(output, bytes):
                output = output.decode("utf-8", errors="replace")
            imported, includes = parse_builder_output(output, self.library_index)
            return PipelineResult(
                status=ProbeStatus.TIMED_OUT,
                imported_libraries=imported,
                include_folders=includes,
                error=f"Timeout after {timeout}s",
            )
        except (OSError, subprocess.SubprocessError) as e:
            logger.error("Cannot run %s: %s", self.executable, e)
            return PipelineResult(status=ProbeStatus.FAILED, error=str(e))

        imported, includes = parse_builder_output(result.stdout, self.library_index)
        if result.returncode != 0:
            stderr = result.stderr.strip().splitlines()
            return PipelineResult(
                status=ProbeStatus.FAILED,
                imported_libraries=imported,
                include_folders=includes,
                error=stderr[-1] if stderr else f"exit status {result.returncode}",
            )
        return PipelineResult(
            status=ProbeStatus.SUCCEEDED,
            imported_libraries=imported,
            include_folders=includes,
        )
