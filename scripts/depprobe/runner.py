"""Probe run orchestration: one library at a time, finalized incrementally."""

from __future__ import annotations

import logging
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

from scripts.depprobe.aliases import library_alias
from scripts.depprobe.catalog import Catalog, load_catalog, save_catalog
from scripts.depprobe.classifier import DependencyClassification, classify_dependencies
from scripts.depprobe.config import ACCUMULATION_SESSION, ProbeConfig
from scripts.depprobe.examples import ExamplePassResult, run_examples
from scripts.depprobe.incremental import ProcessedCache, load_cache, save_cache
from scripts.depprobe.libraries import LibraryIndex, LibraryRecord, scan_libraries
from scripts.depprobe.pipeline import (
    ArduinoBuilderPipeline,
    BuildPipeline,
    ImportedLibrary,
    ProbeStatus,
    SearchContext,
)
from scripts.depprobe.probe import run_probe
from scripts.depprobe.profiles import select_profile
from scripts.depprobe.watcher import InterruptWatcher

logger = logging.getLogger(__name__)


@dataclass
class LibraryOutcome:
    """What happened to one library during a run."""

    name: str
    version: str
    skipped: bool = False
    profile: Optional[str] = None
    status: Optional[ProbeStatus] = None
    classification: DependencyClassification = field(default_factory=DependencyClassification)
    examples: Optional[ExamplePassResult] = None


@dataclass
class RunReport:
    outcomes: list[LibraryOutcome] = field(default_factory=list)
    not_in_catalog: int = 0

    @property
    def processed(self) -> list[LibraryOutcome]:
        return [o for o in self.outcomes if not o.skipped]

    @property
    def skipped(self) -> list[LibraryOutcome]:
        return [o for o in self.outcomes if o.skipped]

    @property
    def failed(self) -> list[LibraryOutcome]:
        return [o for o in self.processed if o.status is not ProbeStatus.SUCCEEDED]


def build_search_context(config: ProbeConfig, build_cache: Optional[Path] = None) -> SearchContext:
    return SearchContext(
        hardware=[Path(p) for p in config.hardware],
        tools=[Path(p) for p in config.tools],
        built_in_libraries=[Path(p) for p in config.built_in_libraries],
        libraries=[Path(p) for p in config.libraries],
        build_path=Path(config.build_path) if config.build_path else None,
        build_cache=build_cache,
    )


def format_dependencies(subject: str, classification: DependencyClassification) -> str:
    return (
        f"{subject} depends on: {classification.external} provided by lib manager "
        f"and {classification.local} provided by cores or builtin"
    )


class ProbeRunner:
    """Probes every catalogued library and writes back what it depends on."""

    def __init__(
        self,
        config: ProbeConfig,
        catalog: Catalog,
        cache: ProcessedCache,
        pipeline: BuildPipeline,
        libraries: list[LibraryRecord],
        publish: Optional[Callable[[dict], None]] = None,
        interrupted: Optional[Callable[[], bool]] = None,
        build_cache: Optional[Path] = None,
    ):
        self.config = config
        self.catalog = catalog
        self.cache = cache
        self.pipeline = pipeline
        self.libraries = libraries
        self.publish = publish
        self.interrupted = interrupted or (lambda: False)
        self.context = build_search_context(config, build_cache)
        self.other_roots = [Path(p) for p in config.libraries]
        self._session_imports: list[ImportedLibrary] = []

    def should_skip(self, library: LibraryRecord) -> bool:
        return self.cache.is_processed(library.name) and not self.config.force

    def probe_library(self, library: LibraryRecord) -> LibraryOutcome:
        """Probe one library (and its examples) without touching the catalog."""
        selection = select_profile(library.name, library.architectures, default=self.config.default_profile)
        logger.debug("Library %s uses %s (rule %s)", library.name, selection.profile, selection.rule)
        outcome = LibraryOutcome(name=library.name, version=library.version, profile=selection.profile)

        classification = DependencyClassification()
        if self.config.accumulation == ACCUMULATION_SESSION:
            classify_dependencies(self._session_imports, library.name, self.other_roots, into=classification)

        with library_alias(self.context, library) as context:
            job = run_probe(
                library,
                selection.profile,
                self.pipeline,
                context,
                timeout=self.config.probe_timeout,
            )
            outcome.status = job.status
            classify_dependencies(job.imported_libraries, library.name, self.other_roots, into=classification)

            line = format_dependencies(f"Library {library.name}", classification)
            if not job.succeeded:
                reason = "timed out" if job.status is ProbeStatus.TIMED_OUT else "failed to compile"
                line += f" but {reason} on {selection.profile}"
            print(line)

            if self.config.examples:
                outcome.examples = run_examples(
                    library,
                    selection.profile,
                    self.pipeline,
                    context,
                    classification,
                    self.other_roots,
                    self.config.example_extensions,
                    timeout=self.config.probe_timeout,
                )
                line = format_dependencies(f"Examples for {library.name}", classification)
                if outcome.examples.failed_count:
                    line += f" but {outcome.examples.failed_count} failed to compile on {selection.profile}"
                print(line)

        if self.config.accumulation == ACCUMULATION_SESSION:
            imported = list(job.imported_libraries)
            if outcome.examples is not None:
                imported += outcome.examples.imported_libraries
            known = {lib.name for lib in self._session_imports}
            for lib in imported:
                if lib.name not in known:
                    known.add(lib.name)
                    self._session_imports.append(lib)

        outcome.classification = classification
        return outcome

    def finalize(self, index: int, outcome: LibraryOutcome) -> None:
        """Write the library's dependencies back and mark it processed."""
        local = outcome.classification.local if self.config.record_local_dependencies else None
        self.catalog.set_requires(index, outcome.classification.external, local)
        self.cache.mark_processed(outcome.name)
        if self.publish is not None:
            self.publish(self.catalog.snapshot())

    def run(self) -> RunReport:
        report = RunReport()

        for library in self.libraries:
            index = self.catalog.find(library.name, library.version)
            if index == -1:
                # not in the catalog, don't build its dependency tree
                report.not_in_catalog += 1
                continue

            if self.should_skip(library):
                logger.debug("Skipping %s, already processed", library.name)
                report.outcomes.append(LibraryOutcome(name=library.name, version=library.version, skipped=True))
                continue

            outcome = self.probe_library(library)
            if self.interrupted():
                # the build was likely cut short by the same signal
                logger.debug("Interrupted while probing %s, not finalizing", library.name)
                break
            self.finalize(index, outcome)
            report.outcomes.append(outcome)

        return report


def execute(
    config: ProbeConfig,
    pipeline: Optional[BuildPipeline] = None,
    watcher: Optional[InterruptWatcher] = None,
) -> RunReport:
    """Run a full probe batch as described by ``config``.

    Raises:
        InputError: If the catalog or the processed cache is malformed.
    """
    cache = load_cache(config.cache)
    catalog = load_catalog(config.catalog)

    libraries = scan_libraries([*config.libraries, *config.built_in_libraries])
    if pipeline is None:
        pipeline = ArduinoBuilderPipeline(config.builder, library_index=LibraryIndex(libraries))

    if watcher is None:
        watcher = InterruptWatcher(config.catalog)

    with tempfile.TemporaryDirectory(prefix="core_cache") as core_cache, watcher:
        watcher.publish(catalog.snapshot())
        runner = ProbeRunner(
            config,
            catalog,
            cache,
            pipeline,
            libraries,
            publish=watcher.publish,
            interrupted=lambda: watcher.interrupted,
            build_cache=Path(core_cache),
        )
        report = runner.run()

        def write_results() -> None:
            save_catalog(catalog.data, config.catalog)
            save_cache(cache, config.cache)

        watcher.finish(write_results)

    print(
        f"Processed {len(report.processed)} libraries "
        f"({len(report.failed)} failed to compile), skipped {len(report.skipped)}"
    )
    return report
