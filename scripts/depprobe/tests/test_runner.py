"""Tests for probe run orchestration."""

import json
import os
import threading

import pytest

from scripts.depprobe.catalog import InputError
from scripts.depprobe.pipeline import PipelineResult, ProbeStatus
from scripts.depprobe.runner import execute
from scripts.depprobe.watcher import InterruptWatcher

from conftest import FakePipeline, catalog_entry, make_library, write_catalog


class RecordingExit:
    def __init__(self):
        self.codes = []
        self.called = threading.Event()

    def __call__(self, code):
        self.codes.append(code)
        self.called.set()


def _quiet_watcher(config, exit_fn=None):
    return InterruptWatcher(config.catalog, exit_fn=exit_fn or RecordingExit(), signals=())


def _run(config, pipeline=None):
    pipeline = pipeline or FakePipeline()
    report = execute(config, pipeline=pipeline, watcher=_quiet_watcher(config))
    return report, pipeline


def _catalog(config):
    data = json.loads(open(config.catalog).read())
    return {entry["name"]: entry for entry in data["libraries"]}


def _cache(config):
    return json.loads(open(config.cache).read())["name"]


@pytest.fixture
def scenario(workspace, make_config):
    """Library A (no architecture) and B (avr) where B.h includes A.h."""
    libs = workspace["libraries"]
    make_library(libs, "A-1.0.0", name="A", headers={"src/A.h": "int a();\n"})
    make_library(libs, "b", name="B", architectures="avr", headers={"src/B.h": '#include "A.h"\n'})
    config = make_config()
    write_catalog(workspace["root"] / "library_index.json", [catalog_entry("A"), catalog_entry("B")])
    return config


class TestEndToEnd:
    """Full runs against the in-process pipeline."""

    def test_dependencies_written(self, scenario):
        report, pipeline = _run(scenario)

        catalog = _catalog(scenario)
        assert catalog["A"]["requires"] == []
        assert catalog["B"]["requires"] == ["A"]
        assert _cache(scenario) == {"A": True, "B": True}
        assert len(report.processed) == 2
        assert report.failed == []

    def test_profiles_chosen_per_library(self, scenario):
        _, pipeline = _run(scenario)

        assert [call["profile"] for call in pipeline.calls] == ["arduino:avr:uno", "arduino:avr:micro"]

    def test_core_build_cache_shared_across_run(self, scenario):
        _, pipeline = _run(scenario)

        caches = {call["build_cache"] for call in pipeline.calls}
        assert len(caches) == 1
        cache_dir = caches.pop()
        assert cache_dir is not None
        assert cache_dir.name.startswith("core_cache")
        assert not cache_dir.exists()

    def test_other_catalog_fields_untouched(self, scenario):
        _run(scenario)

        entry = _catalog(scenario)["B"]
        assert entry["checksum"] == "SHA-256:00"
        assert entry["archiveFileName"] == "B-1.0.0.zip"

    def test_summary_lines(self, scenario, capsys):
        _run(scenario)

        out = capsys.readouterr().out
        assert "Library B depends on: ['A'] provided by lib manager and [] provided by cores or builtin" in out
        assert "Processed 2 libraries (0 failed to compile), skipped 0" in out

    def test_rerun_is_idempotent(self, scenario):
        _run(scenario)
        report, pipeline = _run(scenario)

        assert pipeline.calls == []
        assert len(report.skipped) == 2
        assert _catalog(scenario)["B"]["requires"] == ["A"]

    def test_force_reprocesses_everything(self, scenario):
        _run(scenario)
        scenario.force = True
        report, pipeline = _run(scenario)

        assert len(pipeline.calls) == 2
        assert len(report.processed) == 2
        assert _cache(scenario) == {"A": True, "B": True}

    def test_libraries_not_in_catalog_ignored(self, scenario, workspace):
        make_library(workspace["libraries"], "Unlisted", headers={"Unlisted.h": ""})
        make_library(workspace["libraries"], "Bumped", version="9.9.9", headers={"Bumped.h": ""})

        report, pipeline = _run(scenario)

        assert report.not_in_catalog == 2
        assert len(pipeline.calls) == 2
        assert set(_cache(scenario)) == {"A", "B"}

    def test_malformed_cache_is_fatal(self, scenario):
        with open(scenario.cache, "w") as f:
            f.write("{ not json")
        before = open(scenario.catalog).read()

        with pytest.raises(InputError):
            _run(scenario)

        assert open(scenario.catalog).read() == before


class TestAliases:
    """Libraries whose folder name differs from their name."""

    def test_own_header_found_through_alias(self, workspace, make_config):
        libs = workspace["libraries"]
        # a fork shipping the same header sorts first, so a name lookup is needed
        make_library(libs, "AFork", headers={"src/MyLib.h": ""})
        real = make_library(libs, "mylib-2.0.0", name="MyLib", version="2.0.0", headers={"src/MyLib.h": ""})
        config = make_config()
        write_catalog(workspace["root"] / "library_index.json", [catalog_entry("MyLib", "2.0.0")])

        report, pipeline = _run(config)

        call = pipeline.calls[0]
        assert call["aliases"] == {"MyLib": real}
        assert call["resolved"]["MyLib.h"] == real
        assert report.processed[0].status is ProbeStatus.SUCCEEDED
        assert _catalog(config)["MyLib"]["requires"] == []

    def test_alias_scoped_to_one_library(self, scenario):
        _, pipeline = _run(scenario)

        assert list(pipeline.calls[0]["aliases"]) == ["A"]
        assert list(pipeline.calls[1]["aliases"]) == ["B"]


class TestFailures:
    """Per-library failures never stop the run."""

    def test_failed_probe_still_finalized(self, workspace, make_config, capsys):
        libs = workspace["libraries"]
        make_library(libs, "Dep", headers={"Dep.h": ""})
        make_library(libs, "Broken", headers={"Broken.h": '#include "Dep.h"\n#include "Missing.h"\n'})
        make_library(libs, "Fine", headers={"Fine.h": ""})
        config = make_config()
        write_catalog(
            workspace["root"] / "library_index.json",
            [catalog_entry("Broken"), catalog_entry("Fine"), catalog_entry("Dep")],
        )

        report, _ = _run(config)

        catalog = _catalog(config)
        assert catalog["Broken"]["requires"] == ["Dep"]
        assert catalog["Fine"]["requires"] == []
        assert _cache(config) == {"Broken": True, "Dep": True, "Fine": True}
        assert [o.name for o in report.failed] == ["Broken"]
        assert "but failed to compile on arduino:avr:uno" in capsys.readouterr().out

    def test_timeout_reported(self, scenario, capsys):
        pipeline = FakePipeline(timeout_units={"sketch.ino"})

        report, _ = _run(scenario, pipeline)

        assert all(o.status is ProbeStatus.TIMED_OUT for o in report.processed)
        assert "but timed out on" in capsys.readouterr().out
        assert _cache(scenario) == {"A": True, "B": True}

    def test_symlink_loop_in_library_does_not_stop_run(self, workspace, make_config):
        libs = workspace["libraries"]
        loop = make_library(libs, "Loop", headers={"src/Loop.h": ""})
        (loop / "src" / "again").symlink_to(loop / "src", target_is_directory=True)
        make_library(libs, "Solid", headers={"Solid.h": ""})
        config = make_config()
        write_catalog(workspace["root"] / "library_index.json", [catalog_entry("Loop"), catalog_entry("Solid")])

        report, pipeline = _run(config)

        assert len(report.processed) == 2
        assert '#include "Loop.h"' in pipeline.calls[0]["source"]
        catalog = _catalog(config)
        assert catalog["Loop"]["requires"] == []
        assert catalog["Solid"]["requires"] == []
        assert _cache(config) == {"Loop": True, "Solid": True}


class TestExamplesPass:
    """The optional example expansion."""

    def test_examples_add_dependencies(self, workspace, make_config, capsys):
        libs = workspace["libraries"]
        make_library(libs, "Dep", headers={"Dep.h": ""})
        make_library(libs, "Top", headers={"Top.h": ""}, examples={
            "Use/Use.ino": '#include "Top.h"\n#include "Dep.h"\n',
            "Bad/Bad.ino": '#include "Nope.h"\n',
        })
        config = make_config(examples=True)
        write_catalog(workspace["root"] / "library_index.json", [catalog_entry("Top")])

        report, _ = _run(config)

        assert _catalog(config)["Top"]["requires"] == ["Dep"]
        assert report.processed[0].examples.failed_count == 1
        out = capsys.readouterr().out
        assert "Examples for Top depends on: ['Dep']" in out
        assert "but 1 failed to compile on arduino:avr:uno" in out

    def test_examples_off_by_default(self, workspace, make_config):
        libs = workspace["libraries"]
        make_library(libs, "Dep", headers={"Dep.h": ""})
        make_library(libs, "Top", headers={"Top.h": ""}, examples={"Use/Use.ino": '#include "Dep.h"\n'})
        config = make_config()
        write_catalog(workspace["root"] / "library_index.json", [catalog_entry("Top")])

        _, pipeline = _run(config)

        assert len(pipeline.calls) == 1
        assert _catalog(config)["Top"]["requires"] == []


class TestAccumulationModes:
    """Isolation of discovered dependencies between libraries."""

    def _setup(self, workspace, make_config, **overrides):
        libs = workspace["libraries"]
        make_library(libs, "Dep", headers={"Dep.h": ""})
        make_library(libs, "X", headers={"X.h": '#include "Dep.h"\n'})
        make_library(libs, "Y", headers={"Y.h": ""})
        config = make_config(**overrides)
        write_catalog(workspace["root"] / "library_index.json", [catalog_entry("X"), catalog_entry("Y")])
        return config

    def test_per_library_isolated(self, workspace, make_config):
        config = self._setup(workspace, make_config)
        _run(config)
        assert _catalog(config)["Y"]["requires"] == []

    def test_session_carries_known_dependencies(self, workspace, make_config):
        config = self._setup(workspace, make_config, accumulation="session")
        _run(config)
        assert _catalog(config)["Y"]["requires"] == ["X", "Dep"]

    def test_session_carries_example_dependencies(self, workspace, make_config):
        libs = workspace["libraries"]
        make_library(libs, "Dep", headers={"Dep.h": ""})
        make_library(libs, "X", headers={"X.h": ""}, examples={"Use/Use.ino": '#include "X.h"\n#include "Dep.h"\n'})
        make_library(libs, "Y", headers={"Y.h": ""})
        config = make_config(accumulation="session", examples=True)
        write_catalog(workspace["root"] / "library_index.json", [catalog_entry("X"), catalog_entry("Y")])

        _run(config)

        catalog = _catalog(config)
        assert catalog["X"]["requires"] == ["Dep"]
        assert catalog["Y"]["requires"] == ["X", "Dep"]


class TestLocalDependencies:
    """Core and built-in dependencies."""

    def _setup(self, workspace, make_config, **overrides):
        make_library(workspace["builtin"], "SPI", headers={"src/SPI.h": ""})
        make_library(workspace["libraries"], "Radio", headers={"Radio.h": '#include "SPI.h"\n'})
        config = make_config(**overrides)
        write_catalog(workspace["root"] / "library_index.json", [catalog_entry("Radio")])
        return config

    def test_not_persisted_by_default(self, workspace, make_config, capsys):
        config = self._setup(workspace, make_config)
        _run(config)

        entry = _catalog(config)["Radio"]
        assert entry["requires"] == []
        assert "providedByCore" not in entry
        assert "and ['SPI'] provided by cores or builtin" in capsys.readouterr().out

    def test_persisted_when_enabled(self, workspace, make_config):
        config = self._setup(workspace, make_config, record_local_dependencies=True)
        _run(config)

        assert _catalog(config)["Radio"]["providedByCore"] == ["SPI"]


class InterruptingPipeline(FakePipeline):
    """Fires the watcher while the given library is being probed."""

    def __init__(self, watcher, exit_fn, when_including):
        super().__init__()
        self.watcher = watcher
        self.exit_fn = exit_fn
        self.when_including = when_including

    def run(self, unit, profile, context, workdir, timeout=None):
        if f'#include "{self.when_including}"' in unit.read_text():
            self.watcher.trigger()
            assert self.exit_fn.called.wait(timeout=5)
        return super().run(unit, profile, context, workdir, timeout)


class TestInterrupt:
    """Interrupting a run mid-library."""

    def test_flush_keeps_only_finalized_records(self, scenario):
        exit_fn = RecordingExit()
        watcher = _quiet_watcher(scenario, exit_fn)
        pipeline = InterruptingPipeline(watcher, exit_fn, when_including="B.h")

        execute(scenario, pipeline=pipeline, watcher=watcher)

        assert exit_fn.codes == [2]
        catalog = _catalog(scenario)
        assert catalog["A"]["requires"] == []
        assert "requires" not in catalog["B"]
        assert catalog["B"]["checksum"] == "SHA-256:00"

    def test_interrupt_before_first_library_writes_original(self, scenario):
        exit_fn = RecordingExit()
        watcher = _quiet_watcher(scenario, exit_fn)
        pipeline = InterruptingPipeline(watcher, exit_fn, when_including="A.h")
        before = json.loads(open(scenario.catalog).read())

        execute(scenario, pipeline=pipeline, watcher=watcher)

        assert json.loads(open(scenario.catalog).read()) == before


class SignalledBuildPipeline(FakePipeline):
    """A build that dies with the terminal's interrupt, as a child process would."""

    def __init__(self, watcher, when_including):
        super().__init__()
        self.watcher = watcher
        self.when_including = when_including

    def run(self, unit, profile, context, workdir, timeout=None):
        result = super().run(unit, profile, context, workdir, timeout)
        if f'#include "{self.when_including}"' not in unit.read_text():
            return result
        self.watcher.trigger()
        return PipelineResult(
            status=ProbeStatus.FAILED,
            imported_libraries=result.imported_libraries,
            error="interrupted",
        )


class TestInterruptedBuild:
    """A build failing because of the interrupt itself."""

    def test_interrupted_library_not_finalized(self, scenario):
        exit_fn = RecordingExit()
        watcher = _quiet_watcher(scenario, exit_fn)
        pipeline = SignalledBuildPipeline(watcher, when_including="B.h")

        report = execute(scenario, pipeline=pipeline, watcher=watcher)

        assert exit_fn.codes == [2]
        assert [o.name for o in report.processed] == ["A"]
        catalog = _catalog(scenario)
        assert catalog["A"]["requires"] == []
        assert "requires" not in catalog["B"]
        assert not os.path.exists(scenario.cache)

    def test_later_libraries_not_probed(self, scenario):
        watcher = _quiet_watcher(scenario)
        pipeline = SignalledBuildPipeline(watcher, when_including="A.h")

        execute(scenario, pipeline=pipeline, watcher=watcher)

        assert len(pipeline.calls) == 1
