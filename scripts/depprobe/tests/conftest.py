"""Shared fixtures for depprobe tests."""

import json
import re
from pathlib import Path
from typing import Optional

import pytest

from scripts.depprobe.config import ProbeConfig
from scripts.depprobe.libraries import LibraryIndex, find_files_in_folder, scan_libraries
from scripts.depprobe.pipeline import (
    BuildPipeline,
    ImportedLibrary,
    PipelineResult,
    ProbeStatus,
    SearchContext,
)

_INCLUDE = re.compile(r'^\s*#include\s*[<"]([^>"]+)[>"]', re.MULTILINE)


class FakePipeline(BuildPipeline):
    """In-process stand-in for the toolchain.

    Follows ``#include`` lines through the library folders in the search
    context. A header is resolved to the library whose name (alias or folder
    name) equals the header stem, otherwise to the first library that ships
    a file with that name, which is how the real builder picks.
    """

    def __init__(self, fail_units: Optional[set] = None, timeout_units: Optional[set] = None):
        self.fail_units = fail_units or set()
        self.timeout_units = timeout_units or set()
        self.calls: list[dict] = []

    def run(self, unit, profile, context: SearchContext, workdir, timeout=None) -> PipelineResult:
        source = Path(unit).read_text()
        call = {
            "unit": Path(unit),
            "source": source,
            "profile": profile,
            "aliases": dict(context.aliases),
            "build_cache": context.build_cache,
            "workdir": Path(workdir),
            "workdir_existed": Path(workdir).is_dir(),
            "resolved": {},
        }
        self.calls.append(call)

        libraries = scan_libraries([*context.libraries, *context.built_in_libraries])
        index = LibraryIndex(libraries)
        headers = {lib.folder: find_files_in_folder(lib.folder, [".h"]) for lib in libraries}

        def resolve(header_name: str) -> Optional[Path]:
            stem = Path(header_name).stem
            if stem in context.aliases:
                return Path(context.aliases[stem])
            for lib in libraries:
                if lib.folder.name == stem:
                    return lib.folder
            for lib in libraries:
                if any(h.name == header_name for h in headers[lib.folder]):
                    return lib.folder
            return None

        imported: list[ImportedLibrary] = []
        pending = _INCLUDE.findall(source)
        seen: set = set()
        missing = []
        while pending:
            header_name = pending.pop(0)
            if header_name in seen:
                continue
            seen.add(header_name)
            folder = resolve(header_name)
            if folder is None:
                missing.append(header_name)
                continue
            call["resolved"][header_name] = folder
            folder = folder.resolve()
            if all(lib.folder != folder for lib in imported):
                imported.append(ImportedLibrary(name=index.canonical_name(folder, folder.name), folder=folder))
            for header in find_files_in_folder(folder, [".h"]):
                if header.name == header_name:
                    pending.extend(_INCLUDE.findall(header.read_text()))
                    break

        if Path(unit).name in self.timeout_units:
            return PipelineResult(status=ProbeStatus.TIMED_OUT, imported_libraries=imported, error="Timeout after 1s")
        if missing or Path(unit).name in self.fail_units:
            error = f"{missing[0]}: No such file or directory" if missing else "compilation failed"
            return PipelineResult(status=ProbeStatus.FAILED, imported_libraries=imported, error=error)
        return PipelineResult(status=ProbeStatus.SUCCEEDED, imported_libraries=imported)


def make_library(
    root: Path,
    folder: str,
    name: Optional[str] = None,
    version: str = "1.0.0",
    architectures: Optional[str] = None,
    headers: Optional[dict] = None,
    examples: Optional[dict] = None,
    properties: bool = True,
) -> Path:
    """Create a library folder with library.properties, headers and examples."""
    lib_dir = root / folder
    lib_dir.mkdir(parents=True)
    if properties:
        lines = [f"name={name or folder}", f"version={version}"]
        if architectures is not None:
            lines.append(f"architectures={architectures}")
        (lib_dir / "library.properties").write_text("\n".join(lines) + "\n")
    for rel_path, content in (headers or {}).items():
        path = lib_dir / rel_path
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
    for rel_path, content in (examples or {}).items():
        path = lib_dir / "examples" / rel_path
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
    return lib_dir


def write_catalog(path: Path, entries: list[dict]) -> Path:
    path.write_text(json.dumps({"libraries": entries}, indent=4))
    return path


def catalog_entry(name: str, version: str = "1.0.0", **extra) -> dict:
    entry = {
        "name": name,
        "version": version,
        "author": "Someone",
        "maintainer": "Someone",
        "sentence": f"The {name} library",
        "url": f"https://downloads.example.com/{name}-{version}.zip",
        "archiveFileName": f"{name}-{version}.zip",
        "size": 1234,
        "checksum": "SHA-256:00",
    }
    entry.update(extra)
    return entry


@pytest.fixture
def fake_pipeline():
    return FakePipeline()


@pytest.fixture
def workspace(tmp_path):
    """Folders for a run: hardware, tools, built-in and other libraries."""
    dirs = {
        "hardware": tmp_path / "hardware",
        "tools": tmp_path / "tools",
        "builtin": tmp_path / "builtin",
        "libraries": tmp_path / "libraries",
    }
    for d in dirs.values():
        d.mkdir()
    dirs["root"] = tmp_path
    return dirs


@pytest.fixture
def make_config(workspace):
    def _make(**overrides) -> ProbeConfig:
        values = dict(
            catalog=str(workspace["root"] / "library_index.json"),
            cache=str(workspace["root"] / "cached_results.json"),
            hardware=[str(workspace["hardware"])],
            tools=[str(workspace["tools"])],
            built_in_libraries=[str(workspace["builtin"])],
            libraries=[str(workspace["libraries"])],
        )
        values.update(overrides)
        return ProbeConfig(**values)

    return _make
