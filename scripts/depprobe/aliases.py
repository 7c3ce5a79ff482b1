"""Bridging library folder names and canonical library names.

Header lookup finds a library by the name it is installed under. When a
folder is called ``mylib-2.0.0`` but the library is ``MyLib`` the lookup
misses, so each probe carries a canonical-name -> folder mapping for the
library under test.
"""

from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from dataclasses import replace
from pathlib import Path
from typing import TYPE_CHECKING, Iterator, Optional

from scripts.depprobe.libraries import LibraryRecord

if TYPE_CHECKING:
    from scripts.depprobe.pipeline import SearchContext

logger = logging.getLogger(__name__)


@contextmanager
def library_alias(context: "SearchContext", library: LibraryRecord) -> Iterator["SearchContext"]:
    """Yield a search context that maps the library's canonical name to its folder.

    The caller's context is never modified, so the alias is gone as soon as
    the block exits, however it exits.
    """
    if not library.needs_alias:
        yield context
        return

    logger.info("Aliasing %s to %s", library.folder, library.name)
    aliases = dict(context.aliases)
    aliases[library.name] = library.folder
    yield replace(context, aliases=aliases)


def materialize_aliases(aliases: dict[str, Path], staging_root: Path) -> Optional[Path]:
    """Create a libraries folder holding one symlink per alias.

    ``staging_root`` must live in scratch space owned by the current probe.
    Failures are logged and that alias is skipped: header discovery may then
    undercount for that library, but the probe still runs.

    Returns:
        The staging folder, or None when no alias could be created.
    """
    if not aliases:
        return None

    created = 0
    try:
        staging_root.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        logger.warning("Cannot create alias folder %s: %s", staging_root, e)
        return None

    for name, folder in aliases.items():
        link = staging_root / name
        try:
            os.symlink(folder, link, target_is_directory=True)
            created += 1
        except OSError as e:
            logger.warning("Cannot alias %s to %s, continuing without it: %s", folder, name, e)

    return staging_root if created else None
