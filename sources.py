"""Source catalog: the ordered list of input files."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from pathlib import Path

from models import SourceFile

LOGGER = logging.getLogger(__name__)


class SourceCatalog:
    """Input files in the order they were named on the command line."""

    def __init__(self) -> None:
        self._files: list[SourceFile] = []

    def __iter__(self) -> Iterator[SourceFile]:
        return iter(self._files)

    def __len__(self) -> int:
        return len(self._files)

    def add_file(self, path: str) -> SourceFile:
        if not path:
            raise ValueError("No file name specified")
        source = SourceFile(path)
        self._files.append(source)
        return source

    def add_list_file(self, list_path: str) -> int:
        """Add every file named in ``list_path``, one path per line.

        Blank lines and lines starting with ``#`` are ignored. Returns the
        number of files added.
        """
        LOGGER.info("Reading list file '%s'", list_path)
        try:
            lines = Path(list_path).read_text(encoding="utf-8").splitlines()
        except OSError as exc:
            raise RuntimeError(f"Cannot open list file {list_path}: {exc.strerror or exc}") from exc

        added = 0
        for line in lines:
            entry = line.rstrip("\r")
            if not entry or entry.startswith("#"):
                continue
            LOGGER.debug("Adding '%s' from list file", entry)
            self.add_file(entry)
            added += 1
        return added

    def add_argument(self, argument: str) -> None:
        """Add a positional argument: a file, or ``@listfile``."""
        if argument.startswith("@"):
            self.add_list_file(argument[1:])
        else:
            self.add_file(argument)

    def close_all(self) -> None:
        for source in self._files:
            source.close()
