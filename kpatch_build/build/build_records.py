#!/usr/bin/env python3
"""
Index of the build command records left behind by a kernel build.

Kbuild writes one ``.<target>.cmd`` file next to every target it builds.
The record holds the command that produced the target plus dependency
metadata; the link commands are what tie an object to its parent.
"""

import os
import re
import logging
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Dict, List

RECORD_SUFFIX = ".cmd"

# Records of module metadata list every object of a module without linking it
METADATA_RECORD_SUFFIXES = (".mod.cmd",)

METADATA_PREFIXES = ("deps_", "source_")


@lru_cache(maxsize=None)
def reference_pattern(target: str) -> "re.Pattern":
    """Pattern matching a tree-relative target as a whole path, with or without a leading ./"""
    return re.compile(r'(?<![\w./-])(?:\./)?' + re.escape(target) + r'(?![\w./-])')


@dataclass(frozen=True)
class BuildRecord:
    """One build command record"""
    object_path: str
    directory: str
    text: str
    link_text: str = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "link_text", "\n".join(self.link_lines()))

    @property
    def record_name(self) -> str:
        name = Path(self.object_path).name
        return str(Path(self.directory) / f".{name}{RECORD_SUFFIX}")

    @property
    def is_metadata(self) -> bool:
        return self.record_name.endswith(METADATA_RECORD_SUFFIXES)

    def link_lines(self) -> List[str]:
        """Lines of the record, without the dependency metadata blocks"""
        lines = []
        in_metadata = False

        for line in self.text.splitlines():
            stripped = line.strip()
            if in_metadata:
                in_metadata = stripped.endswith("\\")
                continue
            if stripped.startswith(METADATA_PREFIXES):
                in_metadata = stripped.endswith("\\")
                continue
            lines.append(line)

        return lines

    def references(self, target: str) -> bool:
        """Check whether the record's commands mention a tree-relative target"""
        return reference_pattern(target).search(self.link_text) is not None


def object_path_for_record(record_path: str) -> str:
    """Map ``dir/.foo.o.cmd`` to ``dir/foo.o``"""
    path = Path(record_path)
    name = path.name[1:-len(RECORD_SUFFIX)]
    return str(path.parent / name) if str(path.parent) != "." else name


class BuildRecordStore:
    """
    Read-only, per-directory index of build records under a build tree.
    """

    def __init__(self, root: str):
        """
        Initialize the record store.

        Args:
            root: Root of the kernel build tree
        """
        self.root = Path(root)
        self.logger = logging.getLogger(__name__)
        self._by_directory: Dict[str, List[BuildRecord]] = {}

    def exists(self, relative_path: str) -> bool:
        return (self.root / relative_path).exists()

    def records_in(self, directory: str) -> List[BuildRecord]:
        """
        Get the records of one directory, in lexical order of record name.

        Args:
            directory: Tree-relative directory ("" or "." for the root)

        Returns:
            List of BuildRecord objects
        """
        key = self._normalize(directory)
        if key not in self._by_directory:
            self._by_directory[key] = self._load_directory(key)
        return self._by_directory[key]

    def all_records(self) -> List[BuildRecord]:
        """Get every record in the tree, skipping hidden directories"""
        records = []

        for dirpath, dirnames, filenames in os.walk(self.root):
            dirnames[:] = sorted(d for d in dirnames if not d.startswith("."))
            relative = os.path.relpath(dirpath, self.root)
            if any(name.startswith(".") and name.endswith(RECORD_SUFFIX) for name in filenames):
                records.extend(self.records_in(relative))

        return records

    def _normalize(self, directory: str) -> str:
        directory = str(directory).strip("/")
        return "" if directory in ("", ".") else os.path.normpath(directory)

    def _load_directory(self, directory: str) -> List[BuildRecord]:
        dir_path = self.root / directory
        if not dir_path.is_dir():
            return []

        records = []
        for entry in sorted(dir_path.iterdir()):
            name = entry.name
            if not (name.startswith(".") and name.endswith(RECORD_SUFFIX)) or not entry.is_file():
                continue

            relative_record = f"{directory}/{name}" if directory else name
            try:
                text = entry.read_text(errors="replace")
            except OSError as e:
                self.logger.warning(f"Could not read build record {relative_record}: {e}")
                continue

            records.append(BuildRecord(
                object_path=object_path_for_record(relative_record),
                directory=directory,
                text=text
            ))

        self.logger.debug(f"Indexed {len(records)} build records in {directory or '.'}")
        return records
