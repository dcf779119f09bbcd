#!/usr/bin/env python3
"""
Provenance resolution for changed kernel objects.

Walks the build records upwards from a compiled object until it reaches
the binary that finally links it: the kernel image or a loadable module.
"""

import fnmatch
import logging
import os
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from kpatch_build.build.build_records import BuildRecord, BuildRecordStore
from kpatch_build.context import RunContext
from kpatch_build.errors import NoOwnerError

VMLINUX = "vmlinux"

MODULE_SUFFIXES = (".ko",)

# Aggregation points linked straight into the kernel image without a
# record that names them
VMLINUX_AGGREGATES = [
    "*/built-in.o",
    "*/built-in.a",
    "arch/x86/lib/lib.a",
    "arch/x86/kernel/head*.o",
    "arch/x86/kernel/ebda.o",
    "arch/x86/kernel/platform-quirks.o",
    "lib/lib.a",
]


@dataclass(frozen=True)
class ProvenanceEdge:
    """Link from an object to the target whose record references it"""
    child: str
    parent: str
    match_count: int
    deep_search: bool = False
    # Found through a cached directory hint; match_count covers only the hint directory
    hinted: bool = False

    @property
    def ambiguous(self) -> bool:
        return self.match_count > 1


@dataclass
class OwnershipChain:
    """Edges from a changed object up to its terminal binary"""
    object_path: str
    edges: List[ProvenanceEdge] = field(default_factory=list)
    terminal: str = ""

    @property
    def ambiguous(self) -> bool:
        return any(edge.ambiguous for edge in self.edges)

    @property
    def ambiguity(self) -> Optional[str]:
        for edge in self.edges:
            if edge.ambiguous:
                return f"{edge.child} has {edge.match_count} candidate parents"
        return None

    @property
    def unverified(self) -> bool:
        return any(edge.hinted for edge in self.edges)

    @property
    def is_vmlinux(self) -> bool:
        return os.path.basename(self.terminal) == VMLINUX

    @property
    def owner_name(self) -> str:
        """Logical name of the owning binary, as the diff engine expects it"""
        if self.is_vmlinux:
            return VMLINUX
        name = os.path.basename(self.terminal)
        for suffix in MODULE_SUFFIXES:
            if name.endswith(suffix):
                name = name[:-len(suffix)]
        return name.replace("-", "_")


class ProvenanceResolver:
    """
    Maps compiled objects to the terminal binary that links them.
    """

    def __init__(self, store: BuildRecordStore, context: RunContext):
        """
        Initialize the resolver.

        Args:
            store: Build records of the build tree
            context: Run context holding the deep search hints
        """
        self.store = store
        self.context = context
        self.logger = logging.getLogger(__name__)

    def resolve(self, object_path: str) -> OwnershipChain:
        """
        Resolve the ownership chain of an object.

        Args:
            object_path: Tree-relative path of the compiled object

        Returns:
            OwnershipChain ending at the terminal binary

        Raises:
            NoOwnerError: if the walk cannot reach a terminal binary
        """
        object_path = os.path.normpath(object_path)
        chain = OwnershipChain(object_path=object_path)
        current = object_path
        visited = {current}
        deep = False

        while True:
            # Modules and the kernel image are never linked into anything else
            if self._is_terminal(current):
                chain.terminal = current
                break

            edge = self._find_parent(current, deep)

            if edge is None:
                if self._is_vmlinux_aggregate(current):
                    chain.terminal = VMLINUX
                    break
                if not deep:
                    deep = True
                    continue
                raise NoOwnerError(object_path, f"invalid ancestor {current} for {object_path}")

            deep = False
            if edge.ambiguous:
                self.logger.warning(f"Ambiguous parent for {edge.child}: {edge.match_count} matches, using {edge.parent}")

            if edge.parent in visited:
                raise NoOwnerError(object_path, f"build record cycle at {edge.parent} for {object_path}")
            if not self.store.exists(edge.parent):
                raise NoOwnerError(object_path, f"can't find parent {edge.parent} for {current}")

            chain.edges.append(edge)
            visited.add(edge.parent)
            current = edge.parent

        self.logger.debug(f"{object_path} is owned by {chain.terminal} ({len(chain.edges)} link records)")
        return chain

    def verify(self, chain: OwnershipChain) -> OwnershipChain:
        """
        Recount the candidate parents of every hint-resolved edge over the
        whole tree, so an object with a second parent outside the hint
        directory is reported ambiguous.

        Args:
            chain: Chain returned by resolve()

        Returns:
            The chain, with its hinted edges replaced by verified ones
        """
        edges = []

        for edge in chain.edges:
            if edge.hinted:
                self.context.full_tree_scans += 1
                matches = self._matching_records(self.store.all_records(), edge.child)
                edge = ProvenanceEdge(
                    child=edge.child,
                    parent=edge.parent,
                    match_count=max(len(matches), 1),
                    deep_search=True
                )
                if edge.ambiguous:
                    self.logger.warning(f"Ambiguous parent for {edge.child}: {edge.match_count} matches, using {edge.parent}")
            edges.append(edge)

        chain.edges = edges
        return chain

    def _find_parent(self, current: str, deep: bool) -> Optional[ProvenanceEdge]:
        hinted = False
        if not deep:
            matches = self._matching_records(self.store.records_in(os.path.dirname(current)), current)
        else:
            matches, hinted = self._deep_search(current)

        if not matches:
            return None

        return ProvenanceEdge(
            child=current,
            parent=matches[0].object_path,
            match_count=len(matches),
            deep_search=deep,
            hinted=hinted
        )

    def _deep_search(self, current: str) -> Tuple[List[BuildRecord], bool]:
        origin = os.path.dirname(current)
        hint = self.context.deep_search_hints.get(origin)

        if hint is not None:
            matches = self._matching_records(self.store.records_in(hint), current)
            if len(matches) == 1:
                self.context.hint_hits += 1
                self.logger.debug(f"Resolved {current} through cached hint {hint or '.'}")
                return matches, True
            self.logger.debug(f"Dropping search hint {hint or '.'} for {origin or '.'}")
            del self.context.deep_search_hints[origin]

        self.logger.info(f"Searching the whole tree for the parent of {current}")
        self.context.full_tree_scans += 1
        matches = self._matching_records(self.store.all_records(), current)

        if len(matches) == 1:
            self.context.deep_search_hints[origin] = matches[0].directory

        return matches, False

    def _matching_records(self, records: List[BuildRecord], current: str) -> List[BuildRecord]:
        return sorted(
            (record for record in records
             if record.object_path != current
             and not record.is_metadata
             and record.references(current)),
            key=lambda record: record.record_name
        )

    def _is_vmlinux_aggregate(self, path: str) -> bool:
        return any(fnmatch.fnmatch(path, pattern) for pattern in VMLINUX_AGGREGATES)

    def _is_terminal(self, path: str) -> bool:
        return path == VMLINUX or path.endswith(MODULE_SUFFIXES)
