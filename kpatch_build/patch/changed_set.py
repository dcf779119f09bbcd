#!/usr/bin/env python3
"""
Changed object extraction for patch module generation.

This module turns the changed-object list recorded by the patched build
into the set of diffed fragments the patch module is assembled from.
"""

import fnmatch
import logging
import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional

from kpatch_build.build.provenance import OwnershipChain, ProvenanceResolver
from kpatch_build.config.build_config import PatchBuildConfig
from kpatch_build.context import RunContext
from kpatch_build.patch.diff_engine import DiffEngine, DiffOutcome
from kpatch_build.utils.file_utils import read_file_lines

# Build system artefacts that never carry patchable code
IGNORED_OBJECTS = [
    "*.mod.o",
    "*built-in.o",
    "*built-in.a",
    "vmlinux.o",
    ".tmp_kallsyms1.o",
    ".tmp_kallsyms2.o",
    "init/version.o",
    "arch/x86/boot/version.o",
    "arch/x86/boot/compressed/eboot.o",
    "arch/x86/boot/header.o",
    "arch/x86/boot/compressed/efi_stub_64.o",
    "arch/x86/boot/compressed/piggy.o",
    "kernel/system_certificates.o",
    "arch/x86/vdso/*",
    "arch/x86/entry/vdso/*",
    "drivers/firmware/efi/libstub/*",
    "arch/powerpc/kernel/prom_init.o",
    "arch/powerpc/kernel/vdso64/*",
    "lib/*",
    ".*.o",
    "*/.lib_exports.o",
]

# Objects the diff tool cannot handle; copied through unmodified
PASSTHROUGH_OBJECTS = [
    "arch/x86/lib/copy_user_64.o",
    "usr/initramfs_data.o",
]


@dataclass
class ChangedObject:
    """An object recompiled by the patched build"""
    path: str
    chain: Optional[OwnershipChain] = None
    outcome: Optional[DiffOutcome] = None
    fragment: Optional[str] = None
    message: str = ""

    @property
    def terminal(self) -> Optional[str]:
        return self.chain.terminal if self.chain else None

    @property
    def passthrough(self) -> bool:
        return any(fnmatch.fnmatch(self.path, pattern) for pattern in PASSTHROUGH_OBJECTS)


def is_ignored(object_path: str) -> bool:
    return any(fnmatch.fnmatch(object_path, pattern) for pattern in IGNORED_OBJECTS)


class ChangedSetExtractor:
    """
    Builds the work list of changed objects and collects their diff outcomes.
    """

    def __init__(self, config: PatchBuildConfig, context: RunContext, diff_engine: DiffEngine,
                 binary_locator: Callable[[str], Path]):
        """
        Initialize the extractor.

        Args:
            config: Build configuration
            context: Run context receiving the error and change tallies
            diff_engine: Adapter for the differencing tool
            binary_locator: Maps a terminal binary to its original build
        """
        self.config = config
        self.layout = config.layout
        self.context = context
        self.diff_engine = diff_engine
        self.binary_locator = binary_locator
        self.logger = logging.getLogger(__name__)
        self.resolver: Optional[ProvenanceResolver] = None

    def load_work_list(self, list_path: str) -> List[ChangedObject]:
        """
        Read the changed-object list.

        Args:
            list_path: Newline-delimited list of tree-relative object paths

        Returns:
            ChangedObject entries in list order, without duplicates and
            without build system artefacts
        """
        seen = set()
        work_list = []

        for line in read_file_lines(list_path):
            if not line:
                continue
            path = os.path.normpath(line)
            if path in seen:
                continue
            seen.add(path)

            if is_ignored(path):
                self.logger.debug(f"Ignoring build artefact {path}")
                continue
            work_list.append(ChangedObject(path=path))

        self.logger.info(f"{len(work_list)} changed objects to examine")
        return work_list

    def resolve_owners(self, work_list: List[ChangedObject], resolver: ProvenanceResolver):
        """Attach an ownership chain to every object that will be diffed"""
        self.resolver = resolver
        for changed in work_list:
            if changed.passthrough:
                continue
            changed.chain = resolver.resolve(changed.path)

    def diff_objects(self, work_list: List[ChangedObject]) -> List[ChangedObject]:
        """
        Produce a fragment for every object of the work list.

        Returns:
            The work list with outcomes filled in
        """
        for changed in work_list:
            if changed.passthrough:
                self._copy_through(changed, DiffOutcome.SKIPPED)
                self.logger.debug(f"Passing {changed.path} through uncompared")
            elif not (self.layout.orig_dir / changed.path).exists():
                self._copy_through(changed, DiffOutcome.NEW)
                self.context.patched_owners.add(changed.terminal)
                self.logger.info(f"New object {changed.path} in {changed.terminal}")
            else:
                self.record(changed, self._diff(changed))

        self.logger.info(f"{self.context.changed_count} changed, {self.context.error_count} error(s)")
        return work_list

    def record(self, changed: ChangedObject, outcome: DiffOutcome):
        """Record the diff outcome of an object in the run tallies"""
        changed.outcome = outcome

        if outcome == DiffOutcome.CHANGED:
            # Provenance of a changed object must be unambiguous tree-wide
            if changed.chain and changed.chain.unverified and self.resolver:
                self.resolver.verify(changed.chain)
            self.context.changed_count += 1
            self.context.patched_owners.add(changed.terminal)
            changed.fragment = str(self.layout.output_dir / changed.path)
        elif outcome == DiffOutcome.ERROR:
            self.context.error_count += 1

    def _diff(self, changed: ChangedObject) -> DiffOutcome:
        chain = changed.chain
        symvers = self.layout.pre_symvers
        if not symvers.exists():
            symvers = self.config.symvers_path
        symtab = self.layout.root / "symtab" / f"{chain.owner_name}.symtab"

        if not symtab.exists():
            if not self.diff_engine.dump_symtab(str(self.binary_locator(chain.terminal)), str(symtab)):
                changed.message = f"no symbol table for {chain.terminal}"
                return DiffOutcome.ERROR

        outcome = self.diff_engine.diff(
            original=str(self.layout.orig_dir / changed.path),
            patched=str(self.layout.patched_dir / changed.path),
            owner_name=chain.owner_name,
            symtab=str(symtab),
            symvers=str(symvers),
            module_name=self.config.module_name(),
            output=str(self.layout.output_dir / changed.path)
        )
        self.logger.debug(f"{changed.path}: {outcome.value}")
        return outcome

    def _copy_through(self, changed: ChangedObject, outcome: DiffOutcome):
        target = self.layout.output_dir / changed.path
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(self.layout.patched_dir / changed.path, target)
        changed.outcome = outcome
        changed.fragment = str(target)
