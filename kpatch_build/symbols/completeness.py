#!/usr/bin/env python3
"""
Completeness check of the final patch module.

Every symbol the module references without defining it has to be provided
by the kernel it is loaded into, or by the runtime support module in
core-module mode.
"""

import logging
import struct
from pathlib import Path
from typing import Iterable, Set

from kpatch_build.errors import AssemblyError, UnresolvedSymbolError
from kpatch_build.symbols.symvers import SymbolVersionLedger
from kpatch_build.utils.command_runner import CommandRunner

# Provided by the core runtime module
CORE_SUPPORT_SYMBOLS = frozenset([
    "kpatch_shadow_free",
    "kpatch_shadow_alloc",
    "kpatch_register",
    "kpatch_shadow_get",
    "kpatch_unregister",
    "kpatch_root_kobj",
])

ELF_MAGIC = b'\x7fELF'
ET_REL = 1

DEFINED_TYPES = ("FUNC", "OBJECT")
DEFINED_BINDINGS = ("GLOBAL", "WEAK")


class CompletenessValidator:
    """Validates that nothing the patch module references is left unresolved"""

    def __init__(self, runner: CommandRunner, kernel_ledger: SymbolVersionLedger,
                 core_module_mode: bool = False):
        """
        Initialize the validator.

        Args:
            runner: Runner for the object inspection tools
            kernel_ledger: Exported symbols of the target kernel and its modules
            core_module_mode: Whether the runtime support module provides symbols
        """
        self.runner = runner
        self.kernel_ledger = kernel_ledger
        self.core_module_mode = core_module_mode
        self.logger = logging.getLogger(__name__)

    def verify_relocatable(self, module_path: str):
        """Check that the artifact is an ELF relocatable object"""
        with open(module_path, 'rb') as f:
            header = f.read(64)

        if len(header) < 18 or header[:4] != ELF_MAGIC:
            raise AssemblyError(f"Not an ELF object: {module_path}")

        ei_data = header[5]
        e_type = struct.unpack('<H' if ei_data == 1 else '>H', header[16:18])[0]
        if e_type != ET_REL:
            raise AssemblyError(f"{module_path} is not relocatable (ELF type {e_type})")

    def undefined_symbols(self, module_path: str) -> Set[str]:
        """Symbols the module references but does not define"""
        result = self.runner.run(["nm", "-u", str(module_path)])
        if not result.success:
            raise AssemblyError(f"nm failed on {module_path}: {result.stderr.strip()}")

        symbols = set()
        for line in result.stdout.splitlines():
            parts = line.split()
            if parts:
                symbols.add(parts[-1])
        return symbols

    def defined_symbols(self, module_path: str) -> Set[str]:
        """Global functions and objects the module defines"""
        result = self.runner.run(["readelf", "--wide", "--symbols", str(module_path)])
        if not result.success:
            raise AssemblyError(f"readelf failed on {module_path}: {result.stderr.strip()}")

        symbols = set()
        for line in result.stdout.splitlines():
            # Num: Value Size Type Bind Vis Ndx Name
            parts = line.split()
            if len(parts) < 8 or not parts[0].endswith(":"):
                continue
            if parts[3] in DEFINED_TYPES and parts[4] in DEFINED_BINDINGS and parts[6] != "UND":
                symbols.add(parts[7])
        return symbols

    def provided_symbols(self, module_defined: Iterable[str]) -> Set[str]:
        provided = set(self.kernel_ledger.names()) | set(module_defined)
        if self.core_module_mode:
            provided |= CORE_SUPPORT_SYMBOLS
        return provided

    def check(self, undefined: Iterable[str], module_defined: Iterable[str] = ()) -> Set[str]:
        """
        Check undefined references against everything that provides symbols.

        Returns:
            The resolved references

        Raises:
            UnresolvedSymbolError: if any reference is not provided
        """
        undefined = set(undefined)
        unresolved = undefined - self.provided_symbols(module_defined)
        if unresolved:
            raise UnresolvedSymbolError(unresolved)
        return undefined

    def validate(self, module_path: str) -> Set[str]:
        """Run every completeness check on the final module"""
        module_path = str(Path(module_path))
        self.verify_relocatable(module_path)

        undefined = self.undefined_symbols(module_path)
        resolved = self.check(undefined, self.defined_symbols(module_path))

        self.logger.info(f"All {len(resolved)} external references of {Path(module_path).name} are resolvable")
        return resolved
