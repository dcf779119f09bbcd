#!/usr/bin/env python3
"""
Symbol version ledger (Module.symvers) parsing and comparison.

Each ledger line carries a symbol's version checksum, its name, the module
that exports it and the export kind, optionally followed by the symbol
namespace.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterator, List, Mapping, Optional

from kpatch_build.errors import LedgerParseError, VersionConflictError
from kpatch_build.utils.command_runner import CommandRunner

MIN_FIELDS = 4

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SymbolVersionEntry:
    """One exported symbol of a ledger"""
    name: str
    checksum: str
    module: str
    export_kind: str
    namespace: str = ""


@dataclass
class VersionWarning:
    """Version drift of a symbol between two ledgers"""
    symbol: str
    differences: List[str]

    def __str__(self) -> str:
        return f"Version disagreement for symbol {self.symbol}: {'; '.join(self.differences)}"


def normalize_checksum(checksum: str) -> str:
    """Canonical form of a checksum, so 0x0000abcd and 0xabcd compare equal"""
    try:
        return f"{int(checksum, 16):x}"
    except ValueError:
        return checksum.lower()


class SymbolVersionLedger:
    """
    Per-build table of exported symbol versions.
    """

    def __init__(self, entries: Optional[Dict[str, SymbolVersionEntry]] = None, source: str = ""):
        self.entries = entries or {}
        self.source = source

    @classmethod
    def parse(cls, text: str, source: str = "<ledger>") -> "SymbolVersionLedger":
        """
        Parse ledger text.

        Args:
            text: Ledger contents
            source: Name used in error messages

        Returns:
            SymbolVersionLedger

        Raises:
            LedgerParseError: on a line with fewer than four fields or a
                duplicated symbol
        """
        entries = {}

        for line_num, line in enumerate(text.splitlines(), 1):
            if not line.strip():
                continue

            # Tabs and spaces both separate fields; an empty namespace column is dropped
            fields = line.split()
            if len(fields) < MIN_FIELDS:
                raise LedgerParseError(f"Malformed {source} file at line {line_num}: {line.strip()}")

            entry = SymbolVersionEntry(
                name=fields[1],
                checksum=fields[0],
                module=fields[2],
                export_kind=fields[3],
                namespace=fields[4] if len(fields) > MIN_FIELDS else ""
            )
            if entry.name in entries:
                raise LedgerParseError(f"Duplicate symbol {entry.name} in {source} at line {line_num}")
            entries[entry.name] = entry

        return cls(entries, source)

    @classmethod
    def from_file(cls, path: str) -> "SymbolVersionLedger":
        """Load a ledger from a Module.symvers file"""
        ledger_path = Path(path)
        if not ledger_path.exists():
            raise LedgerParseError(f"Symbol version ledger not found: {ledger_path}")
        return cls.parse(ledger_path.read_text(), str(ledger_path))

    def get(self, name: str) -> Optional[SymbolVersionEntry]:
        return self.entries.get(name)

    def names(self) -> List[str]:
        return sorted(self.entries)

    def __contains__(self, name: str) -> bool:
        return name in self.entries

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self) -> Iterator[SymbolVersionEntry]:
        return iter(self.entries.values())


def compare(pre_ledger: SymbolVersionLedger, post_ledger: SymbolVersionLedger) -> List[VersionWarning]:
    """
    Compare the symbols two ledgers share.

    Returns:
        One VersionWarning per shared symbol whose checksum, module,
        namespace or export kind changed, ordered by symbol name
    """
    warnings = []

    for name in pre_ledger.names():
        after = post_ledger.get(name)
        if after is None:
            continue
        before = pre_ledger.get(name)

        differences = []
        if normalize_checksum(before.checksum) != normalize_checksum(after.checksum):
            differences.append(f"checksum {before.checksum} -> {after.checksum}")
        if before.module != after.module:
            differences.append(f"module {before.module} -> {after.module}")
        if before.namespace != after.namespace:
            differences.append(f"namespace {before.namespace or '-'} -> {after.namespace or '-'}")
        if before.export_kind != after.export_kind:
            differences.append(f"export {before.export_kind} -> {after.export_kind}")

        if differences:
            warnings.append(VersionWarning(symbol=name, differences=differences))

    return warnings


def validate_final(module_symbols: Mapping[str, str], pre_ledger: SymbolVersionLedger):
    """
    Check the version table of the final module against the pre-patch ledger.

    Args:
        module_symbols: Symbol name -> checksum the module was built against
        pre_ledger: Ledger of the kernel the module will be loaded into

    Raises:
        VersionConflictError: if any referenced symbol has a different checksum
    """
    conflicts = []

    for name in sorted(module_symbols):
        entry = pre_ledger.get(name)
        if entry is None:
            continue
        if normalize_checksum(module_symbols[name]) != normalize_checksum(entry.checksum):
            logger.error(f"Symbol {name} was built against {module_symbols[name]}, kernel has {entry.checksum}")
            conflicts.append(name)

    if conflicts:
        raise VersionConflictError(conflicts)


def read_module_versions(runner: CommandRunner, module_path: str) -> Dict[str, str]:
    """
    Dump the version table of a module.

    Returns:
        Symbol name -> checksum
    """
    result = runner.run(["modprobe", "--dump-modversions", str(module_path)])
    if not result.success:
        raise LedgerParseError(f"Could not read the version table of {module_path}: {result.stderr.strip()}")

    versions = {}
    for line in result.stdout.splitlines():
        parts = line.split()
        if len(parts) != 2:
            continue
        checksum, symbol = parts
        versions[symbol] = checksum

    return versions
