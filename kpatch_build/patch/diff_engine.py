#!/usr/bin/env python3
"""
Adapter for the external object differencing tool.

The tool compares the original and patched builds of one object and
writes an object holding only the changed functions and data.
"""

import logging
from enum import Enum
from pathlib import Path
from typing import Optional

from kpatch_build.utils.command_runner import CommandRunner

DIFF_TOOL = "create-diff-object"

# Exit status of the diff tool when it finds no functional change
NO_CHANGE_STATUS = 3


class DiffOutcome(Enum):
    """Outcome of processing one changed object."""
    CHANGED = "changed"
    UNCHANGED = "unchanged"
    ERROR = "error"
    SKIPPED = "skipped"
    NEW = "new"


class DiffEngine:
    """
    Runs the differencing tool for one object at a time.
    """

    def __init__(self, tools_dir: str, runner: Optional[CommandRunner] = None, extra_flags=None):
        """
        Initialize the diff engine.

        Args:
            tools_dir: Directory holding the differencing tool
            runner: Command runner
            extra_flags: Additional flags passed to the tool
        """
        self.tool = str(Path(tools_dir) / DIFF_TOOL)
        self.runner = runner or CommandRunner()
        self.extra_flags = list(extra_flags or [])
        self.logger = logging.getLogger(__name__)

    def dump_symtab(self, binary_path: str, symtab_path: str) -> bool:
        """Write the symbol table of the owning binary for the diff tool"""
        result = self.runner.run(["eu-readelf", "-s", str(binary_path)])
        if not result.success:
            self.logger.error(f"eu-readelf failed on {binary_path}: {result.stderr.strip()}")
            return False
        Path(symtab_path).parent.mkdir(parents=True, exist_ok=True)
        Path(symtab_path).write_text(result.stdout)
        return True

    def diff(self, original: str, patched: str, owner_name: str, symtab: str,
             symvers: str, module_name: str, output: str) -> DiffOutcome:
        """
        Diff the original and patched builds of an object.

        Args:
            original: Original object
            patched: Patched object
            owner_name: Logical name of the terminal binary owning the object
            symtab: Symbol table dump of the terminal binary
            symvers: Symbol version ledger
            module_name: Logical name of the patch module
            output: Where the diffed object is written

        Returns:
            DiffOutcome.CHANGED, UNCHANGED or ERROR
        """
        Path(output).parent.mkdir(parents=True, exist_ok=True)

        cmd = [self.tool] + self.extra_flags + [
            str(original), str(patched), owner_name, str(symtab),
            str(symvers), module_name.replace("-", "_"), str(output)
        ]
        result = self.runner.run(cmd)

        if result.returncode == 0:
            return DiffOutcome.CHANGED
        if result.returncode == NO_CHANGE_STATUS:
            return DiffOutcome.UNCHANGED

        self.logger.error(f"{DIFF_TOOL} failed for {patched} with status {result.returncode}")
        if result.output:
            self.logger.error(result.output)
        return DiffOutcome.ERROR
