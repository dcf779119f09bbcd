#!/usr/bin/env python3
"""
Tests for the completeness check of the final patch module.
"""

import unittest
import tempfile
import shutil
import struct
from pathlib import Path
from unittest.mock import MagicMock

import sys
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from kpatch_build.errors import AssemblyError, UnresolvedSymbolError
from kpatch_build.symbols.completeness import CORE_SUPPORT_SYMBOLS, CompletenessValidator
from kpatch_build.symbols.symvers import SymbolVersionLedger
from kpatch_build.utils.command_runner import CommandResult


def elf_header(e_type=1, little_endian=True):
    """Minimal 64-bit ELF header of the given object type"""
    ident = b'\x7fELF' + bytes([2, 1 if little_endian else 2, 1, 0]) + bytes(8)
    fmt = '<H' if little_endian else '>H'
    return (ident + struct.pack(fmt, e_type)).ljust(64, b'\x00')


NM_OUTPUT = """\
                 U printk
                 U __fentry__
"""

READELF_OUTPUT = """\
Symbol table '.symtab' contains 4 entries:
   Num:    Value          Size Type    Bind   Vis      Ndx Name
     0: 0000000000000000     0 NOTYPE  LOCAL  DEFAULT  UND
     1: 0000000000000000    42 FUNC    GLOBAL DEFAULT    2 patched_func
     2: 0000000000000000     8 OBJECT  LOCAL  DEFAULT    4 local_state
     3: 0000000000000000     0 NOTYPE  GLOBAL DEFAULT  UND printk
"""


class TestCompletenessCheck(unittest.TestCase):
    """Test cases for resolving undefined references."""

    def setUp(self):
        self.ledger = SymbolVersionLedger.parse(
            "0x11111111\tprintk\tvmlinux\tEXPORT_SYMBOL\n"
            "0x22222222\t__fentry__\tvmlinux\tEXPORT_SYMBOL\n"
        )

    def test_all_references_resolved(self):
        """Test references provided by the kernel."""
        validator = CompletenessValidator(MagicMock(), self.ledger)
        self.assertEqual(validator.check(["printk", "__fentry__"]), {"printk", "__fentry__"})

    def test_unresolved_reference(self):
        """Test that a reference nothing provides aborts."""
        validator = CompletenessValidator(MagicMock(), self.ledger)

        with self.assertRaises(UnresolvedSymbolError) as cm:
            validator.check(["printk", "bar_helper"])

        self.assertEqual(cm.exception.symbols, ["bar_helper"])
        self.assertEqual(str(cm.exception), "Undefined symbols: bar_helper")
        self.assertEqual(cm.exception.failure_class, "UnresolvedSymbol")

    def test_core_support_symbols(self):
        """Test that the runtime support symbols only count in core-module mode."""
        native = CompletenessValidator(MagicMock(), self.ledger)
        core = CompletenessValidator(MagicMock(), self.ledger, core_module_mode=True)

        with self.assertRaises(UnresolvedSymbolError):
            native.check(["kpatch_shadow_alloc"])
        self.assertEqual(core.check(CORE_SUPPORT_SYMBOLS), set(CORE_SUPPORT_SYMBOLS))

    def test_module_defined_symbols(self):
        """Test references satisfied by the module itself."""
        validator = CompletenessValidator(MagicMock(), self.ledger)
        validator.check(["patched_func", "printk"], module_defined=["patched_func"])

    def test_only_ledger_exports_count(self):
        """Test that kernel symbols missing from the ledger are not provided."""
        validator = CompletenessValidator(MagicMock(), self.ledger)
        with self.assertRaises(UnresolvedSymbolError) as cm:
            validator.check(["printk", "kallsyms_lookup_name"])
        self.assertEqual(cm.exception.symbols, ["kallsyms_lookup_name"])


class TestModuleInspection(unittest.TestCase):
    """Test cases for inspecting the final module."""

    def setUp(self):
        """Set up test environment."""
        self.test_dir = tempfile.mkdtemp()
        self.module = Path(self.test_dir) / "livepatch-fix.ko"
        self.module.write_bytes(elf_header())

        self.runner = MagicMock()
        self.runner.run.side_effect = self._fake_run
        self.ledger = SymbolVersionLedger.parse("0x11111111\tprintk\tvmlinux\tEXPORT_SYMBOL\n")
        self.nm_output = NM_OUTPUT

    def tearDown(self):
        """Clean up test environment."""
        shutil.rmtree(self.test_dir)

    def _fake_run(self, command, cwd=None, env=None):
        if command[0] == "nm":
            return CommandResult(command=command, returncode=0, stdout=self.nm_output)
        if command[0] == "readelf":
            return CommandResult(command=command, returncode=0, stdout=READELF_OUTPUT)
        return CommandResult(command=command, returncode=1, stderr="unexpected command")

    def test_defined_symbols(self):
        """Test parsing global definitions from the symbol table."""
        validator = CompletenessValidator(self.runner, self.ledger)
        self.assertEqual(validator.defined_symbols(str(self.module)), {"patched_func"})

    def test_undefined_symbols(self):
        """Test parsing undefined references."""
        validator = CompletenessValidator(self.runner, self.ledger)
        self.assertEqual(validator.undefined_symbols(str(self.module)), {"printk", "__fentry__"})

    def test_validate_reports_missing_symbol(self):
        """Test a full validation with one unresolved reference."""
        validator = CompletenessValidator(self.runner, self.ledger)

        with self.assertRaises(UnresolvedSymbolError) as cm:
            validator.validate(str(self.module))
        self.assertEqual(cm.exception.symbols, ["__fentry__"])

    def test_validate_success(self):
        """Test a full validation of a complete module."""
        self.nm_output = "                 U printk\n                 U patched_func\n"
        validator = CompletenessValidator(self.runner, self.ledger)
        self.assertEqual(validator.validate(str(self.module)), {"printk", "patched_func"})

    def test_verify_relocatable_big_endian(self):
        """Test the header check on a big-endian object."""
        self.module.write_bytes(elf_header(little_endian=False))
        CompletenessValidator(self.runner, self.ledger).verify_relocatable(str(self.module))

    def test_reject_executable(self):
        """Test that a linked executable is not accepted as a module."""
        self.module.write_bytes(elf_header(e_type=2))
        with self.assertRaises(AssemblyError):
            CompletenessValidator(self.runner, self.ledger).verify_relocatable(str(self.module))

    def test_reject_non_elf(self):
        """Test that a non-ELF file is not accepted as a module."""
        self.module.write_text("not an object\n")
        with self.assertRaises(AssemblyError):
            CompletenessValidator(self.runner, self.ledger).validate(str(self.module))

    def test_tool_failure(self):
        """Test that a failing inspection tool aborts."""
        self.runner.run.side_effect = None
        self.runner.run.return_value = CommandResult(command=["nm"], returncode=1, stderr="nm: bad file")
        with self.assertRaises(AssemblyError):
            CompletenessValidator(self.runner, self.ledger).undefined_symbols(str(self.module))


if __name__ == '__main__':
    unittest.main()
