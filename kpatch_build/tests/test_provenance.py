#!/usr/bin/env python3
"""
Tests for provenance resolution of changed objects.
"""

import unittest
import tempfile
import shutil
from pathlib import Path

import sys
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from kpatch_build.build.build_records import BuildRecordStore
from kpatch_build.build.provenance import OwnershipChain, ProvenanceEdge, ProvenanceResolver
from kpatch_build.context import RunContext
from kpatch_build.errors import NoOwnerError


class BuildTreeTestCase(unittest.TestCase):
    """Base class creating a fake kernel build tree."""

    def setUp(self):
        """Set up test environment."""
        self.test_dir = tempfile.mkdtemp()
        self.root = Path(self.test_dir)
        self.context = RunContext()

    def tearDown(self):
        """Clean up test environment."""
        shutil.rmtree(self.test_dir)

    def add_target(self, target, inputs=(), command="ld -r"):
        """Create a target and its build record linking the inputs."""
        path = self.root / target
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("")
        record = path.parent / f".{path.name}.cmd"
        record.write_text(f"cmd_{target} := {command} -o {target} {' '.join(inputs)}\n")

    def add_object(self, target):
        """Create a compiled object with its own compile record."""
        self.add_target(target, [target.replace(".o", ".c")], command="gcc -c")

    def resolver(self):
        return ProvenanceResolver(BuildRecordStore(self.test_dir), self.context)


class TestProvenanceResolver(BuildTreeTestCase):
    """Test cases for ProvenanceResolver class."""

    def test_builtin_object_resolves_to_vmlinux(self):
        """Test an object linked into a directory's built-in archive."""
        self.add_object("drivers/x/y.o")
        self.add_target("drivers/x/built-in.a", ["drivers/x/y.o", "drivers/x/z.o"], command="ar cDPrST")

        chain = self.resolver().resolve("drivers/x/y.o")

        self.assertEqual(chain.terminal, "vmlinux")
        self.assertTrue(chain.is_vmlinux)
        self.assertEqual(chain.owner_name, "vmlinux")
        self.assertEqual(len(chain.edges), 1)
        self.assertEqual(chain.edges[0].parent, "drivers/x/built-in.a")
        self.assertFalse(chain.ambiguous)

    def test_module_object_resolves_to_module(self):
        """Test an object linked through a composite object into a module."""
        self.add_object("drivers/m/a.o")
        self.add_object("drivers/m/b.o")
        self.add_target("drivers/m/my-mod.o", ["drivers/m/a.o", "drivers/m/b.o"])
        self.add_target("drivers/m/my-mod.ko", ["drivers/m/my-mod.o", "drivers/m/my-mod.mod.o"])
        # Module metadata lists the objects too but does not link them
        (self.root / "drivers/m/.my-mod.mod.cmd").write_text(
            "cmd_drivers/m/my-mod.mod := { echo drivers/m/a.o drivers/m/b.o; } > drivers/m/my-mod.mod\n"
        )

        chain = self.resolver().resolve("drivers/m/a.o")

        self.assertEqual(chain.terminal, "drivers/m/my-mod.ko")
        self.assertEqual(chain.owner_name, "my_mod")
        self.assertEqual([edge.parent for edge in chain.edges], ["drivers/m/my-mod.o", "drivers/m/my-mod.ko"])
        self.assertFalse(chain.ambiguous)
        self.assertEqual(self.context.full_tree_scans, 0)

    def test_chain_length_matches_link_records(self):
        """Test that every intermediate link record is one edge."""
        self.add_object("net/core/a.o")
        self.add_target("net/core/part1.o", ["net/core/a.o"])
        self.add_target("net/core/part2.o", ["net/core/part1.o"])
        self.add_target("net/core/built-in.a", ["net/core/part2.o"], command="ar cDPrST")

        chain = self.resolver().resolve("net/core/a.o")

        self.assertEqual(len(chain.edges), 3)
        self.assertEqual(chain.terminal, "vmlinux")

    def test_aggregation_point_resolves_without_search(self):
        """Test allow-listed aggregation points resolve to vmlinux directly."""
        self.add_object("arch/x86/kernel/head_64.o")

        chain = self.resolver().resolve("arch/x86/kernel/head_64.o")

        self.assertEqual(chain.terminal, "vmlinux")
        self.assertEqual(chain.edges, [])
        self.assertEqual(self.context.full_tree_scans, 0)

    def test_ambiguous_parent_uses_first_match(self):
        """Test that two candidate parents mark the edge ambiguous."""
        self.add_object("drivers/amb/c.o")
        self.add_target("drivers/amb/p1.o", ["drivers/amb/c.o"])
        self.add_target("drivers/amb/p2.o", ["drivers/amb/c.o"])
        self.add_target("drivers/amb/built-in.a", ["drivers/amb/p1.o", "drivers/amb/p2.o"], command="ar cDPrST")

        chain = self.resolver().resolve("drivers/amb/c.o")

        self.assertTrue(chain.ambiguous)
        self.assertEqual(chain.edges[0].parent, "drivers/amb/p1.o")
        self.assertEqual(chain.edges[0].match_count, 2)
        self.assertIn("drivers/amb/c.o", chain.ambiguity)
        self.assertEqual(chain.terminal, "vmlinux")

    def test_missing_parent_object(self):
        """Test that a record for a target missing from the tree fails."""
        self.add_object("drivers/x/y.o")
        self.add_target("drivers/x/built-in.a", ["drivers/x/y.o"], command="ar cDPrST")
        (self.root / "drivers/x/built-in.a").unlink()

        with self.assertRaises(NoOwnerError) as cm:
            self.resolver().resolve("drivers/x/y.o")
        self.assertIn("can't find parent", str(cm.exception))

    def test_orphan_object_has_no_owner(self):
        """Test that an object nothing links fails after a full search."""
        self.add_object("drivers/orphan/o.o")

        with self.assertRaises(NoOwnerError) as cm:
            self.resolver().resolve("drivers/orphan/o.o")

        self.assertEqual(cm.exception.object_path, "drivers/orphan/o.o")
        self.assertEqual(self.context.full_tree_scans, 1)

    def test_record_cycle_fails(self):
        """Test that malformed records linking in a cycle do not loop forever."""
        self.add_target("drivers/c/a.o", ["drivers/c/b.o"])
        self.add_target("drivers/c/b.o", ["drivers/c/a.o"])

        with self.assertRaises(NoOwnerError):
            self.resolver().resolve("drivers/c/a.o")


class TestDeepSearchHints(BuildTreeTestCase):
    """Test cases for the full tree search and its directory hints."""

    def setUp(self):
        super().setUp()
        self.add_object("drivers/deep/a.o")
        self.add_object("drivers/deep/b.o")
        self.add_object("drivers/deep/c.o")
        self.add_target("drivers/agg/agg.o", ["drivers/deep/a.o", "drivers/deep/b.o"])
        self.add_target("drivers/agg/built-in.a", ["drivers/agg/agg.o"], command="ar cDPrST")
        self.add_target("drivers/other/other.o", ["drivers/deep/c.o"])
        self.add_target("drivers/other/built-in.a", ["drivers/other/other.o"], command="ar cDPrST")

    def test_unique_global_match_resolves(self):
        """Test an object whose parent lives in another directory."""
        chain = self.resolver().resolve("drivers/deep/a.o")

        self.assertEqual(chain.terminal, "vmlinux")
        self.assertTrue(chain.edges[0].deep_search)
        self.assertEqual(chain.edges[0].parent, "drivers/agg/agg.o")
        self.assertEqual(self.context.full_tree_scans, 1)
        self.assertEqual(self.context.deep_search_hints, {"drivers/deep": "drivers/agg"})

    def test_hint_reused_for_same_directory(self):
        """Test that a second object in the directory skips the full scan."""
        resolver = self.resolver()
        resolver.resolve("drivers/deep/a.o")

        chain = resolver.resolve("drivers/deep/b.o")

        self.assertEqual(chain.edges[0].parent, "drivers/agg/agg.o")
        self.assertEqual(self.context.full_tree_scans, 1)
        self.assertEqual(self.context.hint_hits, 1)

    def test_hint_dropped_when_it_does_not_match(self):
        """Test that a stale hint falls back to a fresh full scan."""
        resolver = self.resolver()
        resolver.resolve("drivers/deep/a.o")

        chain = resolver.resolve("drivers/deep/c.o")

        self.assertEqual(chain.edges[0].parent, "drivers/other/other.o")
        self.assertEqual(self.context.full_tree_scans, 2)
        self.assertEqual(self.context.hint_hits, 0)
        self.assertEqual(self.context.deep_search_hints, {"drivers/deep": "drivers/other"})


class TestHintedAmbiguity(BuildTreeTestCase):
    """Test cases for ambiguity hidden behind a cached hint."""

    def setUp(self):
        super().setUp()
        self.add_object("d/a.o")
        self.add_object("d/c.o")
        self.add_target("agg/agg.o", ["d/a.o", "d/c.o"])
        self.add_target("agg/built-in.a", ["agg/agg.o"], command="ar cDPrST")
        self.add_target("oth/oth.o", ["d/c.o"])
        self.add_target("oth/built-in.a", ["oth/oth.o"], command="ar cDPrST")

    def test_fresh_search_reports_ambiguity(self):
        """Test that a full scan sees both parents."""
        chain = self.resolver().resolve("d/c.o")

        self.assertTrue(chain.ambiguous)
        self.assertFalse(chain.unverified)

    def test_hinted_edge_is_unverified(self):
        """Test that a hint-resolved edge is marked for verification."""
        resolver = self.resolver()
        resolver.resolve("d/a.o")

        chain = resolver.resolve("d/c.o")

        self.assertEqual(self.context.hint_hits, 1)
        self.assertTrue(chain.edges[0].hinted)
        self.assertTrue(chain.unverified)

    def test_verify_finds_second_parent(self):
        """Test that verifying a hinted chain counts parents over the whole tree."""
        resolver = self.resolver()
        resolver.resolve("d/a.o")
        chain = resolver.resolve("d/c.o")

        resolver.verify(chain)

        self.assertTrue(chain.ambiguous)
        self.assertFalse(chain.unverified)
        self.assertEqual(chain.edges[0].match_count, 2)
        self.assertEqual(chain.edges[0].parent, "agg/agg.o")
        self.assertEqual(self.context.full_tree_scans, 2)

    def test_verify_unique_parent(self):
        """Test that verification keeps a hinted edge with one true parent."""
        self.add_object("d/b.o")
        self.add_target("agg/agg2.o", ["d/b.o"])
        self.add_target("agg/built-in.a", ["agg/agg.o", "agg/agg2.o"], command="ar cDPrST")
        resolver = self.resolver()
        resolver.resolve("d/a.o")
        chain = resolver.resolve("d/b.o")

        resolver.verify(chain)

        self.assertFalse(chain.ambiguous)
        self.assertEqual(chain.edges[0].parent, "agg/agg2.o")


class TestOwnershipChain(unittest.TestCase):
    """Test cases for OwnershipChain class."""

    def test_owner_name_of_module(self):
        """Test the logical owner name of a module."""
        chain = OwnershipChain(object_path="fs/ext4/inode.o", terminal="fs/ext4/ext4.ko")
        self.assertEqual(chain.owner_name, "ext4")
        self.assertFalse(chain.is_vmlinux)

    def test_ambiguity_of_unambiguous_chain(self):
        """Test that a chain of unique edges is not ambiguous."""
        chain = OwnershipChain(
            object_path="a.o",
            edges=[ProvenanceEdge(child="a.o", parent="b.o", match_count=1)],
            terminal="vmlinux"
        )
        self.assertFalse(chain.ambiguous)
        self.assertIsNone(chain.ambiguity)


if __name__ == '__main__':
    unittest.main()
