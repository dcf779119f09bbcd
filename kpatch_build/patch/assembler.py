#!/usr/bin/env python3
"""
Patch module assembly.

Merges the diffed fragments into one relocatable object and packages it
as a loadable module, either for the kernel's native livepatch framework
or for the core runtime module.
"""

import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from kpatch_build.config.build_config import CapabilityFlags, PatchBuildConfig
from kpatch_build.context import RunContext
from kpatch_build.errors import (
    AmbiguousProvenanceError,
    AssemblyError,
    DiffErrorsError,
    NoChangedObjectsError,
    ToolFailureError,
)
from kpatch_build.patch.changed_set import ChangedObject
from kpatch_build.patch.diff_engine import DiffOutcome
from kpatch_build.utils.command_runner import CommandRunner
from kpatch_build.utils.file_utils import calculate_file_hash, ensure_directory, find_files

CHECKSUM_SECTION = ".kpatch.checksum"
CHECKSUM_SECTION_FLAGS = "alloc,load,contents,readonly"

# Instruction patching sections that need unique merging on kernels
# without the newer relocation support
UNIQUE_SECTIONS = [".parainstructions", ".altinstructions"]

CORE_MODULE_TOOL = "create-kpatch-module"
NATIVE_MODULE_TOOL = "create-klp-module"


@dataclass
class PatchModule:
    """The assembled patch module"""
    name: str
    fragments: List[str] = field(default_factory=list)
    checksum: Optional[str] = None
    artifact: Optional[str] = None
    native: bool = True


class PatchModuleAssembler:
    """
    Merges diffed objects and links the final patch module.
    """

    def __init__(self, config: PatchBuildConfig, context: RunContext, runner: Optional[CommandRunner] = None):
        """
        Initialize the assembler.

        Args:
            config: Build configuration
            context: Run context with the diff tallies
            runner: Runner for the linker and packaging tools
        """
        self.config = config
        self.context = context
        self.layout = config.layout
        self.runner = runner or CommandRunner()
        self.logger = logging.getLogger(__name__)

    def check_changed_set(self, changed_objects: List[ChangedObject]):
        """
        Gate assembly on the outcome of the diff stage.

        Raises:
            DiffErrorsError: if any object failed to diff
            AmbiguousProvenanceError: if a changed object has ambiguous provenance
            NoChangedObjectsError: if no object changed
        """
        if self.context.error_count > 0:
            raise DiffErrorsError(self.context.error_count)

        for changed in changed_objects:
            if changed.outcome == DiffOutcome.CHANGED and changed.chain and changed.chain.ambiguous:
                raise AmbiguousProvenanceError(changed.path, changed.chain.ambiguity)

        if self.context.changed_count == 0:
            raise NoChangedObjectsError()

    def linker_flags(self, capabilities: CapabilityFlags) -> List[str]:
        if capabilities.legacy_relocations:
            return [f"--unique={section}" for section in UNIQUE_SECTIONS]
        return []

    def assemble(self, changed_objects: List[ChangedObject], capabilities: CapabilityFlags) -> PatchModule:
        """
        Assemble the patch module.

        Args:
            changed_objects: Work list with diff outcomes
            capabilities: Capabilities of the target kernel

        Returns:
            PatchModule with the final artifact

        Raises:
            AssemblyError: on any gate or packaging failure
        """
        self.check_changed_set(changed_objects)

        module = PatchModule(name=self.config.module_name(), native=capabilities.native_framework)
        owners = sorted(owner for owner in self.context.patched_owners if owner)
        self.logger.info(f"Patched objects: {' '.join(owners)}")

        ensure_directory(str(self.layout.patch_dir))
        module.fragments = self.merge_fragments(capabilities)
        merged = self.layout.patch_dir / "tmp_output.o"
        output = self.layout.patch_dir / "output.o"

        if capabilities.native_framework:
            shutil.copy2(merged, output)
            # Keeps modpost quiet about an object without a build record
            (self.layout.patch_dir / ".output.o.cmd").touch()
        else:
            module.checksum = self.embed_checksum(merged, output)
            self._run_tool(CORE_MODULE_TOOL, [str(merged), str(output)])

        self.logger.info(f"Building patch module: {module.name}.ko")
        self.link_module(module.name, capabilities)
        artifact = self.layout.patch_dir / f"{module.name}.ko"
        if not artifact.exists():
            raise AssemblyError(f"Module link produced no {artifact.name}")

        if capabilities.native_framework:
            self.rewrite_sections(artifact, capabilities)

        module.artifact = str(artifact)
        return module

    def merge_fragments(self, capabilities: CapabilityFlags) -> List[str]:
        """Statically link every output fragment into one relocatable object"""
        fragments = find_files(str(self.layout.output_dir), "*.o")
        if not fragments:
            raise AssemblyError("No object fragments to merge")

        merged = self.layout.patch_dir / "tmp_output.o"
        cmd = [self.config.linker_command(), "-r"] + self.linker_flags(capabilities) + ["-o", str(merged)] + fragments
        result = self.runner.run(cmd, cwd=str(self.layout.output_dir))
        if not result.success:
            raise ToolFailureError(self.config.linker_command(), result.returncode, result.output)

        self.logger.info(f"Merged {len(fragments)} fragments")
        return fragments

    def embed_checksum(self, merged: Path, output: Path) -> str:
        """Store the checksum of the merged object in its own section"""
        checksum = calculate_file_hash(str(merged), 'md5')
        checksum_file = self.layout.patch_dir / "checksum.tmp"
        checksum_file.write_bytes(checksum.encode() + b"\0")

        cmd = [
            "objcopy",
            "--add-section", f"{CHECKSUM_SECTION}={checksum_file}",
            "--set-section-flags", f"{CHECKSUM_SECTION}={CHECKSUM_SECTION_FLAGS}",
            str(merged), str(output)
        ]
        result = self.runner.run(cmd)
        checksum_file.unlink()
        if not result.success:
            raise ToolFailureError("objcopy", result.returncode, result.output)

        self.logger.debug(f"Patch checksum: {checksum}")
        return checksum

    def link_module(self, module_name: str, capabilities: CapabilityFlags):
        """Link the merged object into a kernel module with kbuild"""
        support_dir = Path(self.config.support_dir)
        if not support_dir.is_dir():
            raise AssemblyError(f"Patch module skeleton not found: {support_dir}")

        for entry in sorted(support_dir.iterdir()):
            if entry.is_file():
                shutil.copy2(entry, self.layout.patch_dir / entry.name)

        env_vars: Dict[str, str] = self.config.build_environment()
        env_vars.update({
            "KPATCH_BUILD": str(self.config.source_dir),
            "KPATCH_NAME": module_name,
            "KBUILD_EXTRA_SYMBOLS": str(self.layout.pre_symvers) if self.layout.pre_symvers.exists() else "",
            "KPATCH_LDFLAGS": " ".join(self.linker_flags(capabilities)),
        })

        result = self.runner.run(["make"], cwd=str(self.layout.patch_dir), env=env_vars)
        if not result.success:
            raise ToolFailureError("make", result.returncode, result.output)

    def rewrite_sections(self, artifact: Path, capabilities: CapabilityFlags):
        """Convert the linked module into a native livepatch module"""
        tmp_module = self.layout.patch_dir / "tmp.ko"
        shutil.copy2(artifact, tmp_module)

        flags = [] if capabilities.legacy_relocations else ["--no-klp-arch-sections"]
        self._run_tool(NATIVE_MODULE_TOOL, flags + [str(tmp_module), str(artifact)])

    def _run_tool(self, tool: str, args: List[str]):
        result = self.runner.run([str(Path(self.config.tools_dir) / tool)] + args)
        if not result.success:
            raise ToolFailureError(tool, result.returncode, result.output)
