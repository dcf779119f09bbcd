#!/usr/bin/env python3
"""
Kernel compilation passes for patch module generation

This module drives the original and patched kernel builds. Compilation is
an opaque blocking call; the only things taken from it are the compiled
objects, the changed-object list written by the compiler wrapper and the
symbol version ledger.
"""

import logging
import shutil
from pathlib import Path
from typing import Dict, List, Optional

from kpatch_build.config.build_config import PatchBuildConfig
from kpatch_build.errors import BuildFailureError
from kpatch_build.utils.command_runner import CommandRunner
from kpatch_build.utils.file_utils import copy_into_tree, ensure_directory

BUILD_TARGETS = ["vmlinux", "modules"]

COMPILER_WRAPPER = "kpatch-cc"


class KernelBuilder:
    """Runs the kernel builds needed to find the changed objects"""

    def __init__(self, config: PatchBuildConfig, runner: Optional[CommandRunner] = None):
        self.config = config
        self.runner = runner or CommandRunner()
        self.layout = config.layout
        self.logger = logging.getLogger(__name__)

    def _run_make(self, description: str, env_vars: Dict[str, str]):
        """Run make for the build targets and fail on a non-zero status"""
        jobs = self.config.jobs()
        self.logger.info(f"{description} (using {jobs} parallel jobs)")

        cmd = ["make", f"-j{jobs}"] + BUILD_TARGETS
        result = self.runner.run(cmd, cwd=self.config.source_dir, env=env_vars)

        if not result.success:
            self.logger.error(f"{description} failed: {result.stderr}")
            raise BuildFailureError(f"{description} failed with exit status {result.returncode}")

    def build_original(self):
        """Build the unmodified tree and keep its ledger and linked binaries"""
        self._run_make("Building original source", self.config.build_environment())
        self.snapshot_symvers()
        self.snapshot_binaries()

    def snapshot_binaries(self) -> List[str]:
        """
        Copy the original kernel image and modules into the workspace, so
        their symbol tables survive the patched build relinking them.

        Returns:
            Tree-relative paths of the copied binaries
        """
        source = Path(self.config.source_dir)
        copied = []

        if not self.config.vmlinux:
            if not (source / "vmlinux").exists():
                raise BuildFailureError("The original build produced no vmlinux")
            ensure_directory(str(self.layout.root))
            shutil.copy2(source / "vmlinux", self.layout.vmlinux)
            copied.append("vmlinux")

        modules_order = source / "modules.order"
        if modules_order.exists():
            for line in modules_order.read_text().splitlines():
                module = line.strip()
                # Older kernels prefix the entries with the install directory
                if module.startswith("kernel/"):
                    module = module[len("kernel/"):]
                # Newer kernels list the module objects instead
                if module.endswith(".o"):
                    module = module[:-len(".o")] + ".ko"
                if module and (source / module).exists():
                    copy_into_tree(str(source), module, str(self.layout.module_dir))
                    copied.append(module)

        self.logger.info(f"Saved {len(copied)} original binaries")
        return copied

    def original_binary(self, terminal: str) -> Path:
        """Path of the saved original build of a terminal binary"""
        if Path(terminal).name == "vmlinux":
            return self.config.vmlinux_path
        return self.layout.module_dir / terminal

    def snapshot_symvers(self) -> Optional[Path]:
        """Copy Module.symvers of the original build into the workspace"""
        symvers = self.config.symvers_path
        if not symvers.exists():
            if self.config.capabilities.modversions:
                raise BuildFailureError(f"Missing symbol version ledger: {symvers}")
            return None

        ensure_directory(str(self.layout.root))
        shutil.copy2(symvers, self.layout.pre_symvers)
        return self.layout.pre_symvers

    def build_patched(self) -> Path:
        """
        Build the patched tree with the compiler wrapper recording every
        object it recompiles.

        Returns:
            Path of the changed-object list
        """
        env_vars = self.config.build_environment()
        compiler = self.config.compiler or "gcc"
        env_vars["CC"] = f"{Path(self.config.tools_dir) / COMPILER_WRAPPER} {compiler}"
        env_vars["KPATCH_GCC_TEMPDIR"] = str(self.layout.root)

        changed_file = self.layout.changed_objects_file
        if changed_file.exists():
            changed_file.unlink()

        self._run_make("Building patched source", env_vars)

        if not changed_file.exists():
            self.logger.warning("The patched build recompiled no objects")
            changed_file.touch()

        return changed_file

    def collect_patched_objects(self, object_paths: List[str]) -> List[str]:
        """Copy the patched builds of the changed objects into the workspace"""
        collected = []

        for object_path in object_paths:
            if not (Path(self.config.source_dir) / object_path).exists():
                raise BuildFailureError(f"Patched object missing from build tree: {object_path}")
            copy_into_tree(self.config.source_dir, object_path, str(self.layout.patched_dir))
            collected.append(object_path)

        self.logger.info(f"Collected {len(collected)} patched objects")
        return collected
