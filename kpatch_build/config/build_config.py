#!/usr/bin/env python3
"""
Build configuration for patch module generation.

The configuration object replaces the environment variables that used to
be passed down to nested builds: compiler and linker overrides, extra
include paths, architecture flags and the target kernel's capabilities.
"""

import json
import re
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Dict, List, Optional

import psutil

NATIVE_MODULE_PREFIX = "livepatch-"
CORE_MODULE_PREFIX = "kpatch-"

# Keeps the prefixed name inside the kernel's 56-byte module name array
MAX_PATCH_NAME_LENGTH = 48


@dataclass
class CapabilityFlags:
    """Capabilities of the target kernel"""
    native_framework: bool = True
    legacy_relocations: bool = False
    modversions: bool = True


@dataclass
class WorkspaceLayout:
    """Paths inside the per-run workspace"""
    root: Path

    @property
    def orig_dir(self) -> Path:
        return self.root / "orig"

    @property
    def patched_dir(self) -> Path:
        return self.root / "patched"

    @property
    def output_dir(self) -> Path:
        return self.root / "output"

    @property
    def patch_dir(self) -> Path:
        return self.root / "patch"

    @property
    def changed_objects_file(self) -> Path:
        return self.root / "changed_objs"

    @property
    def pre_symvers(self) -> Path:
        return self.root / "Module.symvers"

    @property
    def vmlinux(self) -> Path:
        return self.root / "vmlinux"

    @property
    def module_dir(self) -> Path:
        return self.root / "module"

    @property
    def log_file(self) -> Path:
        return self.root / "build.log"

    def directories(self) -> List[Path]:
        return [self.orig_dir, self.patched_dir, self.output_dir, self.patch_dir]


@dataclass
class PatchBuildConfig:
    """Configuration for a patch module build"""
    source_dir: str
    patch_files: List[str]
    workspace: str = str(Path.home() / ".kpatch" / "tmp")
    output_dir: str = "."
    name: Optional[str] = None
    vmlinux: Optional[str] = None
    parallel_jobs: int = 0  # 0 = auto-detect
    compiler: Optional[str] = None
    linker: Optional[str] = None
    include_paths: List[str] = field(default_factory=list)
    arch_flags: List[str] = field(default_factory=list)
    tools_dir: str = "/usr/libexec/kpatch"
    support_dir: str = "/usr/share/kpatch/patch"
    capabilities: CapabilityFlags = field(default_factory=CapabilityFlags)
    debug: bool = False
    skip_cleanup: bool = False

    @property
    def layout(self) -> WorkspaceLayout:
        return WorkspaceLayout(Path(self.workspace))

    @property
    def vmlinux_path(self) -> Path:
        if self.vmlinux:
            return Path(self.vmlinux)
        return self.layout.vmlinux

    @property
    def symvers_path(self) -> Path:
        return Path(self.source_dir) / "Module.symvers"

    def patch_name(self) -> str:
        """Base name of the patch module, without the mode prefix"""
        if self.name:
            name = self.name
        elif len(self.patch_files) == 1:
            name = Path(self.patch_files[0]).name
            if name.endswith(".patch") or name.endswith(".diff"):
                name = name.rsplit(".", 1)[0]
        else:
            name = "cumulative"

        name = re.sub(r'[^a-zA-Z0-9_-]', '-', name)
        return name[:MAX_PATCH_NAME_LENGTH]

    def module_name(self) -> str:
        """Module name, prefixed with the deployment mode"""
        prefix = NATIVE_MODULE_PREFIX if self.capabilities.native_framework else CORE_MODULE_PREFIX
        return prefix + self.patch_name()

    def jobs(self) -> int:
        """Number of parallel compile jobs"""
        if self.parallel_jobs > 0:
            return self.parallel_jobs
        return psutil.cpu_count(logical=True) or 1

    def linker_command(self) -> str:
        return self.linker or "ld"

    def build_environment(self) -> Dict[str, str]:
        """Environment for nested kernel builds"""
        env_vars = {}

        if self.compiler:
            env_vars["CC"] = self.compiler
        if self.linker:
            env_vars["LD"] = self.linker

        kcflags = [f"-I{path}" for path in self.include_paths] + list(self.arch_flags)
        if kcflags:
            env_vars["KCFLAGS"] = " ".join(kcflags)

        if not self.capabilities.native_framework:
            env_vars["KCPPFLAGS"] = "-D__KPATCH_MODULE__"

        return env_vars


def load_build_config(config_file: str) -> PatchBuildConfig:
    """Load build configuration from a JSON file"""
    with open(config_file, 'r') as f:
        config_data = json.load(f)

    config_data.setdefault("patch_files", [])
    capabilities = CapabilityFlags(**config_data.pop("capabilities", {}))
    return PatchBuildConfig(capabilities=capabilities, **config_data)


def save_build_config(config: PatchBuildConfig, config_file: str):
    """Save build configuration to a JSON file"""
    with open(config_file, 'w') as f:
        json.dump(asdict(config), f, indent=2)
