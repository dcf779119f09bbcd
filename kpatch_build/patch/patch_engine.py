#!/usr/bin/env python3
"""
Source patch application for patch module generation.

This module applies the source patches to the kernel tree before the
patched build and reverts them afterwards, or when a run aborts.
"""

import logging
import shutil
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional

from kpatch_build.errors import PatchApplicationError
from kpatch_build.utils.command_runner import CommandRunner


class PatchStatus(Enum):
    """Status of patch application."""
    SUCCESS = "success"
    FAILED = "failed"
    CONFLICT = "conflict"
    ROLLBACK_SUCCESS = "rollback_success"
    ROLLBACK_FAILED = "rollback_failed"


@dataclass
class PatchResult:
    """Result of patch application operation."""
    status: PatchStatus
    patch_file: str
    message: str
    conflicts: List[str] = field(default_factory=list)
    applied_files: List[str] = field(default_factory=list)


class PatchEngine:
    """
    Applies source patches and rolls them back in reverse order.
    """

    def __init__(self, kernel_source_path: str, backup_dir: str, runner: Optional[CommandRunner] = None):
        """
        Initialize the patch engine.

        Args:
            kernel_source_path: Path to kernel source directory
            backup_dir: Directory to store backups of patched files
            runner: Command runner
        """
        self.kernel_source_path = Path(kernel_source_path)
        self.backup_dir = Path(backup_dir)
        self.runner = runner or CommandRunner()
        self.logger = logging.getLogger(__name__)
        self.applied_patches: List[str] = []

    def apply_patches(self, patch_files: List[str]) -> List[PatchResult]:
        """
        Apply patch files in order.

        Args:
            patch_files: List of patch file paths

        Returns:
            List of PatchResult objects

        Raises:
            PatchApplicationError: on the first patch that does not apply;
                patches applied before it stay applied for the caller to
                roll back
        """
        results = []

        for patch_file in patch_files:
            self.logger.info(f"Applying patch: {patch_file}")
            result = self.apply_single_patch(patch_file)
            results.append(result)

            if result.status != PatchStatus.SUCCESS:
                raise PatchApplicationError(f"{patch_file}: {result.message}")

        return results

    def apply_single_patch(self, patch_file: str, dry_run: bool = False) -> PatchResult:
        """
        Apply a single patch file.

        Args:
            patch_file: Path to patch file
            dry_run: If True, only check if patch can be applied

        Returns:
            PatchResult object
        """
        patch_path = Path(patch_file)

        if not patch_path.exists():
            return PatchResult(
                status=PatchStatus.FAILED,
                patch_file=patch_file,
                message=f"Patch file not found: {patch_file}"
            )

        # Check first so a failing patch never leaves a half-applied tree
        check = self.runner.run(self._build_patch_command(patch_file, dry_run=True), cwd=str(self.kernel_source_path))
        if not check.success:
            conflicts = self._detect_conflicts(check.output)
            return PatchResult(
                status=PatchStatus.CONFLICT if conflicts else PatchStatus.FAILED,
                patch_file=patch_file,
                message=f"Patch does not apply: {check.output.strip()}",
                conflicts=conflicts
            )

        applied_files = self._extract_applied_files(patch_file)
        if dry_run:
            return PatchResult(
                status=PatchStatus.SUCCESS,
                patch_file=patch_file,
                message="Patch applies cleanly",
                applied_files=applied_files
            )

        self._create_backup(patch_file, applied_files)
        result = self.runner.run(self._build_patch_command(patch_file), cwd=str(self.kernel_source_path))
        if not result.success:
            return PatchResult(
                status=PatchStatus.FAILED,
                patch_file=patch_file,
                message=f"Patch application failed: {result.output.strip()}"
            )

        self.applied_patches.append(patch_file)
        return PatchResult(
            status=PatchStatus.SUCCESS,
            patch_file=patch_file,
            message="Patch applied successfully",
            applied_files=applied_files
        )

    def rollback_patch(self, patch_file: str) -> PatchResult:
        """
        Rollback a previously applied patch.

        Args:
            patch_file: Path to patch file to rollback

        Returns:
            PatchResult object
        """
        if patch_file not in self.applied_patches:
            return PatchResult(
                status=PatchStatus.ROLLBACK_FAILED,
                patch_file=patch_file,
                message="Patch is not applied, cannot rollback"
            )

        result = self.runner.run(self._build_patch_command(patch_file, reverse=True), cwd=str(self.kernel_source_path))

        if result.success:
            message = "Patch rolled back successfully"
        elif self._restore_from_backup(patch_file):
            message = "Patch rolled back using backup"
        else:
            return PatchResult(
                status=PatchStatus.ROLLBACK_FAILED,
                patch_file=patch_file,
                message=f"Rollback failed: {result.output.strip()}"
            )

        self.applied_patches.remove(patch_file)
        return PatchResult(
            status=PatchStatus.ROLLBACK_SUCCESS,
            patch_file=patch_file,
            message=message
        )

    def rollback_all(self) -> List[PatchResult]:
        """
        Rollback all applied patches, last applied first.

        Returns:
            List of PatchResult objects
        """
        results = []

        for patch_file in reversed(list(self.applied_patches)):
            self.logger.info(f"Reverting patch: {patch_file}")
            result = self.rollback_patch(patch_file)
            results.append(result)

            if result.status != PatchStatus.ROLLBACK_SUCCESS:
                self.logger.error(f"Rollback failed for {patch_file}: {result.message}")

        return results

    def _build_patch_command(self, patch_file: str, dry_run: bool = False, reverse: bool = False) -> List[str]:
        """Build the patch command with appropriate options."""
        cmd = ['patch', '-p1', '-N', '--batch']

        if dry_run:
            cmd.append('--dry-run')

        if reverse:
            cmd.append('-R')

        cmd.extend(['-i', str(Path(patch_file).absolute())])

        return cmd

    def _detect_conflicts(self, output: str) -> List[str]:
        """Detect conflicts from patch command output."""
        conflict_indicators = [
            'FAILED',
            'rejected',
            'conflict',
            'Hunk #',
            'malformed patch',
            'Reversed (or previously applied) patch'
        ]

        conflicts = []
        for line in output.split('\n'):
            if any(indicator.lower() in line.lower() for indicator in conflict_indicators):
                conflicts.append(line.strip())

        return conflicts

    def _extract_applied_files(self, patch_file: str) -> List[str]:
        """Extract list of files that would be modified by the patch."""
        applied_files = []

        with open(patch_file, 'r', errors='replace') as f:
            for line in f:
                if line.startswith('+++ ') and not line.startswith('+++ /dev/null'):
                    # Strip the first path component, as -p1 does
                    file_path = line[4:].split('\t')[0].strip()
                    file_path = file_path.split('/', 1)[1] if '/' in file_path else file_path
                    if file_path not in applied_files:
                        applied_files.append(file_path)

        return applied_files

    def _create_backup(self, patch_file: str, applied_files: List[str]):
        """Create backup of files that will be modified by the patch."""
        backup_subdir = self.backup_dir / f"{Path(patch_file).name}_backup"
        backup_subdir.mkdir(parents=True, exist_ok=True)

        for file_path in applied_files:
            source_file = self.kernel_source_path / file_path
            if source_file.exists():
                backup_file = backup_subdir / file_path
                backup_file.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(source_file, backup_file)

    def _restore_from_backup(self, patch_file: str) -> bool:
        """Restore files from backup."""
        backup_subdir = self.backup_dir / f"{Path(patch_file).name}_backup"

        if not backup_subdir.exists():
            return False

        try:
            for backup_file in backup_subdir.rglob('*'):
                if backup_file.is_file():
                    relative_path = backup_file.relative_to(backup_subdir)
                    target_file = self.kernel_source_path / relative_path
                    target_file.parent.mkdir(parents=True, exist_ok=True)
                    shutil.copy2(backup_file, target_file)
            return True
        except OSError as e:
            self.logger.error(f"Failed to restore from backup for {patch_file}: {e}")
            return False
