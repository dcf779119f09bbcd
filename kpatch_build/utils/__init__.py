"""Shared helpers for the patch module build system."""

from .command_runner import CommandResult, CommandRunner
from .file_utils import ensure_directory, calculate_file_hash, copy_into_tree

__all__ = ['CommandResult', 'CommandRunner', 'ensure_directory', 'calculate_file_hash', 'copy_into_tree']
