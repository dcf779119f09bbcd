"""
Patch module generation.

This module provides functionality for applying and reverting source
patches, diffing the changed objects and assembling the diffed fragments
into a loadable patch module.
"""

from .patch_engine import PatchEngine, PatchResult, PatchStatus
from .diff_engine import DiffEngine, DiffOutcome
from .changed_set import ChangedObject, ChangedSetExtractor
from .assembler import PatchModule, PatchModuleAssembler

__all__ = [
    'PatchEngine',
    'PatchResult',
    'PatchStatus',
    'DiffEngine',
    'DiffOutcome',
    'ChangedObject',
    'ChangedSetExtractor',
    'PatchModule',
    'PatchModuleAssembler'
]
