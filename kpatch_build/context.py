#!/usr/bin/env python3
"""
Per-run state shared by the pipeline stages.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Set


class PipelineStage(Enum):
    """Stage of a pipeline run."""
    EXTRACTING = "extracting"
    RESOLVING = "resolving"
    DIFFING = "diffing"
    ASSEMBLING = "assembling"
    VALIDATING = "validating"
    DONE = "done"
    ABORTED = "aborted"


@dataclass
class RunContext:
    """Accumulators and caches for one pipeline run"""
    stage: PipelineStage = PipelineStage.EXTRACTING
    error_count: int = 0
    changed_count: int = 0
    # Directory of the searching object -> directory a full-tree search found its parent in
    deep_search_hints: Dict[str, str] = field(default_factory=dict)
    full_tree_scans: int = 0
    hint_hits: int = 0
    warnings: List[str] = field(default_factory=list)
    patched_owners: Set[str] = field(default_factory=set)

    def enter(self, stage: PipelineStage):
        self.stage = stage

    def warn(self, message: str):
        self.warnings.append(message)
