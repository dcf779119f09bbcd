#!/usr/bin/env python3
"""
Failure taxonomy for the patch module build pipeline.

Every fatal condition is raised as a subclass of PatchBuildError. The
pipeline catches them, aborts the run and reports ``failure_class``
in the terminating diagnostic.
"""

from typing import Iterable, List


class PatchBuildError(Exception):
    """Base class for all fatal pipeline failures."""
    failure_class = "PatchBuildError"


class WorkspaceError(PatchBuildError):
    """The workspace or its build log could not be set up."""
    failure_class = "Workspace"


class BuildFailureError(PatchBuildError):
    """A kernel compilation pass failed."""
    failure_class = "BuildFailure"


class PatchApplicationError(PatchBuildError):
    """A source patch could not be applied."""
    failure_class = "PatchApplication"


class NoOwnerError(PatchBuildError):
    """No terminal binary could be found for a changed object."""
    failure_class = "NoOwner"

    def __init__(self, object_path: str, message: str):
        super().__init__(message)
        self.object_path = object_path


class LedgerParseError(PatchBuildError):
    """A symbol version ledger contains a malformed line."""
    failure_class = "MalformedLedger"


class VersionConflictError(PatchBuildError):
    """The final module was built against divergent symbol checksums."""
    failure_class = "VersionConflict"

    def __init__(self, conflicts: List[str]):
        self.conflicts = list(conflicts)
        super().__init__(f"Version conflict for symbol(s): {', '.join(self.conflicts)}")


class UnresolvedSymbolError(PatchBuildError):
    """The final module references symbols nothing provides."""
    failure_class = "UnresolvedSymbol"

    def __init__(self, symbols: Iterable[str]):
        self.symbols = sorted(set(symbols))
        super().__init__(f"Undefined symbols: {' '.join(self.symbols)}")


class AssemblyError(PatchBuildError):
    """The patch module could not be assembled."""
    failure_class = "AssemblyError"


class DiffErrorsError(AssemblyError):
    """The diff engine failed for one or more objects."""
    failure_class = "DiffErrors"

    def __init__(self, error_count: int):
        self.error_count = error_count
        super().__init__(f"{error_count} error(s) encountered")


class NoChangedObjectsError(AssemblyError):
    """The patch produced no object-level change."""
    failure_class = "NoChangedObjects"

    def __init__(self):
        super().__init__("no functional changes found")


class AmbiguousProvenanceError(AssemblyError):
    """A changed object has more than one candidate parent."""
    failure_class = "AmbiguousProvenance"

    def __init__(self, object_path: str, detail: str):
        self.object_path = object_path
        super().__init__(f"two parent matches for {object_path}: {detail}")


class ToolFailureError(AssemblyError):
    """An external packaging tool exited with a failure status."""
    failure_class = "ToolFailure"

    def __init__(self, tool: str, returncode: int, output: str = ""):
        self.tool = tool
        self.returncode = returncode
        self.output = output
        super().__init__(f"{tool}: exited with return code: {returncode}")
