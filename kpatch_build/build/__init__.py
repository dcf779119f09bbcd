"""
Kernel build integration.

Build record indexing, provenance resolution of compiled objects and the
original/patched kernel compilation passes.
"""

from .build_records import BuildRecord, BuildRecordStore
from .provenance import ProvenanceEdge, OwnershipChain, ProvenanceResolver
from .kernel_builder import KernelBuilder

__all__ = ['BuildRecord', 'BuildRecordStore', 'ProvenanceEdge', 'OwnershipChain', 'ProvenanceResolver', 'KernelBuilder']
