"""
Patch module build system.

Builds a loadable kernel patch module from a source-level patch by
compiling the original and patched kernel trees, resolving which binary
owns every changed object, diffing the changed objects and assembling the
resulting fragments into a single module.
"""

__version__ = "0.4.0"
