"""Command-line tools for the patch module build system."""
