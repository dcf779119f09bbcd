#!/usr/bin/env python3
"""
Patch module build tool.

Command-line interface for building a loadable kernel patch module from
one or more source patches.
"""

import argparse
import sys
from typing import List, Optional

from kpatch_build.config.build_config import PatchBuildConfig, load_build_config
from kpatch_build.pipeline import PatchModulePipeline


def build_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog='kpatch-build',
        description="Build a kernel patch module from source patches"
    )

    parser.add_argument('patches', nargs='+', help='Patch files to build into the module')
    parser.add_argument('--sourcedir', '-s', default='.', help='Kernel source directory (default: current directory)')
    parser.add_argument('--config', '-c', help='JSON build configuration file')
    parser.add_argument('--vmlinux', '-v', help='Original vmlinux, instead of the one from the original build')
    parser.add_argument('--jobs', '-j', type=int, default=0, help='Number of parallel compile jobs')
    parser.add_argument('--name', '-n', help='Name of the patch module')
    parser.add_argument('--output-dir', '-o', help='Directory the module is written to')
    parser.add_argument('--workspace', help='Scratch directory for the build')
    parser.add_argument('--tools-dir', help='Directory holding the diff and packaging tools')
    parser.add_argument('--support-dir', help='Directory holding the patch module skeleton')
    parser.add_argument(
        '--core-module',
        action='store_true',
        help='Build for the core runtime module instead of the native livepatch framework'
    )
    parser.add_argument(
        '--legacy-relocations',
        action='store_true',
        help='Target kernel lacks the newer livepatch relocation support'
    )
    parser.add_argument('--no-modversions', action='store_true', help='Target kernel has no symbol versioning')
    parser.add_argument('--skip-cleanup', action='store_true', help='Keep the workspace after the build')
    parser.add_argument('--debug', '-d', action='store_true', help='Verbose logging; keep the workspace')

    return parser


def config_from_args(args: argparse.Namespace) -> PatchBuildConfig:
    """Build the configuration, letting command line options override the file"""
    if args.config:
        config = load_build_config(args.config)
        config.patch_files = list(args.patches)
        if args.sourcedir != '.':
            config.source_dir = args.sourcedir
    else:
        config = PatchBuildConfig(source_dir=args.sourcedir, patch_files=list(args.patches))

    if args.vmlinux:
        config.vmlinux = args.vmlinux
    if args.jobs > 0:
        config.parallel_jobs = args.jobs
    if args.name:
        config.name = args.name
    if args.output_dir:
        config.output_dir = args.output_dir
    if args.workspace:
        config.workspace = args.workspace
    if args.tools_dir:
        config.tools_dir = args.tools_dir
    if args.support_dir:
        config.support_dir = args.support_dir
    if args.core_module:
        config.capabilities.native_framework = False
    if args.legacy_relocations:
        config.capabilities.legacy_relocations = True
    if args.no_modversions:
        config.capabilities.modversions = False
    if args.skip_cleanup:
        config.skip_cleanup = True
    if args.debug:
        config.debug = True

    return config


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)

    try:
        config = config_from_args(args)
    except (OSError, ValueError, TypeError) as e:
        print(f"ERROR: invalid configuration: {e}", file=sys.stderr)
        return 1

    result = PatchModulePipeline(config).run()

    if not result.success:
        message = result.errors[0] if result.errors else "build failed"
        print(f"ERROR: {result.failure_class}: {message}. Check {result.log_file} for more details.",
              file=sys.stderr)
        return 1

    for warning in result.warnings:
        print(f"WARNING: {warning}")
    print(f"SUCCESS: {result.module_path} ({result.build_time:.1f} seconds)")
    return 0


if __name__ == '__main__':
    sys.exit(main())
