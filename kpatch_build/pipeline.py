#!/usr/bin/env python3
"""
Patch module build pipeline

Runs the stages that turn a source patch into a loadable patch module:
extracting the changed objects, resolving their owners, diffing them,
assembling the module and validating it. Any failure aborts the run and
reverts the source patches.
"""

import logging
import shutil
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from kpatch_build.build.build_records import BuildRecordStore
from kpatch_build.build.kernel_builder import KernelBuilder
from kpatch_build.build.provenance import ProvenanceResolver
from kpatch_build.config.build_config import PatchBuildConfig
from kpatch_build.context import PipelineStage, RunContext
from kpatch_build.errors import PatchApplicationError, PatchBuildError, WorkspaceError
from kpatch_build.patch.assembler import PatchModule, PatchModuleAssembler
from kpatch_build.patch.changed_set import ChangedObject, ChangedSetExtractor
from kpatch_build.patch.diff_engine import DiffEngine
from kpatch_build.patch.patch_engine import PatchEngine, PatchStatus
from kpatch_build.symbols.completeness import CompletenessValidator
from kpatch_build.symbols.symvers import SymbolVersionLedger, compare, read_module_versions, validate_final
from kpatch_build.utils.command_runner import CommandRunner
from kpatch_build.utils.file_utils import ensure_directory

LOGGER_NAME = "kpatch_build"
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

STAGES = [
    PipelineStage.EXTRACTING,
    PipelineStage.RESOLVING,
    PipelineStage.DIFFING,
    PipelineStage.ASSEMBLING,
    PipelineStage.VALIDATING,
]


@dataclass
class PipelineResult:
    """Result of a pipeline run"""
    success: bool
    stage: PipelineStage
    module_name: str
    module_path: Optional[str] = None
    failure_class: Optional[str] = None
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    log_file: str = ""
    build_time: float = 0.0


class PatchModulePipeline:
    """Builds one patch module per run"""

    def __init__(self, config: PatchBuildConfig, runner: Optional[CommandRunner] = None,
                 builder: Optional[KernelBuilder] = None, patch_engine: Optional[PatchEngine] = None,
                 diff_engine: Optional[DiffEngine] = None):
        self.config = config
        self.layout = config.layout
        self.runner = runner or CommandRunner()
        self.context = RunContext()
        self.logger = logging.getLogger(LOGGER_NAME)

        self.builder = builder or KernelBuilder(config, self.runner)
        self.patch_engine = patch_engine or PatchEngine(
            config.source_dir, str(self.layout.root / "backups"), self.runner
        )
        self.diff_engine = diff_engine or DiffEngine(config.tools_dir, self.runner)
        self.extractor = ChangedSetExtractor(config, self.context, self.diff_engine, self.builder.original_binary)
        self.assembler = PatchModuleAssembler(config, self.context, self.runner)

    def _setup_logging(self) -> logging.Logger:
        """Setup console and build log handlers for the run"""
        logger = logging.getLogger(LOGGER_NAME)
        logger.setLevel(logging.DEBUG if self.config.debug else logging.INFO)
        formatter = logging.Formatter(LOG_FORMAT)

        if not any(type(handler) is logging.StreamHandler for handler in logger.handlers):
            console_handler = logging.StreamHandler()
            console_handler.setFormatter(formatter)
            logger.addHandler(console_handler)

        self._close_log_file()
        file_handler = logging.FileHandler(self.layout.log_file)
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

        return logger

    def _close_log_file(self):
        for handler in list(self.logger.handlers):
            if isinstance(handler, logging.FileHandler):
                self.logger.removeHandler(handler)
                handler.close()

    def _enter(self, stage: PipelineStage, message: str):
        self.context.enter(stage)
        step = STAGES.index(stage) + 1
        self.logger.info(f"[{stage.value}] {message} ({step}/{len(STAGES)})")

    def prepare_workspace(self):
        """Wipe the workspace, create its directories and open the build log"""
        try:
            if self.layout.root.exists():
                shutil.rmtree(self.layout.root)
            for directory in self.layout.directories():
                ensure_directory(str(directory))
            self._setup_logging()
        except OSError as e:
            raise WorkspaceError(f"Could not prepare workspace {self.layout.root}: {e}") from e

    def extract(self) -> List[ChangedObject]:
        """Build both trees and load the changed objects"""
        self._enter(PipelineStage.EXTRACTING, "Building original and patched source")

        self.builder.build_original()
        self.patch_engine.apply_patches(self.config.patch_files)
        changed_list = self.builder.build_patched()
        self.revert_patches()

        work_list = self.extractor.load_work_list(str(changed_list))
        self.builder.collect_patched_objects([changed.path for changed in work_list])
        return work_list

    def resolve(self, work_list: List[ChangedObject]):
        self._enter(PipelineStage.RESOLVING, "Resolving the owners of the changed objects")
        resolver = ProvenanceResolver(BuildRecordStore(self.config.source_dir), self.context)
        self.extractor.resolve_owners(work_list, resolver)

    def diff(self, work_list: List[ChangedObject]):
        self._enter(PipelineStage.DIFFING, "Extracting new and modified ELF sections")
        self.extractor.diff_objects(work_list)

    def assemble(self, work_list: List[ChangedObject]) -> PatchModule:
        self._enter(PipelineStage.ASSEMBLING, "Assembling the patch module")
        return self.assembler.assemble(work_list, self.config.capabilities)

    def validate(self, module: PatchModule):
        """Gate the assembled module on symbol versions and completeness"""
        self._enter(PipelineStage.VALIDATING, f"Validating {module.name}.ko")

        kernel_ledger = SymbolVersionLedger()
        if self.layout.pre_symvers.exists():
            kernel_ledger = SymbolVersionLedger.from_file(str(self.layout.pre_symvers))

        if self.config.capabilities.modversions:
            post_ledger = SymbolVersionLedger.from_file(str(self.config.symvers_path))
            for warning in compare(kernel_ledger, post_ledger):
                self.logger.warning(str(warning))
                self.context.warn(str(warning))

            validate_final(read_module_versions(self.runner, module.artifact), kernel_ledger)

        validator = CompletenessValidator(
            self.runner,
            kernel_ledger,
            core_module_mode=not self.config.capabilities.native_framework
        )
        validator.validate(module.artifact)

    def deliver(self, module: PatchModule) -> str:
        """Copy the module out of the workspace"""
        output_dir = ensure_directory(self.config.output_dir)
        destination = output_dir / f"{module.name}.ko"
        shutil.copy2(module.artifact, destination)
        return str(destination)

    def revert_patches(self):
        """Revert every applied source patch"""
        results = self.patch_engine.rollback_all()
        failed = [result.patch_file for result in results if result.status != PatchStatus.ROLLBACK_SUCCESS]
        if failed:
            raise PatchApplicationError(f"Could not revert patch(es): {', '.join(failed)}")

    def cleanup(self, success: bool):
        """Remove the workspace, keeping the build log unless the run succeeded"""
        if self.config.skip_cleanup or self.config.debug or not self.layout.root.is_dir():
            return

        for entry in self.layout.root.iterdir():
            if entry == self.layout.log_file:
                continue
            if entry.is_dir():
                shutil.rmtree(entry)
            else:
                entry.unlink()

        if success:
            self._close_log_file()
            self.layout.log_file.unlink()

    def run(self) -> PipelineResult:
        """Run the pipeline and return its result"""
        start_time = datetime.now()
        module_name = self.config.module_name()
        result = PipelineResult(
            success=False,
            stage=PipelineStage.EXTRACTING,
            module_name=module_name,
            log_file=str(self.layout.log_file)
        )

        try:
            self.prepare_workspace()
            self.logger.info(f"Building patch module {module_name} from {', '.join(self.config.patch_files)}")

            work_list = self.extract()
            self.resolve(work_list)
            self.diff(work_list)
            module = self.assemble(work_list)
            self.validate(module)
            result.module_path = self.deliver(module)
            self.context.enter(PipelineStage.DONE)
            result.success = True
            self.logger.info(f"SUCCESS: {result.module_path}")

        except PatchBuildError as e:
            self.logger.error(f"{e.failure_class} during {self.context.stage.value}: {e}")
            result.failure_class = e.failure_class
            result.errors.append(str(e))
        except Exception as e:
            self.logger.exception(f"Unexpected error during {self.context.stage.value}: {e}")
            result.failure_class = type(e).__name__
            result.errors.append(str(e))

        if not result.success:
            result.stage = self.context.stage
            self.context.enter(PipelineStage.ABORTED)
            self._rollback_on_abort(result)
        else:
            result.stage = PipelineStage.DONE

        result.warnings = list(self.context.warnings)
        result.build_time = (datetime.now() - start_time).total_seconds()
        self.cleanup(result.success)
        return result

    def _rollback_on_abort(self, result: PipelineResult):
        if not self.patch_engine.applied_patches:
            return
        try:
            self.revert_patches()
        except PatchApplicationError as e:
            self.logger.error(str(e))
            result.errors.append(str(e))
