#!/usr/bin/env python3
"""
External command execution for the patch module build system.

Every compiler, linker and object tool call goes through CommandRunner so
the pipeline stages can be exercised with a fake runner.
"""

import os
import subprocess
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional


@dataclass
class CommandResult:
    """Result of an external command"""
    command: List[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def success(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        """Combined stdout and stderr, as written to the build log"""
        return "\n".join(part for part in (self.stdout, self.stderr) if part)


class CommandRunner:
    """Runs external commands and captures their output"""

    def __init__(self):
        self.logger = logging.getLogger(__name__)

    def run(self, command: List[str], cwd: Optional[str] = None,
            env: Optional[Dict[str, str]] = None) -> CommandResult:
        """
        Run a command to completion.

        Args:
            command: Command and arguments
            cwd: Working directory
            env: Variables merged over the current process environment

        Returns:
            CommandResult with exit status and captured output
        """
        full_env = os.environ.copy()
        if env:
            full_env.update(env)

        self.logger.debug(f"Running command: {' '.join(command)}")
        if cwd:
            self.logger.debug(f"Working directory: {cwd}")

        try:
            process = subprocess.run(
                command,
                cwd=cwd,
                env=full_env,
                capture_output=True,
                text=True
            )
        except FileNotFoundError as e:
            self.logger.error(f"Command not found: {command[0]}")
            return CommandResult(command=list(command), returncode=127, stderr=str(e))

        result = CommandResult(
            command=list(command),
            returncode=process.returncode,
            stdout=process.stdout,
            stderr=process.stderr
        )

        if result.output:
            self.logger.debug(result.output)

        return result
