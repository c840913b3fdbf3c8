"""Narrow interface for running external commands (apt, docker, nvidia-smi)."""

from __future__ import annotations

import logging
import os
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Sequence

from aisandbox.errors import BootstrapError

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    args: tuple[str, ...]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def check(self, phase, what: str) -> "CommandResult":
        """Raise :class:`BootstrapError` for ``phase`` if the command failed."""
        if not self.ok:
            detail = self.stderr.strip().splitlines()[-1] if self.stderr.strip() else ""
            cause = f"{what} (exit {self.returncode})"
            if detail:
                cause += f": {detail}"
            raise BootstrapError(phase, cause)
        return self


class CommandExecutor(ABC):
    """Runs a command and reports (exit status, stdout, stderr)."""

    @abstractmethod
    def run(
        self,
        args: Sequence[str],
        *,
        timeout: Optional[float] = None,
        env: Optional[dict[str, str]] = None,
    ) -> CommandResult:
        ...


class SubprocessExecutor(CommandExecutor):
    """Executes commands on the local host with ``subprocess.run``."""

    def __init__(self, base_env: Optional[dict[str, str]] = None):
        self._base_env = base_env

    def run(self, args, *, timeout=None, env=None) -> CommandResult:
        args = tuple(args)
        merged_env = None
        if self._base_env or env:
            merged_env = {**os.environ, **(self._base_env or {}), **(env or {})}

        logger.debug("Running: %s", " ".join(args))
        try:
            proc = subprocess.run(
                list(args),
                capture_output=True,
                text=True,
                timeout=timeout,
                env=merged_env,
            )
        except FileNotFoundError:
            return CommandResult(args, 127, "", f"{args[0]}: command not found")
        except subprocess.TimeoutExpired:
            return CommandResult(args, 124, "", f"timed out after {timeout}s")

        if proc.returncode != 0:
            logger.debug("Command exited %d: %s", proc.returncode, proc.stderr.strip())
        return CommandResult(args, proc.returncode, proc.stdout, proc.stderr)
