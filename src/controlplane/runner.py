"""External process execution for installers, Terraform and the Azure CLI."""

from __future__ import annotations

import logging
import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional, Sequence

__all__ = ["CommandResult", "CommandRunner", "mask_arguments"]

logger = logging.getLogger(__name__)

# Options whose value must never appear in logs
SECRET_OPTIONS = frozenset({"--value"})

# Shell convention for "command not found"
COMMAND_NOT_FOUND = 127


def mask_arguments(argv: Sequence[str]) -> str:
    """Render a command for logging with secret option values masked."""
    parts = []
    mask_next = False
    for arg in argv:
        if mask_next:
            parts.append("***")
            mask_next = False
            continue
        parts.append(shlex.quote(str(arg)))
        if arg in SECRET_OPTIONS:
            mask_next = True
    return " ".join(parts)


@dataclass
class CommandResult:
    """Outcome of an external command."""
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class CommandRunner:
    """
    Runs external commands as blocking calls.

    No timeout is applied: installers can legitimately run for a long time,
    and a hanging tool blocks the sequence until the process is terminated.
    """

    def run(
        self,
        argv: Sequence[str],
        cwd: Optional[Path] = None,
        env: Optional[Mapping[str, str]] = None,
        capture: bool = False,
    ) -> CommandResult:
        """
        Run a command and wait for it to finish.

        Args:
            argv: Command and arguments
            cwd: Working directory for the command
            env: Complete environment for the command (inherits when None)
            capture: Capture stdout/stderr instead of streaming them

        Returns:
            CommandResult; a missing executable yields return code 127.
        """
        argv = [str(a) for a in argv]
        logger.info(f"Running: {mask_arguments(argv)}" + (f" (in {cwd})" if cwd else ""))
        try:
            if capture:
                cp = subprocess.run(
                    argv,
                    cwd=cwd,
                    env=dict(env) if env is not None else None,
                    capture_output=True,
                    text=True,
                )
                return CommandResult(cp.returncode, cp.stdout or "", cp.stderr or "")
            cp = subprocess.run(
                argv,
                cwd=cwd,
                env=dict(env) if env is not None else None,
            )
            return CommandResult(cp.returncode)
        except FileNotFoundError as e:
            logger.error(f"Command not found: {argv[0]} ({e})")
            return CommandResult(COMMAND_NOT_FOUND, "", str(e))
