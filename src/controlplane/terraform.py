"""Terraform output queries against the bootstrap modules."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Mapping, Optional

from controlplane.errors import ExternalToolError
from controlplane.runner import CommandRunner

__all__ = ["TerraformOutputs"]

logger = logging.getLogger(__name__)


class TerraformOutputs:
    """
    Reads raw output values of a Terraform module.

    Args:
        module_dir: Module directory passed to ``terraform -chdir``
        runner: Command runner
        env: Environment for terraform (TF_DATA_DIR selects the local state)
    """

    def __init__(
        self,
        module_dir: Path,
        runner: CommandRunner,
        env: Optional[Mapping[str, str]] = None,
    ):
        self.module_dir = Path(module_dir)
        self.runner = runner
        self.env = env

    def get(self, name: str) -> str:
        """
        Value of output ``name`` with surrounding quotes removed.

        Raises:
            ExternalToolError: If terraform exits non-zero or the output is empty.
        """
        result = self.runner.run(
            ["terraform", f"-chdir={self.module_dir}", "output", "-no-color", "-raw", name],
            env=self.env,
            capture=True,
        )
        if not result.ok:
            raise ExternalToolError(
                f"terraform output {name} failed: {result.stderr.strip()}",
                result.returncode,
            )
        value = result.stdout.strip().replace('"', "")
        if not value:
            raise ExternalToolError(f"terraform output {name} is empty")
        return value

    def get_optional(self, name: str) -> Optional[str]:
        """Value of output ``name``, or None when it cannot be read."""
        try:
            return self.get(name)
        except ExternalToolError as e:
            logger.debug(f"Output {name} unavailable: {e}")
            return None
