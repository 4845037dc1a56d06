"""
Invocation of the automation's installer scripts.

Each installer is an external process called with a parameter file and a
fixed, stage-specific set of flags. The caller interprets the exit code.
"""

from __future__ import annotations

from pathlib import Path
from typing import List, Mapping, Optional

from controlplane.runner import CommandRunner

__all__ = ["InstallerScripts", "DEPLOYER_STATE", "LIBRARY_STATE"]

# --type values understood by installer.sh
DEPLOYER_STATE = "sap_deployer"
LIBRARY_STATE = "sap_library"


class InstallerScripts:
    """
    Argument templates for the deployer, library and state migration installers.

    Args:
        scripts_dir: ``<automation repo>/deploy/scripts``
        runner: Command runner
    """

    def __init__(self, scripts_dir: Path, runner: CommandRunner):
        self.scripts_dir = Path(scripts_dir)
        self.runner = runner

    def _script(self, name: str) -> str:
        return str(self.scripts_dir / name)

    def install_deployer(
        self,
        parameter_file: str,
        cwd: Path,
        auto_approve: bool = False,
        env: Optional[Mapping[str, str]] = None,
    ) -> int:
        """Run install_deployer.sh; returns its exit code."""
        argv: List[str] = [self._script("install_deployer.sh"), "--parameterfile", parameter_file]
        if auto_approve:
            argv.append("--auto-approve")
        return self.runner.run(argv, cwd=cwd, env=env).returncode

    def install_library(
        self,
        parameter_file: str,
        deployer_dir: Path,
        cwd: Path,
        auto_approve: bool = False,
        env: Optional[Mapping[str, str]] = None,
    ) -> int:
        """Run install_library.sh; returns its exit code."""
        argv = [self._script("install_library.sh"), "-p", parameter_file, "-d", str(deployer_dir)]
        if auto_approve:
            argv.append("--auto-approve")
        return self.runner.run(argv, cwd=cwd, env=env).returncode

    def migrate_state(
        self,
        parameter_file: str,
        storage_account: str,
        state_type: str,
        cwd: Path,
        auto_approve: bool = False,
        ado: bool = False,
        env: Optional[Mapping[str, str]] = None,
    ) -> int:
        """Run installer.sh to move local state into the remote storage account."""
        argv = [
            self._script("installer.sh"),
            "--parameterfile", parameter_file,
            "--storageaccountname", storage_account,
            "--type", state_type,
        ]
        if auto_approve:
            argv.append("--auto-approve")
        if ado:
            argv.append("--ado")
        return self.runner.run(argv, cwd=cwd, env=env).returncode
