"""
Deployment context threaded through the sequencer and the stage handlers.

Holds everything a stage needs: the bound parameters, the identity, the
configuration, the store and the in-process copy of the deployment record,
plus factories for the external collaborators. Stages exchange discovered
identifiers only through the record, never through process-wide state.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from controlplane.azure import AzureCli, StorageAccount
from controlplane.binding import DeploymentIdentity, DeploymentParameters, tool_environment
from controlplane.config import ControlPlaneConfig
from controlplane.installers import InstallerScripts
from controlplane.keyvault import KeyVault
from controlplane.logger import StageLogger
from controlplane.models import DeploymentRecord
from controlplane.runner import CommandRunner
from controlplane.store import ConfigStore
from controlplane.terraform import TerraformOutputs

__all__ = ["DeploymentContext", "DEPLOYER_MODULE", "LIBRARY_MODULE"]

logger = logging.getLogger(__name__)

# Terraform bootstrap modules under <automation repo>/deploy/terraform/bootstrap
DEPLOYER_MODULE = "sap_deployer"
LIBRARY_MODULE = "sap_library"


@dataclass
class DeploymentContext:
    """Mutable state of one control plane deployment run."""
    params: DeploymentParameters
    identity: DeploymentIdentity
    config: ControlPlaneConfig
    store: ConfigStore
    record: DeploymentRecord
    runner: CommandRunner = field(default_factory=CommandRunner)
    agent_ip: Optional[str] = None
    sleep: Optional[Callable[[float], None]] = None
    events: Optional[StageLogger] = None

    def __post_init__(self):
        if self.events is None:
            self.events = StageLogger(self.identity.environment, self.identity.region_code)

    def tool_env(self, **extra: str) -> Dict[str, str]:
        """Environment for an external tool, with ``extra`` variables added."""
        env = tool_environment(self.params, self.config, agent_ip=self.agent_ip)
        env.update(extra)
        return env

    def persist(self, key: str, value: Any) -> None:
        """Set ``key`` on the record and save it to the store."""
        self.record.set(key, value)
        self.store.save(key, self.record)

    def azure(self, **extra_env: str) -> AzureCli:
        return AzureCli(self.runner, env=self.tool_env(**extra_env))

    def installers(self) -> InstallerScripts:
        return InstallerScripts(self.config.get_scripts_dir(), self.runner)

    def key_vault(self) -> KeyVault:
        """Client for the deployer key vault recorded by stage 0."""
        kwargs: Dict[str, Any] = {
            "timeout_s": self.config.secret_recovery_timeout_s,
            "interval_s": self.config.secret_recovery_poll_interval_s,
        }
        if self.sleep is not None:
            kwargs["sleep"] = self.sleep
        return KeyVault(self.record.keyvault, self.azure(), **kwargs)

    def storage_account(self, resource_group: str, name: str) -> StorageAccount:
        return StorageAccount(self.azure(), resource_group, name)

    def deployer_outputs(self) -> TerraformOutputs:
        return TerraformOutputs(
            self.config.get_bootstrap_module_dir(DEPLOYER_MODULE),
            self.runner,
            env=self.tool_env(TF_DATA_DIR=str(self.params.deployer_dir / ".terraform")),
        )

    def library_outputs(self) -> TerraformOutputs:
        return TerraformOutputs(
            self.config.get_bootstrap_module_dir(LIBRARY_MODULE),
            self.runner,
            env=self.tool_env(TF_DATA_DIR=str(self.params.library_dir / ".terraform")),
        )
