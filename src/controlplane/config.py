"""
Centralized configuration for the control-plane bootstrap.

Uses Pydantic BaseSettings for environment variable integration
and validation. All configurable values should be defined here.

Configuration sources (in order of precedence):
1. Explicit constructor arguments
2. Environment variables (CONTROLPLANE_*, or the automation's established
   names such as SAP_AUTOMATION_REPO_PATH and FORCE_RESET)
3. .env file
4. Default values

Example:
    from controlplane.config import get_config

    config = get_config()
    print(config.config_dir)  # <CONFIG_REPO_PATH>/.sap_deployment_automation

    # Override at runtime
    config = get_config(force_reset=True)
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Literal, Optional

from pydantic import AliasChoices, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from controlplane.timeouts import (
    SECRET_RECOVERY_POLL_INTERVAL_S,
    SECRET_RECOVERY_TIMEOUT_S,
)

# Directory under the configuration repository holding the config store
CONFIG_DIR_NAME = ".sap_deployment_automation"


class ControlPlaneConfig(BaseSettings):
    """
    Central configuration for the control-plane bootstrap.

    Example:
        export SAP_AUTOMATION_REPO_PATH=~/Azure_SAP_Automated_Deployment/sap-automation
        export CONFIG_REPO_PATH=~/Azure_SAP_Automated_Deployment/WORKSPACES
        export CONTROLPLANE_LOG_LEVEL=debug
    """

    model_config = SettingsConfigDict(
        env_prefix="CONTROLPLANE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # Repositories
    automation_repo_path: Optional[Path] = Field(
        default=None,
        validation_alias=AliasChoices(
            "automation_repo_path",
            "CONTROLPLANE_AUTOMATION_REPO_PATH",
            "SAP_AUTOMATION_REPO_PATH",
        ),
        description="Checkout of the automation repository (installer scripts, Terraform modules)",
    )
    config_repo_path: Path = Field(
        default_factory=Path.cwd,
        validation_alias=AliasChoices(
            "config_repo_path",
            "CONTROLPLANE_CONFIG_REPO_PATH",
            "CONFIG_REPO_PATH",
        ),
        description="Configuration repository holding the parameter files",
    )
    config_dir: Optional[Path] = Field(
        default=None,
        description="Config store directory (defaults to <config_repo_path>/.sap_deployment_automation)",
    )

    # Sequencing
    force_reset: bool = Field(
        default=False,
        validation_alias=AliasChoices(
            "force_reset",
            "CONTROLPLANE_FORCE_RESET",
            "FORCE_RESET",
        ),
        description="Library already bootstrapped: continue with the deployer state migration after stage 0. "
        "Any non-empty value enables it.",
    )

    # Azure DevOps integration
    ado_build_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("ado_build_id", "ADO_BUILD_ID"),
        description="Set by Azure DevOps pipelines; switches progress output to logging commands",
    )

    # Agent environment
    agent_ip_url: str = Field(
        default="https://ipinfo.io/ip",
        description="Endpoint returning the public IP of this agent",
    )
    deploy_server_profile: Path = Field(
        default=Path("/etc/profile.d/deploy_server.sh"),
        description="Profile script present on provisioned deploy servers",
    )

    # Key vault
    secret_recovery_timeout_s: float = Field(
        default=SECRET_RECOVERY_TIMEOUT_S,
        gt=0,
        description="Maximum wait for a recovered secret to become readable",
    )
    secret_recovery_poll_interval_s: float = Field(
        default=SECRET_RECOVERY_POLL_INTERVAL_S,
        gt=0,
        description="Initial delay between secret readiness polls",
    )

    # Logging
    log_level: Literal["debug", "info", "warning", "error"] = Field(
        default="info",
        description="Logging level",
    )
    log_format: Literal["json", "text"] = Field(
        default="text",
        description="Log output format for diagnostic logs",
    )

    @field_validator("automation_repo_path", "config_repo_path", "config_dir", mode="before")
    @classmethod
    def expand_path(cls, v):
        """Expand ~ and environment variables in paths."""
        if isinstance(v, str):
            if not v.strip():
                return None
            return os.path.expanduser(os.path.expandvars(v))
        return v

    @field_validator("force_reset", mode="before")
    @classmethod
    def non_empty_is_set(cls, v):
        """Treat any non-empty string as set and an empty one as unset."""
        if isinstance(v, str):
            return bool(v)
        return v

    @model_validator(mode="after")
    def default_config_dir(self) -> "ControlPlaneConfig":
        """Derive the store directory from the configuration repository."""
        if self.config_dir is None:
            self.config_dir = self.config_repo_path / CONFIG_DIR_NAME
        return self

    @property
    def is_ado(self) -> bool:
        """Whether the run happens inside an Azure DevOps pipeline."""
        return bool(self.ado_build_id)

    @property
    def on_deploy_server(self) -> bool:
        """Whether this machine is a provisioned deploy server."""
        return self.deploy_server_profile.is_file()

    def get_generic_config_path(self) -> Path:
        """Path of the environment-independent defaults file."""
        return self.config_dir / "config"

    def get_record_path(self, record_name: str) -> Path:
        """Path of the deployment record for an identity."""
        return self.config_dir / f"{record_name}.json"

    def get_scripts_dir(self) -> Path:
        """Directory holding the installer scripts."""
        return self.automation_repo_path / "deploy" / "scripts"

    def get_bootstrap_module_dir(self, module: str) -> Path:
        """Terraform bootstrap module directory (sap_deployer, sap_library)."""
        return self.automation_repo_path / "deploy" / "terraform" / "bootstrap" / module


# Global singleton
_config: Optional[ControlPlaneConfig] = None


def get_config(**overrides) -> ControlPlaneConfig:
    """
    Get the global configuration instance.

    Creates a singleton on first call. Subsequent calls return
    the same instance unless overrides are provided.

    Args:
        **overrides: Override any config values

    Returns:
        ControlPlaneConfig instance
    """
    global _config

    if overrides or _config is None:
        _config = ControlPlaneConfig(**overrides)

    return _config


def reset_config() -> None:
    """Reset the global configuration (for testing)."""
    global _config
    _config = None
