"""
Argument and environment binding.

Maps the command line parameters onto the identity (environment and region
code) that selects the deployment record, and prepares the environment the
external tools run with.
"""

from __future__ import annotations

import json
import logging
import os
import re
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Mapping, Optional, Tuple

import httpx

from controlplane.azure import AzureCli
from controlplane.config import ControlPlaneConfig
from controlplane.errors import (
    DependencyError,
    ExitCode,
    InvalidArguments,
    ParameterError,
    ParameterFileMissing,
)
from controlplane.timeouts import AGENT_IP_LOOKUP_TIMEOUT_S

__all__ = [
    "TFSTATE_SUFFIX",
    "REGION_CODES",
    "DeploymentParameters",
    "DeploymentIdentity",
    "tfstate_key",
    "region_code",
    "read_key_parameters",
    "validate_parameter_files",
    "resolve_identity",
    "deploy_server_path",
    "tool_environment",
    "validate_dependencies",
    "detect_agent_ip",
]

logger = logging.getLogger(__name__)

TFSTATE_SUFFIX = ".terraform.tfstate"

# Azure region name -> four letter code used in resource and record names
REGION_CODES: Dict[str, str] = {
    "australiacentral": "AUCE",
    "australiacentral2": "AUC2",
    "australiaeast": "AUEA",
    "australiasoutheast": "AUSE",
    "brazilsouth": "BRSO",
    "brazilsoutheast": "BRSE",
    "brazilus": "BRUS",
    "canadacentral": "CACE",
    "canadaeast": "CAEA",
    "centralindia": "CEIN",
    "centralus": "CEUS",
    "centraluseuap": "CEUA",
    "eastasia": "EAAS",
    "eastus": "EAUS",
    "eastus2": "EUS2",
    "eastus2euap": "EUSA",
    "francecentral": "FRCE",
    "francesouth": "FRSO",
    "germanynorth": "GENO",
    "germanywestcentral": "GEWC",
    "israelcentral": "ISCE",
    "italynorth": "ITNO",
    "japaneast": "JAEA",
    "japanwest": "JAWE",
    "jioindiacentral": "JINC",
    "jioindiawest": "JINW",
    "koreacentral": "KOCE",
    "koreasouth": "KOSO",
    "mexicocentral": "MXCE",
    "northcentralus": "NCUS",
    "northeurope": "NOEU",
    "norwayeast": "NOEA",
    "norwaywest": "NOWE",
    "polandcentral": "PLCE",
    "qatarcentral": "QACE",
    "southafricanorth": "SANO",
    "southafricawest": "SAWE",
    "southcentralus": "SCUS",
    "southeastasia": "SOEA",
    "southindia": "SOIN",
    "spaincentral": "SPCE",
    "swedencentral": "SECE",
    "swedensouth": "SESO",
    "switzerlandnorth": "SWNO",
    "switzerlandwest": "SWWE",
    "uaecentral": "UACE",
    "uaenorth": "UANO",
    "uksouth": "UKSO",
    "ukwest": "UKWE",
    "westcentralus": "WCUS",
    "westeurope": "WEEU",
    "westindia": "WEIN",
    "westus": "WEUS",
    "westus2": "WUS2",
    "westus3": "WUS3",
}

_TFVARS_ASSIGNMENT = re.compile(r'^\s*(\w+)\s*=\s*"([^"]*)"\s*(?:#.*)?$')


def tfstate_key(parameter_file: Path) -> str:
    """
    Remote state file name for a parameter file.

    The basename up to its first dot plus the tfstate suffix:
    ``DEV-WEEU-SAP01-X00.json`` -> ``DEV-WEEU-SAP01-X00.terraform.tfstate``.
    """
    return Path(parameter_file).name.split(".", 1)[0] + TFSTATE_SUFFIX


def region_code(location: str) -> str:
    """
    Four letter code for an Azure region.

    Raises:
        ParameterError: If the region is unknown.
    """
    key = location.strip().lower().replace(" ", "")
    try:
        return REGION_CODES[key]
    except KeyError:
        raise ParameterError(f"Unknown region '{location}'") from None


@dataclass
class DeploymentParameters:
    """Command line parameters of a control plane deployment."""
    deployer_parameter_file: Optional[Path] = None
    library_parameter_file: Optional[Path] = None
    subscription: Optional[str] = None
    spn_id: Optional[str] = None
    spn_secret: Optional[str] = None
    tenant_id: Optional[str] = None
    storage_account: Optional[str] = None
    keyvault: Optional[str] = None
    force: bool = False
    auto_approve: bool = False
    msi: bool = False
    recover: bool = False
    ado: bool = False

    def __post_init__(self):
        if self.deployer_parameter_file is not None:
            self.deployer_parameter_file = Path(self.deployer_parameter_file).absolute()
        if self.library_parameter_file is not None:
            self.library_parameter_file = Path(self.library_parameter_file).absolute()

    @property
    def deployer_dir(self) -> Path:
        return self.deployer_parameter_file.parent

    @property
    def deployer_file_name(self) -> str:
        return self.deployer_parameter_file.name

    @property
    def library_dir(self) -> Path:
        return self.library_parameter_file.parent

    @property
    def library_file_name(self) -> str:
        return self.library_parameter_file.name

    @property
    def deployer_tfstate_key(self) -> str:
        return tfstate_key(self.deployer_parameter_file)

    @property
    def library_tfstate_key(self) -> str:
        return tfstate_key(self.library_parameter_file)

    def describe(self) -> Dict[str, str]:
        """Parsed arguments for display; the SPN secret is never included."""
        return {
            "deployer_parameter_file": str(self.deployer_parameter_file or ""),
            "library_parameter_file": str(self.library_parameter_file or ""),
            "subscription": self.subscription or "",
            "client_id": self.spn_id or "",
            "tenant_id": self.tenant_id or "",
            "keyvault": self.keyvault or "",
            "force": str(int(self.force)),
            "recover": str(int(self.recover)),
            "ado_flag": "--ado" if self.ado else "",
            "deploy_using_msi_only": str(int(self.msi)),
            "approve": "--auto-approve" if self.auto_approve else "",
        }


@dataclass(frozen=True)
class DeploymentIdentity:
    """Environment and region code selecting a deployment record."""
    environment: str
    region_code: str

    @property
    def record_name(self) -> str:
        return f"{self.environment}{self.region_code}"


def validate_parameter_files(params: DeploymentParameters) -> None:
    """
    Check that both parameter files were given and exist.

    Raises:
        InvalidArguments: If a parameter file argument is missing.
        ParameterFileMissing: If a parameter file does not exist.
    """
    if params.deployer_parameter_file is None:
        raise InvalidArguments("deployer_parameter_file is required")
    if params.library_parameter_file is None:
        raise InvalidArguments("library_parameter_file is required")
    if not params.deployer_parameter_file.is_file():
        raise ParameterFileMissing(
            f"deployer parameter file {params.deployer_parameter_file} does not exist"
        )
    if not params.library_parameter_file.is_file():
        raise ParameterFileMissing(
            f"library parameter file {params.library_parameter_file} does not exist"
        )


def _read_json_parameters(text: str) -> Dict[str, str]:
    data = json.loads(text)
    if not isinstance(data, dict):
        return {}
    values = {k: v for k, v in data.items() if isinstance(v, str)}
    infrastructure = data.get("infrastructure")
    if isinstance(infrastructure, dict):
        if isinstance(infrastructure.get("environment"), str):
            values.setdefault("environment", infrastructure["environment"])
        if isinstance(infrastructure.get("region"), str):
            values.setdefault("location", infrastructure["region"])
    return values


def _read_tfvars_parameters(text: str) -> Dict[str, str]:
    values = {}
    for line in text.splitlines():
        match = _TFVARS_ASSIGNMENT.match(line)
        if match:
            values[match.group(1)] = match.group(2)
    return values


def read_key_parameters(parameter_file: Path) -> Tuple[str, str]:
    """
    Environment and location defined in a parameter file.

    JSON files may define them at the top level or as
    ``infrastructure.environment`` / ``infrastructure.region``; other files
    are read as Terraform variable files.

    Raises:
        ParameterError: If the file cannot be parsed or lacks either value.
    """
    path = Path(parameter_file)
    try:
        text = path.read_text(encoding="utf-8")
        if path.suffix.lower() == ".json":
            values = _read_json_parameters(text)
        else:
            values = _read_tfvars_parameters(text)
    except (OSError, ValueError) as e:
        raise ParameterError(f"Cannot read parameter file {path}: {e}") from e

    environment = values.get("environment", "").strip()
    location = values.get("location", "").strip()
    if not environment:
        raise ParameterError(f"Environment is not defined in {path.name}")
    if not location:
        raise ParameterError(f"Location is not defined in {path.name}")
    return environment, location


def resolve_identity(params: DeploymentParameters) -> DeploymentIdentity:
    """Identity of the control plane described by the deployer parameter file."""
    environment, location = read_key_parameters(params.deployer_parameter_file)
    return DeploymentIdentity(environment=environment, region_code=region_code(location))


def deploy_server_path(profile: Path) -> Optional[str]:
    """PATH exported by a deploy server profile script, if any."""
    if not profile.is_file():
        return None
    for line in profile.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if line.startswith("export PATH="):
            return line.split("=", 1)[1].strip().strip("\"'")
    return None


def tool_environment(
    params: DeploymentParameters,
    config: ControlPlaneConfig,
    agent_ip: Optional[str] = None,
    base_env: Optional[Mapping[str, str]] = None,
) -> Dict[str, str]:
    """
    Environment for installers, Terraform and the Azure CLI.

    Service principal credentials are passed through the ARM_* variables
    unless the deployment uses managed identity only.
    """
    env = dict(os.environ if base_env is None else base_env)

    server_path = deploy_server_path(config.deploy_server_profile)
    if server_path:
        env["PATH"] = server_path
    elif agent_ip:
        env["TF_VAR_Agent_IP"] = agent_ip

    if config.automation_repo_path is not None:
        env["SAP_AUTOMATION_REPO_PATH"] = str(config.automation_repo_path)
    env["CONFIG_REPO_PATH"] = str(config.config_repo_path)

    if params.subscription:
        env["ARM_SUBSCRIPTION_ID"] = params.subscription
    if params.msi:
        env["ARM_USE_MSI"] = "true"
    else:
        if params.spn_id:
            env["ARM_CLIENT_ID"] = params.spn_id
        if params.spn_secret:
            env["ARM_CLIENT_SECRET"] = params.spn_secret
    if params.tenant_id:
        env["ARM_TENANT_ID"] = params.tenant_id
    return env


def validate_dependencies(
    params: DeploymentParameters,
    config: ControlPlaneConfig,
    az: AzureCli,
    which: Callable[[str], Optional[str]] = shutil.which,
) -> None:
    """
    Check the tools and settings the stages depend on.

    Raises:
        DependencyError: With exit code 127 for a missing tool, 65 for a
            missing or invalid automation repository, 67 when the Azure CLI
            has no signed-in account.
    """
    for tool in ("terraform", "az"):
        if which(tool) is None:
            raise DependencyError(f"{tool} is not installed or not on PATH", ExitCode.TOOL_NOT_FOUND)

    if config.automation_repo_path is None:
        raise DependencyError("SAP_AUTOMATION_REPO_PATH is not set", ExitCode.DATA_ERROR)
    if not config.get_scripts_dir().is_dir():
        raise DependencyError(
            f"Installer scripts not found in {config.get_scripts_dir()}", ExitCode.DATA_ERROR
        )

    if not params.msi and not az.is_logged_in():
        raise DependencyError("Please login using az login", ExitCode.NOT_LOGGED_IN)


def detect_agent_ip(url: str, timeout: float = AGENT_IP_LOOKUP_TIMEOUT_S) -> Optional[str]:
    """Public IP address of this agent, or None when it cannot be determined."""
    try:
        response = httpx.get(url, timeout=timeout)
        response.raise_for_status()
    except httpx.HTTPError as e:
        logger.warning(f"Could not determine the agent IP address: {e}")
        return None
    ip = response.text.strip()
    return ip or None
