"""
Pytest configuration and fixtures for control plane bootstrap tests.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Generator, List, Optional, Sequence, Tuple

import pytest

from controlplane.binding import DeploymentIdentity, DeploymentParameters
from controlplane.config import ControlPlaneConfig, reset_config
from controlplane.context import DeploymentContext
from controlplane.runner import CommandResult
from controlplane.store import ConfigStore


# ============================================================================
# Environment Fixtures
# ============================================================================

# Variables that change how the bootstrap behaves when set on the test host
_HOST_VARIABLES = (
    "FORCE_RESET",
    "ADO_BUILD_ID",
    "SAP_AUTOMATION_REPO_PATH",
    "CONFIG_REPO_PATH",
    "CONTROLPLANE_FORCE_RESET",
    "CONTROLPLANE_AUTOMATION_REPO_PATH",
    "CONTROLPLANE_CONFIG_REPO_PATH",
    "CONTROLPLANE_CONFIG_DIR",
    "CONTROLPLANE_LOG_LEVEL",
    "CONTROLPLANE_LOG_FORMAT",
    "CONTROLPLANE_DEPLOY_SERVER_PROFILE",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch) -> Generator[None, None, None]:
    """Isolate each test from the host environment and the config singleton."""
    for key in _HOST_VARIABLES:
        monkeypatch.delenv(key, raising=False)
    reset_config()
    yield
    reset_config()
    # configure_logging() binds handlers to the stderr of the invoking test
    logging.getLogger("controlplane").handlers.clear()


# ============================================================================
# Command Runner Double
# ============================================================================


@dataclass
class RecordedCall:
    argv: List[str]
    cwd: Optional[Path] = None
    env: Optional[Dict[str, str]] = None
    capture: bool = False

    @property
    def program(self) -> str:
        return Path(self.argv[0]).name


def _matches(argv: Sequence[str], pattern: Tuple[str, ...]) -> bool:
    tokens = set(argv) | {Path(a).name for a in argv}
    return all(t in tokens for t in pattern)


class FakeRunner:
    """
    Scripted stand-in for CommandRunner.

    Responses are registered with ``on(*tokens)``; a call matches when all
    tokens appear in its argv (script paths also match by file name). The
    most recent registration wins. Unmatched calls succeed with no output.
    """

    def __init__(self):
        self.calls: List[RecordedCall] = []
        self._responses: List[Tuple[Tuple[str, ...], CommandResult]] = []

    def on(self, *tokens: str, returncode: int = 0, stdout: str = "", stderr: str = "") -> "FakeRunner":
        self._responses.append((tokens, CommandResult(returncode, stdout, stderr)))
        return self

    def run(self, argv, cwd=None, env=None, capture=False) -> CommandResult:
        argv = [str(a) for a in argv]
        self.calls.append(RecordedCall(argv, cwd, dict(env) if env is not None else None, capture))
        for tokens, result in reversed(self._responses):
            if _matches(argv, tokens):
                return result
        return CommandResult(0)

    def calls_to(self, *tokens: str) -> List[RecordedCall]:
        return [c for c in self.calls if _matches(c.argv, tokens)]

    @property
    def programs(self) -> List[str]:
        return [c.program for c in self.calls]


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


def script_successful_run(runner: FakeRunner) -> FakeRunner:
    """Responses for a bootstrap that completes every stage."""
    runner.on("output", "deployer_kv_user_name", stdout="DEVWEEUDEP00user\n")
    runner.on("output", "sapbits_sa_resource_group_name", stdout="DEV-WEEU-SAP_LIBRARY")
    runner.on("output", "remote_state_storage_account_name", stdout="devweeutfstate042")
    runner.on("output", "created_resource_group_subscription_id", stdout='"sub-state"')
    runner.on("output", "sa_connection_string", stdout="DefaultEndpointsProtocol=https;AccountName=devweeutfstate042")
    runner.on("keyvault", "list-deleted", stdout="[]")
    runner.on("keyvault", "secret", "list", stdout="[]")
    return runner


@pytest.fixture
def successful_runner(fake_runner) -> FakeRunner:
    return script_successful_run(fake_runner)


# ============================================================================
# Workspace Fixtures
# ============================================================================


@pytest.fixture
def workspace(tmp_path) -> Dict[str, Path]:
    """Automation and configuration repositories with both parameter files."""
    automation = tmp_path / "sap-automation"
    (automation / "deploy" / "scripts").mkdir(parents=True)
    config_repo = tmp_path / "WORKSPACES"

    deployer_dir = config_repo / "DEPLOYER" / "DEV-WEEU-DEP00-INFRASTRUCTURE"
    deployer_dir.mkdir(parents=True)
    deployer_file = deployer_dir / "DEV-WEEU-DEP00-INFRASTRUCTURE.json"
    deployer_file.write_text(json.dumps({
        "infrastructure": {"environment": "DEV", "region": "westeurope"},
    }))

    library_dir = config_repo / "LIBRARY" / "DEV-WEEU-SAP_LIBRARY"
    library_dir.mkdir(parents=True)
    library_file = library_dir / "DEV-WEEU-SAP_LIBRARY.tfvars"
    library_file.write_text('environment = "DEV"\nlocation = "westeurope"\n')

    return {
        "root": tmp_path,
        "automation": automation,
        "config_repo": config_repo,
        "deployer_file": deployer_file,
        "library_file": library_file,
    }


@pytest.fixture
def config(workspace) -> ControlPlaneConfig:
    return ControlPlaneConfig(
        automation_repo_path=workspace["automation"],
        config_repo_path=workspace["config_repo"],
        deploy_server_profile=workspace["root"] / "no-deploy-server.sh",
        secret_recovery_timeout_s=10,
        secret_recovery_poll_interval_s=1,
    )


@pytest.fixture
def params(workspace) -> DeploymentParameters:
    return DeploymentParameters(
        deployer_parameter_file=workspace["deployer_file"],
        library_parameter_file=workspace["library_file"],
        subscription="sub-1",
        spn_id="spn-app-id",
        spn_secret="spn-s3cret",
        tenant_id="tenant-1",
    )


@pytest.fixture
def identity() -> DeploymentIdentity:
    return DeploymentIdentity(environment="DEV", region_code="WEEU")


@pytest.fixture
def store(config, identity) -> ConfigStore:
    return ConfigStore(
        store_dir=config.config_dir,
        generic_path=config.get_generic_config_path(),
        record_path=config.get_record_path(identity.record_name),
    )


@pytest.fixture
def make_context(params, config, store, identity, fake_runner):
    """Factory for a DeploymentContext over the test workspace."""

    def _make(**overrides) -> DeploymentContext:
        kwargs = dict(
            params=params,
            identity=identity,
            config=config,
            store=store,
            record=store.init(identity.environment, identity.region_code),
            runner=fake_runner,
            sleep=lambda seconds: None,
        )
        kwargs.update(overrides)
        return DeploymentContext(**kwargs)

    return _make
