"""
Stage handlers of the control plane bootstrap.

Each stage is bound to one trigger step. ``Stage.execute`` checks the
current step of the deployment record against that trigger: on a mismatch
the stage does nothing (no external call) and reports ``SKIPPED``, which
callers treat as success. On a match the stage runs its external tool and
either completes or raises ``StageFailed`` carrying its exit code.

Stages never change the process working directory; tools are started with
the stage's directory as ``cwd``.
"""

from __future__ import annotations

import logging
import shutil
from enum import Enum
from pathlib import Path
from typing import Dict

import click

from controlplane.banner import print_banner
from controlplane.context import DeploymentContext
from controlplane.errors import ExitCode, ExternalToolError, StageFailed
from controlplane.installers import DEPLOYER_STATE, LIBRARY_STATE

__all__ = [
    "StageOutcome",
    "Stage",
    "BootstrapDeployer",
    "ValidateKeyvaultAccess",
    "BootstrapLibrary",
    "MigrateDeployerState",
    "MigrateLibraryState",
    "SA_CONNECTION_STRING_SECRET",
    "reset_local_state",
]

logger = logging.getLogger(__name__)

# Key vault secret holding the remote state storage account connection string
SA_CONNECTION_STRING_SECRET = "sa-connection-string"


class StageOutcome(str, Enum):
    """Result of invoking a stage handler."""
    COMPLETED = "completed"
    SKIPPED = "skipped"


def reset_local_state(directory: Path) -> None:
    """Remove local Terraform working data and state files from ``directory``."""
    shutil.rmtree(directory / ".terraform", ignore_errors=True)
    for state_file in directory.glob("terraform.tfstate*"):
        if state_file.is_file():
            state_file.unlink()
    logger.info(f"Removed local Terraform state in {directory}")


class Stage:
    """Base class for stage handlers."""

    name: str = ""
    title: str = ""
    trigger: int = -1
    start_message: str = ""
    failure_exit_code: int = ExitCode.INVALID_ARGUMENTS

    def execute(self, ctx: DeploymentContext) -> StageOutcome:
        """
        Run the stage if the record's step matches the trigger.

        Raises:
            StageFailed: If the stage's external work fails.
        """
        if ctx.record.step != self.trigger:
            logger.info(
                f"{self.name}: step is {ctx.record.step}, not {self.trigger}; already complete"
            )
            return StageOutcome.SKIPPED

        print_banner(self.title, self.start_message, "info")
        try:
            self.run(ctx)
        except ExternalToolError as e:
            raise self.failed(str(e)) from e
        return StageOutcome.COMPLETED

    def run(self, ctx: DeploymentContext) -> None:
        raise NotImplementedError

    def failed(self, message: str) -> StageFailed:
        return StageFailed(self.name, message, self.failure_exit_code)

    def require_keyvault(self, ctx: DeploymentContext) -> str:
        if not ctx.record.keyvault:
            raise self.failed("Key vault not found in the configuration")
        return ctx.record.keyvault

    def remote_state_account(self, ctx: DeploymentContext) -> str:
        """Remote state storage account from the record or the command line."""
        account = ctx.record.remote_state_sa or ctx.params.storage_account
        if not account:
            raise self.failed("Remote state storage account is not known")
        return account

    def connection_string_env(self, ctx: DeploymentContext) -> Dict[str, str]:
        """TF_VAR_sa_connection_string from the key vault, recovering the secret if needed."""
        value = ctx.key_vault().ensure_available(SA_CONNECTION_STRING_SECRET)
        if value is None:
            logger.warning(
                f"Secret {SA_CONNECTION_STRING_SECRET} not found in keyvault {ctx.record.keyvault}"
            )
            return {}
        return {"TF_VAR_sa_connection_string": value}


class BootstrapDeployer(Stage):
    """Stage 0: deploy the deployer with local state and record its key vault."""

    name = "bootstrap-deployer"
    title = "Bootstrap-Deployer"
    trigger = 0
    start_message = "Bootstrapping the deployer..."
    failure_exit_code = ExitCode.DEPLOYER_BOOTSTRAP_FAILED

    def run(self, ctx: DeploymentContext) -> None:
        params = ctx.params
        if params.force:
            reset_local_state(params.deployer_dir)

        returncode = ctx.installers().install_deployer(
            params.deployer_file_name,
            cwd=params.deployer_dir,
            auto_approve=params.auto_approve,
            env=ctx.tool_env(),
        )
        if returncode != 0:
            raise self.failed("Bootstrapping of the deployer failed")

        outputs = ctx.deployer_outputs()
        keyvault = (
            params.keyvault
            or ctx.record.keyvault
            or outputs.get_optional("deployer_kv_user_name")
        )
        click.echo(f"Key vault:             {keyvault or ''}")
        if not keyvault:
            raise self.failed("Key vault not found in the configuration")
        ctx.persist("keyvault", keyvault)

        public_ip = outputs.get_optional("deployer_public_ip_address")
        if public_ip:
            ctx.persist("deployer_public_ip_address", public_ip)

        if params.subscription:
            ctx.persist("subscription", params.subscription)
            ctx.persist("STATE_SUBSCRIPTION", params.subscription)
        if params.spn_id:
            ctx.persist("client_id", params.spn_id)
        if params.tenant_id:
            ctx.persist("tenant_id", params.tenant_id)


class ValidateKeyvaultAccess(Stage):
    """Stage 1: key vault access check (informational only)."""

    name = "validate-keyvault-access"
    title = "Validate-Keyvault-Access"
    trigger = 1
    start_message = "Validating keyvault access..."

    def run(self, ctx: DeploymentContext) -> None:
        if ctx.record.keyvault:
            logger.info(f"Using keyvault {ctx.record.keyvault}")
        else:
            logger.warning("No keyvault recorded for this control plane")


class BootstrapLibrary(Stage):
    """Stage 2: deploy the library and store the state account connection string."""

    name = "bootstrap-library"
    title = "Bootstrap-Library"
    trigger = 2
    start_message = "Bootstrapping the library..."
    failure_exit_code = ExitCode.LIBRARY_BOOTSTRAP_FAILED

    def run(self, ctx: DeploymentContext) -> None:
        params = ctx.params
        self.require_keyvault(ctx)
        if params.force:
            reset_local_state(params.library_dir)

        returncode = ctx.installers().install_library(
            params.library_file_name,
            deployer_dir=params.deployer_dir,
            cwd=params.library_dir,
            auto_approve=params.auto_approve,
            env=ctx.tool_env(TF_DATA_DIR=str(params.library_dir / ".terraform")),
        )
        if returncode != 0:
            raise self.failed("Bootstrapping of the SAP Library failed")

        outputs = ctx.library_outputs()
        resource_group = outputs.get("sapbits_sa_resource_group_name")
        storage_account = outputs.get("remote_state_storage_account_name")
        state_subscription = outputs.get("created_resource_group_subscription_id")

        if not params.ado:
            if ctx.agent_ip:
                ctx.storage_account(resource_group, storage_account).add_network_rule(ctx.agent_ip)
            else:
                logger.warning("Agent IP unknown; storage account network rules not updated")

        connection_string = outputs.get("sa_connection_string")
        action = ctx.key_vault().reconcile(SA_CONNECTION_STRING_SECRET, connection_string)
        logger.info(f"Secret {SA_CONNECTION_STRING_SECRET}: {action.value}")

        ctx.persist("REMOTE_STATE_RG", resource_group)
        ctx.persist("REMOTE_STATE_SA", storage_account)
        ctx.persist("STATE_SUBSCRIPTION", state_subscription)


class MigrateDeployerState(Stage):
    """Stage 3: move the deployer state into the remote storage account."""

    name = "migrate-deployer-state"
    title = "Migrate-Deployer-State"
    trigger = 3
    start_message = "Migrating the deployer state..."
    failure_exit_code = ExitCode.DEPLOYER_MIGRATION_FAILED

    def run(self, ctx: DeploymentContext) -> None:
        params = ctx.params
        self.require_keyvault(ctx)

        post_deployment = params.deployer_dir / "post_deployment.sh"
        if post_deployment.exists():
            post_deployment.unlink()

        extra_env = self.connection_string_env(ctx)
        storage_account = self.remote_state_account(ctx)

        returncode = ctx.installers().migrate_state(
            params.deployer_file_name,
            storage_account,
            DEPLOYER_STATE,
            cwd=params.deployer_dir,
            auto_approve=params.auto_approve,
            ado=params.ado,
            env=ctx.tool_env(**extra_env),
        )
        if returncode != 0:
            raise self.failed("Migrating the deployer state failed")


class MigrateLibraryState(Stage):
    """Stage 4: move the library state into the remote storage account."""

    name = "migrate-library-state"
    title = "Migrate-Library-State"
    trigger = 4
    start_message = "Migrating the library state..."
    failure_exit_code = ExitCode.LIBRARY_MIGRATION_FAILED

    def run(self, ctx: DeploymentContext) -> None:
        params = ctx.params
        self.require_keyvault(ctx)

        extra_env = self.connection_string_env(ctx)
        storage_account = self.remote_state_account(ctx)

        returncode = ctx.installers().migrate_state(
            params.library_file_name,
            storage_account,
            LIBRARY_STATE,
            cwd=params.library_dir,
            auto_approve=params.auto_approve,
            ado=params.ado,
            env=ctx.tool_env(**extra_env),
        )
        if returncode != 0:
            raise self.failed("Migrating the SAP Library state failed")

