"""
Control plane CLI - bootstrap the deployer and library and migrate their state.

Commands:
    controlplane deploy     Run (or resume) the control plane bootstrap
    controlplane status     Show the persisted progress of a control plane

Exit codes:
    0   success
    1   bad arguments
    2   missing parameter file
    10  deployer bootstrap failed
    11  deployer state migration failed
    20  library bootstrap failed
    21  library state migration failed
    65  invalid parameter file or environment setting
    67  Azure CLI not logged in
    74  config store I/O error
    127 required tool not found
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import List, Optional

import click
from pydantic import ValidationError

from controlplane import __version__
from controlplane.banner import print_banner
from controlplane.binding import (
    DeploymentIdentity,
    DeploymentParameters,
    detect_agent_ip,
    resolve_identity,
    tool_environment,
    validate_dependencies,
    validate_parameter_files,
)
from controlplane.azure import AzureCli
from controlplane.config import ControlPlaneConfig, get_config
from controlplane.context import DeploymentContext
from controlplane.errors import BootstrapError, ExitCode, StageFailed, StoreError
from controlplane.logger import configure_logging
from controlplane.models import DeploymentRecord
from controlplane.runner import CommandRunner
from controlplane.sequencer import TRANSITIONS, StepSequencer
from controlplane.store import ConfigStore

logger = logging.getLogger(__name__)

CONTEXT_SETTINGS = {"help_option_names": ["-h", "--help"]}


def _store_for(config: ControlPlaneConfig, identity: DeploymentIdentity) -> ConfigStore:
    return ConfigStore(
        store_dir=config.config_dir,
        generic_path=config.get_generic_config_path(),
        record_path=config.get_record_path(identity.record_name),
    )


def init_record(
    params: DeploymentParameters,
    identity: DeploymentIdentity,
    store: ConfigStore,
) -> DeploymentRecord:
    """
    Initialize the deployment record for a run.

    With ``force`` the previous record is deleted first, restarting at
    step 0. The tfstate keys are written once; a record that already holds
    a different key keeps it.
    """
    if params.force and store.exists():
        logger.info(f"Force: removing deployment record {store.record_path}")
        store.reset()

    record = store.init(identity.environment, identity.region_code)

    for key, derived in (
        ("deployer_tfstate_key", params.deployer_tfstate_key),
        ("library_tfstate_key", params.library_tfstate_key),
    ):
        stored = record.get(key)
        if stored is None:
            record.set(key, derived)
            store.save(key, record)
        elif stored != derived:
            logger.warning(f"Keeping stored {key} {stored} (parameter file implies {derived})")
    return record


def run_deployment(
    params: DeploymentParameters,
    config: ControlPlaneConfig,
    runner: Optional[CommandRunner] = None,
) -> int:
    """
    Validate, bind and run the bootstrap sequence.

    Once the identity is known every fatal error leaves the one-line
    ``.err`` marker next to the deployment record.

    Returns:
        The final step.

    Raises:
        BootstrapError: On any fatal condition.
    """
    runner = runner or CommandRunner()

    validate_parameter_files(params)
    click.echo(f"Deployer State File:                 {params.deployer_tfstate_key}")
    click.echo(f"Library State File:                  {params.library_tfstate_key}")

    identity = resolve_identity(params)
    click.echo(f"Region code:                         {identity.region_code}")
    store = _store_for(config, identity)

    try:
        return _bootstrap(params, config, runner, identity, store)
    except StageFailed:
        # the sequencer already wrote the marker
        raise
    except BootstrapError as e:
        try:
            store.write_error_marker(e.message)
        except StoreError as marker_error:
            logger.warning(marker_error.message)
        raise


def _bootstrap(
    params: DeploymentParameters,
    config: ControlPlaneConfig,
    runner: CommandRunner,
    identity: DeploymentIdentity,
    store: ConfigStore,
) -> int:
    agent_ip = None
    if not config.on_deploy_server:
        agent_ip = detect_agent_ip(config.agent_ip_url)
    click.echo(f"Agent IP address:                    {agent_ip or ''}")

    az = AzureCli(runner, env=tool_environment(params, config, agent_ip=agent_ip))
    validate_dependencies(params, config, az)

    record = init_record(params, identity, store)

    ctx = DeploymentContext(
        params=params,
        identity=identity,
        config=config,
        store=store,
        record=record,
        runner=runner,
        agent_ip=agent_ip,
    )
    return StepSequencer(ctx).run()


@click.group(context_settings=CONTEXT_SETTINGS)
@click.version_option(__version__)
@click.pass_context
def cli(ctx):
    """Control plane bootstrap - deployer, library and remote state."""
    try:
        config = get_config()
    except ValidationError as e:
        click.echo(click.style(f"Invalid settings: {e}", fg="red"), err=True)
        ctx.exit(ExitCode.DATA_ERROR)
    configure_logging(config.log_level, config.log_format)


@cli.command("deploy", context_settings=CONTEXT_SETTINGS)
@click.option("--deployer_parameter_file", "-d", type=click.Path(path_type=Path), help="Deployer parameter file")
@click.option("--library_parameter_file", "-l", type=click.Path(path_type=Path), help="Library parameter file")
@click.option("--subscription", "-s", help="Target subscription")
@click.option("--spn_id", "-c", help="Service principal application id")
@click.option("--spn_secret", "-p", help="Service principal secret")
@click.option("--tenant_id", "-t", help="Service principal tenant id")
@click.option("--storageaccountname", "-a", "storage_account", help="Remote state storage account")
@click.option("--vault", "-k", "keyvault", help="Deployer key vault")
@click.option("--force", "-f", is_flag=True, help="Delete the deployment record and local state, start over")
@click.option("--auto-approve", "-i", "auto_approve", is_flag=True, help="Skip Terraform approvals")
@click.option("--msi", "-m", is_flag=True, help="Deploy using managed identity only")
@click.option("--recover", "-r", is_flag=True, help="Recover the control plane configuration")
@click.option("--ado", "-v", is_flag=True, help="Running in an Azure DevOps pipeline")
@click.pass_context
def deploy(ctx, deployer_parameter_file, library_parameter_file, subscription, spn_id, spn_secret,
           tenant_id, storage_account, keyvault, force, auto_approve, msi, recover, ado):
    """Bootstrap the control plane, resuming after the last completed stage.

    Examples:

        # Full bootstrap
        controlplane deploy -d DEPLOYER/DEV-WEEU-DEP00-INFRASTRUCTURE.json \\
            -l LIBRARY/DEV-WEEU-SAP_LIBRARY.json --auto-approve

        # Start over from the deployer bootstrap
        controlplane deploy -d ... -l ... --force
    """
    params = DeploymentParameters(
        deployer_parameter_file=deployer_parameter_file,
        library_parameter_file=library_parameter_file,
        subscription=subscription,
        spn_id=spn_id,
        spn_secret=spn_secret,
        tenant_id=tenant_id,
        storage_account=storage_account,
        keyvault=keyvault,
        force=force,
        auto_approve=auto_approve,
        msi=msi,
        recover=recover,
        ado=ado,
    )
    print_banner(
        "Parsed Arguments",
        "\n".join(f"{k}: {v}" for k, v in params.describe().items()),
        "info",
    )

    exit_code = ExitCode.SUCCESS
    try:
        run_deployment(params, get_config())
    except BootstrapError as e:
        if not getattr(e, "stage", None):
            print_banner("Deploy-Controlplane", e.message, "error")
        exit_code = int(e.exit_code)
    else:
        print_banner("Success", "Bootstrapping the control plane completed successfully.", "success")

    logger.info(f"deploy controlplane completed with exit code {exit_code}")
    ctx.exit(exit_code)


@cli.command("status", context_settings=CONTEXT_SETTINGS)
@click.option("--deployer_parameter_file", "-d", type=click.Path(path_type=Path), help="Deployer parameter file")
@click.option("--library_parameter_file", "-l", type=click.Path(path_type=Path), help="Library parameter file")
@click.pass_context
def status(ctx, deployer_parameter_file, library_parameter_file):
    """Show the persisted progress of a control plane."""
    params = DeploymentParameters(
        deployer_parameter_file=deployer_parameter_file,
        library_parameter_file=library_parameter_file,
    )
    try:
        validate_parameter_files(params)
        identity = resolve_identity(params)
        store = _store_for(get_config(), identity)
        if not store.exists():
            click.echo(f"No deployment record for {identity.record_name}")
            ctx.exit(1)
        record = store.read()
    except BootstrapError as e:
        click.echo(click.style(e.message, fg="red"), err=True)
        ctx.exit(int(e.exit_code))

    click.echo(format_status(record))
    if store.error_marker_path.exists():
        marker = store.error_marker_path.read_text(encoding="utf-8").strip()
        click.echo(click.style(f"Last failure: {marker}", fg="red"))


def format_status(record: DeploymentRecord) -> str:
    """Human readable summary of a deployment record."""
    lines = [
        click.style(f"Control plane {record.environment}{record.region_code}", bold=True),
        "=" * 40,
        f"Updated: {record.updated_at}",
    ]
    if record.is_complete:
        lines.append(click.style("Step:    5 (complete)", fg="green"))
    else:
        lines.append(f"Step:    {record.step} (next: {TRANSITIONS[record.step].stage.name})")

    lines.append("")
    for key in ("keyvault", "REMOTE_STATE_SA", "REMOTE_STATE_RG", "STATE_SUBSCRIPTION",
                "deployer_tfstate_key", "library_tfstate_key"):
        lines.append(f"  {key:22} {record.get(key) or '-'}")

    lines.extend(["", click.style("Stages:", bold=True)])
    for step, transition in sorted(TRANSITIONS.items()):
        name = transition.stage.name
        run = record.stages.get(name)
        if run is None:
            lines.append(f"  {step} {name}: pending")
            continue
        duration = f" ({run.duration_seconds:.1f}s)" if run.duration_seconds else ""
        error = f" - {run.error}" if run.error else ""
        lines.append(f"  {step} {name}: {run.status.value}{duration}{error}")
    return "\n".join(lines)


def main(argv: Optional[List[str]] = None) -> int:
    """
    Console entry point.

    Runs the CLI in non-standalone mode so that usage errors map to exit
    code 1 rather than click's default.
    """
    try:
        result = cli.main(args=argv, prog_name="controlplane", standalone_mode=False)
    except click.UsageError as e:
        e.show()
        return ExitCode.INVALID_ARGUMENTS
    except click.ClickException as e:
        e.show()
        return e.exit_code
    except click.Abort:
        click.echo("Aborted!", err=True)
        return ExitCode.INVALID_ARGUMENTS
    return int(result or 0)


if __name__ == "__main__":
    sys.exit(main())
