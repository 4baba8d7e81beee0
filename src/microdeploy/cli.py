"""microdeploy CLI

Drive the lifecycle of a single deployed instance:

    microdeploy wait-until-ready --vm-cid vm-1234
    microdeploy start-jobs --vm-cid vm-1234 --deployment manifest.yml \\
        --apply-spec apply.json --job api --index 0
    microdeploy delete --vm-cid vm-1234 --job api --index 0
    microdeploy config set agent_endpoint https://10.0.0.6:6868
"""

import json
import logging
import sys
from datetime import timedelta
from pathlib import Path

import click

from microdeploy import __version__
from microdeploy.agent_client import AgentClient, AgentClientError
from microdeploy.cloud import AzureCloud
from microdeploy.config import ConfigError, ConfigManager, DeployerConfig
from microdeploy.deployment import ApplySpec, DeploymentError, load_deployment
from microdeploy.eventlog import EventLogger
from microdeploy.instance import Instance
from microdeploy.sshtunnel import SSHTunnelFactory
from microdeploy.vm import AgentVMManager

logger = logging.getLogger(__name__)

SECRET_KEYS = {"agent_password"}


def _load_config(ctx: click.Context, apply_env: bool = True) -> DeployerConfig:
    try:
        return ConfigManager.load_config(ctx.obj.get("config_path"), apply_env=apply_env)
    except ConfigError as e:
        raise click.ClickException(str(e)) from e


def _build_instance(
    config: DeployerConfig, vm_cid: str, job: str, index: int, agent_password: str | None
) -> Instance:
    if not config.agent_endpoint:
        raise click.UsageError(
            "Agent endpoint not configured. Set agent_endpoint in config.toml "
            "or MICRODEPLOY_AGENT_ENDPOINT."
        )

    try:
        agent_client = AgentClient(
            config.agent_endpoint,
            username=config.agent_user,
            password=agent_password or config.agent_password or "",
        )
    except AgentClientError as e:
        raise click.ClickException(str(e)) from e

    vm_manager = AgentVMManager(agent_client, AzureCloud(config.resource_group))
    vm = vm_manager.create(vm_cid)
    return Instance(job, index, vm, SSHTunnelFactory())


def _run_stage(stage_name: str, operation) -> None:
    """Run one lifecycle operation on a fresh stage; exit 1 on failure."""
    event_logger = EventLogger(use_unicode=(sys.stdout.encoding or "").lower().startswith("utf"))
    stage = event_logger.new_stage(stage_name)
    stage.start()
    try:
        operation(stage)
    except Exception as e:
        logger.debug(f"{stage_name} failed", exc_info=True)
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    finally:
        stage.finish()


vm_cid_option = click.option("--vm-cid", required=True, help="VM identifier (name or resource ID)")
job_option = click.option("--job", "job_name", required=True, help="Job name")
index_option = click.option("--index", "job_index", default=0, type=click.IntRange(min=0))
agent_password_option = click.option(
    "--agent-password", envvar="MICRODEPLOY_AGENT_PASSWORD", default=None, help="Agent password"
)


@click.group()
@click.option("--config", "config_path", default=None, help="Config file path")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.version_option(version=__version__)
@click.pass_context
def main(ctx: click.Context, config_path: str | None, verbose: bool) -> None:
    """Manage the lifecycle of one deployed job instance."""
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format="%(message)s")
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


@main.command(name="wait-until-ready")
@vm_cid_option
@agent_password_option
@click.option("--ssh-host", default=None, help="Open a reverse SSH tunnel to this host first")
@click.option("--ssh-password", envvar="MICRODEPLOY_SSH_PASSWORD", default="")
@click.pass_context
def wait_until_ready(
    ctx: click.Context,
    vm_cid: str,
    agent_password: str | None,
    ssh_host: str | None,
    ssh_password: str,
) -> None:
    """Wait for the agent on a VM to answer."""
    config = _load_config(ctx)
    if ssh_host:
        config.ssh_tunnel_host = ssh_host

    instance = _build_instance(config, vm_cid, "", 0, agent_password)
    options = config.ssh_tunnel_options(password=ssh_password)
    _run_stage(
        "waiting for agent", lambda stage: instance.wait_until_ready(options, stage)
    )


@main.command(name="start-jobs")
@vm_cid_option
@job_option
@index_option
@agent_password_option
@click.option(
    "--deployment",
    "deployment_path",
    required=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
)
@click.option(
    "--apply-spec",
    "apply_spec_path",
    required=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
)
@click.pass_context
def start_jobs(
    ctx: click.Context,
    vm_cid: str,
    job_name: str,
    job_index: int,
    agent_password: str | None,
    deployment_path: Path,
    apply_spec_path: Path,
) -> None:
    """Apply agent state and start jobs on an instance."""
    config = _load_config(ctx)

    try:
        deployment = load_deployment(deployment_path)
        apply_spec = ApplySpec.from_dict(json.loads(apply_spec_path.read_text()))
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise click.ClickException(f"Invalid apply spec JSON: {e}") from e
    except DeploymentError as e:
        raise click.ClickException(str(e)) from e

    instance = _build_instance(config, vm_cid, job_name, job_index, agent_password)
    _run_stage(
        "starting jobs", lambda stage: instance.start_jobs(apply_spec, deployment, stage)
    )


@main.command()
@vm_cid_option
@job_option
@index_option
@agent_password_option
@click.option("--ping-timeout", type=int, default=None, help="Agent ping timeout (seconds)")
@click.option("--ping-delay", type=int, default=None, help="Delay between pings (seconds)")
@click.pass_context
def delete(
    ctx: click.Context,
    vm_cid: str,
    job_name: str,
    job_index: int,
    agent_password: str | None,
    ping_timeout: int | None,
    ping_delay: int | None,
) -> None:
    """Stop jobs, unmount disks and delete the VM."""
    config = _load_config(ctx)
    timeout = timedelta(seconds=ping_timeout) if ping_timeout is not None else config.ping_timeout
    delay = timedelta(seconds=ping_delay) if ping_delay is not None else config.ping_delay

    instance = _build_instance(config, vm_cid, job_name, job_index, agent_password)
    _run_stage("deleting instance", lambda stage: instance.delete(timeout, delay, stage))


@main.group(name="config")
def config_group() -> None:
    """Show or change saved settings."""


@config_group.command(name="show")
@click.pass_context
def config_show(ctx: click.Context) -> None:
    """Print the saved configuration."""
    config = _load_config(ctx, apply_env=False)
    for key, value in config.to_dict().items():
        click.echo(f"{key} = {'********' if key in SECRET_KEYS else value}")


@config_group.command(name="set")
@click.argument("key")
@click.argument("value")
@click.pass_context
def config_set(ctx: click.Context, key: str, value: str) -> None:
    """Save one setting.

    \b
    Examples:
      $ microdeploy config set agent_endpoint https://10.0.0.6:6868
      $ microdeploy config set ping_timeout_seconds 120
    """
    config_path = ctx.obj.get("config_path")
    config = _load_config(ctx, apply_env=False)
    try:
        config.set_value(key, value)
        path = ConfigManager.save_config(config, config_path)
    except ConfigError as e:
        raise click.ClickException(str(e)) from e

    click.echo(f"Set {key} = {'********' if key in SECRET_KEYS else value} in {path}")


if __name__ == "__main__":
    main()
