import sys

import click
import logging
from .app import run_delete, run_dev, run_update, run_verify
from .tunnel import ProviderKind


@click.group()
@click.option("--log-level", default="INFO", type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
              envvar="AGENTTUNNEL_LOG_LEVEL", help="Log level (can be set via AGENTTUNNEL_LOG_LEVEL)")
def cli(log_level):
    logging.basicConfig(
        level=getattr(logging, log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    # Suppress httpx request logs to reduce noise
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("websockets").setLevel(logging.WARNING)
    logging.getLogger("watchdog").setLevel(logging.WARNING)


@cli.command()
@click.option("--port", "-p", type=int, required=True, envvar="AGENTTUNNEL_PORT",
              help="Local port your agent listens on (env: AGENTTUNNEL_PORT)")
@click.option("--serveo", "-s", is_flag=True, envvar="AGENTTUNNEL_SERVEO",
              help="Use an SSH reverse tunnel through serveo instead of the hosted tunnel (env: AGENTTUNNEL_SERVEO)")
@click.option("--testnet", "-t", is_flag=True, envvar="AGENTTUNNEL_TESTNET",
              help="Use the testnet wallet instead of mainnet (env: AGENTTUNNEL_TESTNET)")
@click.option("--server-url", envvar="AGENTTUNNEL_SERVER_URL",
              help="Hosted tunnel server URL (env: AGENTTUNNEL_SERVER_URL)")
@click.option("--api-key", envvar="AGENTTUNNEL_API_KEY",
              help="API key for the hosted tunnel server (env: AGENTTUNNEL_API_KEY)")
@click.option("--ssh-host", envvar="AGENTTUNNEL_SSH_HOST",
              help="SSH forwarding host for --serveo (default: serveo.net, env: AGENTTUNNEL_SSH_HOST)")
def dev(port, serveo, testnet, server_url, api_key, ssh_host):
    """Expose your local agent and keep its plugin registration in sync."""
    provider_kind = ProviderKind.SSH_REVERSE if serveo else ProviderKind.HOSTED
    run_dev(port=port, provider_kind=provider_kind, testnet=testnet, server_url=server_url,
            api_key=api_key, ssh_host=ssh_host)


@cli.command()
@click.option("--account-id", "-a", help="Also check the credential belongs to this account")
@click.option("--testnet", "-t", is_flag=True, envvar="AGENTTUNNEL_TESTNET", help="Use the testnet wallet")
def verify(account_id, testnet):
    """Verify the cached signed credential."""
    if not run_verify(account_id=account_id, testnet=testnet):
        sys.exit(1)


@cli.command()
@click.option("--url", "-u", required=True, envvar="AGENTTUNNEL_DEPLOYMENT_URL",
              help="Deployment URL of the agent (env: AGENTTUNNEL_DEPLOYMENT_URL)")
@click.option("--testnet", "-t", is_flag=True, envvar="AGENTTUNNEL_TESTNET", help="Use the testnet wallet")
def update(url, testnet):
    """Update the plugin registered for a deployment URL with its current spec."""
    run_update(url, testnet=testnet)


@cli.command()
@click.option("--url", "-u", required=True, envvar="AGENTTUNNEL_DEPLOYMENT_URL",
              help="Deployment URL of the agent (env: AGENTTUNNEL_DEPLOYMENT_URL)")
@click.option("--testnet", "-t", is_flag=True, envvar="AGENTTUNNEL_TESTNET", help="Use the testnet wallet")
def delete(url, testnet):
    """Delete the plugin registered for a deployment URL."""
    run_delete(url, testnet=testnet)


if __name__ == "__main__":
    cli()
