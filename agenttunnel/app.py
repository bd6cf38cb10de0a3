import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

import httpx

from .auth import AuthBroker
from .config import BitteUrls, Config
from .orchestrator import SyncOrchestrator
from .registry import RegistryClient
from .spec_validator import validate_and_parse
from .state import EnvFileStore, StateStore
from .tunnel import ProviderKind, provision
from .utils import hostname

logger = logging.getLogger("agenttunnel")


async def main_dev(port: int, provider_kind: ProviderKind, testnet: bool = False,
                   server_url: Optional[str] = None, api_key: Optional[str] = None,
                   ssh_host: Optional[str] = None, project_dir: Optional[Path] = None) -> int:
    urls = BitteUrls.for_network(testnet)
    project_dir = Path(project_dir) if project_dir else Path.cwd()
    store = EnvFileStore(project_dir)

    async def provisioner(kind: ProviderKind, local_port: int):
        return await provision(kind, local_port, server_url=server_url, api_key=api_key, ssh_host=ssh_host)

    orchestrator = SyncOrchestrator(
        port=port,
        provider_kind=provider_kind,
        urls=urls,
        store=store,
        provisioner=provisioner,
        project_dir=project_dir,
    )
    logger.info(f"Starting dev session - local port: {port}, tunnel: {provider_kind.value}")
    return await orchestrator.run()


def run_dev(port: int, provider_kind: ProviderKind, testnet: bool = False, server_url: Optional[str] = None,
            api_key: Optional[str] = None, ssh_host: Optional[str] = None):
    Config.validate()
    try:
        exit_code = asyncio.run(main_dev(port, provider_kind, testnet, server_url, api_key, ssh_host))
    except KeyboardInterrupt:
        logger.info("Stopping dev session...")
        exit_code = 0
    except Exception as e:
        logger.error(f"Dev session error: {e}")
        exit_code = 1
    sys.exit(exit_code)


def run_verify(account_id: Optional[str] = None, testnet: bool = False) -> bool:
    """Check the cached credential; returns True when it is present and valid."""
    auth = AuthBroker(EnvFileStore(), BitteUrls.for_network(testnet))
    credential = auth.get_credential()
    if credential is None:
        logger.error("No credential found. Run `agenttunnel dev` to sign in.")
        return False

    if not auth.verify(credential, account_id):
        logger.error("Cached credential did not verify.")
        return False

    logger.info(f"Credential is valid for account {credential.account_id or '<unknown>'}")
    return True


async def _deployment_account(url: str, auth: AuthBroker,
                              http_client: Optional[httpx.AsyncClient] = None) -> Optional[str]:
    """Validate a deployment's spec and return its account if we hold a credential for it."""
    result = await validate_and_parse(Config.spec_url(url), http_client=http_client)
    if not result.valid:
        logger.error("OpenAPI specification validation failed.")
        return None
    if not result.account_id:
        logger.error("Failed to parse account ID from OpenAPI specification.")
        return None

    if auth.get_credential(result.account_id) is None:
        logger.error(f"No valid credential for {result.account_id}. Run `agenttunnel dev` to sign in.")
        return None
    return result.account_id


async def main_update(url: str, testnet: bool = False, store: Optional[StateStore] = None,
                      http_client: Optional[httpx.AsyncClient] = None) -> bool:
    """Push the current spec of a deployed agent to its existing plugin record."""
    urls = BitteUrls.for_network(testnet)
    plugin_id = hostname(url)
    auth = AuthBroker(store or EnvFileStore(), urls)

    account_id = await _deployment_account(url, auth, http_client)
    if account_id is None:
        return False

    async with RegistryClient(auth, urls.registry_base, http_client=http_client) as registry:
        outcome = await registry.update(plugin_id, account_id)
    if outcome:
        logger.info(f"Plugin {plugin_id} updated successfully.")
    return outcome.ok


async def main_delete(url: str, testnet: bool = False, store: Optional[StateStore] = None,
                      http_client: Optional[httpx.AsyncClient] = None) -> bool:
    urls = BitteUrls.for_network(testnet)
    plugin_id = hostname(url)
    auth = AuthBroker(store or EnvFileStore(), urls)

    if await _deployment_account(url, auth, http_client) is None:
        logger.error("Unable to delete the plugin.")
        return False

    async with RegistryClient(auth, urls.registry_base, http_client=http_client) as registry:
        outcome = await registry.delete(plugin_id)
    if outcome:
        logger.info(f"Plugin {plugin_id} deleted successfully.")
    return outcome.ok


def run_update(url: str, testnet: bool = False):
    try:
        ok = asyncio.run(main_update(url, testnet))
    except KeyboardInterrupt:
        ok = False
    sys.exit(0 if ok else 1)


def run_delete(url: str, testnet: bool = False):
    try:
        ok = asyncio.run(main_delete(url, testnet))
    except KeyboardInterrupt:
        ok = False
    sys.exit(0 if ok else 1)
