import json
import logging
from typing import Optional, Tuple

import httpx

from .auth import AuthBroker, SignedCredential
from .config import Config
from .errors import (
    AgentTunnelError,
    NetworkFailure,
    NotAuthenticated,
    RegistryRejected,
    RegistryResult,
)
from .fetch import request_with_retry

logger = logging.getLogger("agenttunnel-registry")


def parse_error_body(response: httpx.Response) -> Tuple[str, Optional[str]]:
    """Extract (detail, debugUrl) from a registry error response."""
    try:
        data = response.json()
    except ValueError:
        return response.text or response.reason_phrase, None

    debug_url = data.get("debugUrl") if isinstance(data, dict) else None
    return json.dumps(data), debug_url


class RegistryClient:
    """Register, update and delete the plugin record for a tunnel hostname.

    Every call is authenticated with the signed credential in the
    ``bitte-api-key`` header. Failures come back as ``RegistryResult`` values.
    """

    def __init__(self, auth: AuthBroker, registry_base: str, http_client: Optional[httpx.AsyncClient] = None,
                 attempts: int = Config.FETCH_ATTEMPTS, retry_delay: float = Config.FETCH_RETRY_DELAY):
        self.auth = auth
        self.registry_base = registry_base.rstrip("/")
        self._owns_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(timeout=Config.REQUEST_TIMEOUT)
        self.attempts = attempts
        self.retry_delay = retry_delay

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()

    async def aclose(self):
        if self._owns_client:
            await self.http_client.aclose()

    def plugin_url(self, plugin_id: str) -> str:
        return f"{self.registry_base}/{plugin_id}"

    async def register(self, plugin_id: str, account_id: Optional[str] = None) -> RegistryResult:
        credential = self.auth.get_credential(account_id)
        if credential is None:
            logger.info("No credential for this account, starting the signing flow...")
            try:
                credential = await self.auth.run_handshake()
            except AgentTunnelError as e:
                logger.error(f"Could not obtain a credential to register {plugin_id}: {e}")
                return RegistryResult.fail(NotAuthenticated(str(e)))
            self.auth.store_credential(credential)

        return await self._send("POST", plugin_id, credential, "registration")

    async def update(self, plugin_id: str, account_id: Optional[str] = None) -> RegistryResult:
        credential = self.auth.get_credential(account_id)
        if credential is None:
            logger.error(f"No API key found for plugin {plugin_id}. Please register the plugin first.")
            return RegistryResult.fail(NotAuthenticated("no credential, register first"))

        return await self._send("PUT", plugin_id, credential, "update")

    async def delete(self, plugin_id: str) -> RegistryResult:
        credential = self.auth.get_credential()
        if credential is None:
            logger.error("No API key found. Unable to delete plugin.")
            return RegistryResult.fail(NotAuthenticated("no credential, register first"))

        return await self._send("DELETE", plugin_id, credential, "deletion")

    async def _send(self, method: str, plugin_id: str, credential: SignedCredential, operation: str) -> RegistryResult:
        url = self.plugin_url(plugin_id)
        headers = {Config.API_KEY_HEADER: credential.to_json()}

        try:
            response = await request_with_retry(
                self.http_client, method, url, headers=headers,
                attempts=self.attempts, retry_delay=self.retry_delay,
            )
        except NetworkFailure as e:
            logger.error(f"Network error during plugin {operation} for {plugin_id}: {e}")
            return RegistryResult.fail(e)

        if response.is_success:
            logger.info(f"Plugin {operation} succeeded for {plugin_id}")
            return RegistryResult.success(plugin_id)

        detail, debug_url = parse_error_body(response)
        logger.error(f"Error during plugin {operation} for {plugin_id} (HTTP {response.status_code}): {detail}")
        if debug_url:
            logger.info(f"Debug URL: {debug_url}")
        return RegistryResult.fail(RegistryRejected(response.status_code, detail, debug_url))
