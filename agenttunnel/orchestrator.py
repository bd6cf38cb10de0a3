import asyncio
import logging
import signal
import webbrowser
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable, Optional

from .auth import AuthBroker, SignedCredential
from .config import BitteUrls, Config
from .errors import AgentTunnelError, ValidationResult
from .registry import RegistryClient
from .spec_validator import SpecValidator
from .state import StateStore
from .tunnel import ProviderKind, TunnelSession, provision
from .utils import hostname
from .watcher import FileWatcher, should_ignore

logger = logging.getLogger("agenttunnel-sync")


class SyncState(str, Enum):
    PROVISIONING = "provisioning"
    AUTHENTICATING = "authenticating"
    VALIDATING = "validating"
    REGISTERING = "registering"
    WATCHING = "watching"
    RETRYING = "retrying"
    CLEANING_UP = "cleaning_up"
    TERMINATED = "terminated"


@dataclass
class PluginRecord:
    plugin_id: str
    account_id: Optional[str] = None
    last_synced_at: Optional[datetime] = None


@dataclass
class Session:
    """Everything one dev run owns; only the orchestrator mutates it."""
    url: Optional[str] = None
    plugin_id: Optional[str] = None
    tunnel: Optional[TunnelSession] = None
    credential: Optional[SignedCredential] = None
    plugin: Optional[PluginRecord] = None


Provisioner = Callable[[ProviderKind, int], Awaitable[TunnelSession]]
Validator = Callable[[str], Awaitable[ValidationResult]]


class SyncOrchestrator:
    """
    Runs a dev session: tunnel, authentication, registration, then a watch loop
    that keeps the registered plugin in sync until the process is told to stop.

    ``run()`` returns the process exit code: 0 after a signal, 1 after an
    unhandled failure.
    """

    def __init__(self, port: int, provider_kind: ProviderKind, urls: BitteUrls, store: StateStore,
                 auth: Optional[AuthBroker] = None, registry: Optional[RegistryClient] = None,
                 validator: Optional[Validator] = None, provisioner: Optional[Provisioner] = None,
                 watcher: Optional[FileWatcher] = None, project_dir: Optional[Path] = None,
                 open_browser: Callable[[str], bool] = webbrowser.open,
                 settle_delay: float = Config.TUNNEL_SETTLE_DELAY):
        self.port = port
        self.provider_kind = provider_kind
        self.urls = urls
        self.store = store
        self.auth = auth or AuthBroker(store, urls, open_browser=open_browser)
        self.registry = registry or RegistryClient(self.auth, urls.registry_base)
        self.validator = validator or SpecValidator()
        self.provisioner = provisioner or provision
        self.project_dir = Path(project_dir) if project_dir else Path.cwd()
        self.watcher = watcher or FileWatcher(self.project_dir, ignore=self.is_ignored)
        self.open_browser = open_browser
        self.settle_delay = settle_delay

        self.session = Session()
        self.state = SyncState.PROVISIONING
        self.exit_code = 0
        self._cleanup_started = False
        self._terminated = asyncio.Event()
        self._flow_task: Optional[asyncio.Task] = None
        self._shutdown_task: Optional[asyncio.Task] = None

    def _transition(self, new_state: SyncState):
        if new_state is not self.state:
            logger.debug(f"{self.state.value} -> {new_state.value}")
            self.state = new_state

    def is_ignored(self, relative_path: str) -> bool:
        return should_ignore(relative_path, (Config.STATE_FILE_NAME,))

    # Initial flow

    async def provision_tunnel(self) -> TunnelSession:
        self._transition(SyncState.PROVISIONING)
        tunnel = await self.provisioner(self.provider_kind, self.port)
        tunnel.on_lost = self._on_tunnel_lost
        self.session.tunnel = tunnel
        self.session.url = tunnel.public_url
        self.session.plugin_id = hostname(tunnel.public_url)
        self.store.merge(Config.SESSION_KEY, {"url": tunnel.public_url})
        logger.info(f"Tunnel URL: {tunnel.public_url} (plugin id {self.session.plugin_id})")
        return tunnel

    async def authenticate(self) -> bool:
        self._transition(SyncState.AUTHENTICATING)
        try:
            self.session.credential = await self.auth.authenticate_or_create()
        except AgentTunnelError as e:
            logger.error(f"Failed to authenticate or create a key: {e}")
            return False
        return True

    async def validate(self) -> ValidationResult:
        self._transition(SyncState.VALIDATING)
        logger.info("Validating OpenAPI spec...")
        return await self.validator(Config.spec_url(self.session.url))

    async def validate_and_register(self) -> bool:
        """Validating -> Registering. Returns True when the plugin got registered."""
        result = await self.validate()
        if not result.valid:
            logger.error("OpenAPI specification validation failed. Fix the spec; changes will be retried.")
            return False
        if not result.account_id:
            logger.error("Failed to parse account ID from OpenAPI specification.")
            return False

        self._transition(SyncState.REGISTERING)
        if not await self._register(result.account_id):
            logger.warning("Initial registration failed. Waiting for file changes to retry...")
            return False
        return True

    async def setup_and_validate(self):
        if self.settle_delay:
            await asyncio.sleep(self.settle_delay)

        if not await self.authenticate():
            return
        await self.validate_and_register()

    async def _register(self, account_id: str) -> bool:
        plugin_id = self.session.plugin_id
        result = await self.registry.register(plugin_id, account_id)
        if not result:
            return False

        self.session.plugin = PluginRecord(plugin_id, account_id, datetime.now(timezone.utc))
        received_id = self.open_playground(result.plugin_id)
        self.store.merge(Config.SESSION_KEY, {"pluginId": plugin_id, "receivedId": received_id})
        return True

    def open_playground(self, plugin_id: str) -> str:
        url = f"{self.urls.playground_url}{plugin_id}"
        logger.info(f"Opening playground: {url}")
        try:
            self.open_browser(url)
        except Exception as e:
            logger.warning(f"Could not open the playground, visit {url} manually: {e}")
        # The playground does not report an id back yet
        return ""

    # Watch loop

    async def on_file_event(self, relative_path: str) -> bool:
        """Re-sync after a change. Returns True if the plugin was updated or registered."""
        if self.is_ignored(relative_path):
            return False

        self._transition(SyncState.WATCHING)
        logger.info(f"Change detected in {relative_path}. Attempting to update or register the plugin...")

        result = await self.validate()
        if not result.valid:
            self._transition(SyncState.RETRYING)
            logger.warning("Spec is invalid. Waiting for next file change to retry...")
            return False

        plugin_id = self.session.plugin_id
        credential = self.auth.get_credential(result.account_id)
        if credential is not None:
            outcome = await self.registry.update(plugin_id, result.account_id)
            if outcome:
                self.session.plugin = PluginRecord(plugin_id, result.account_id, datetime.now(timezone.utc))
        else:
            self._transition(SyncState.REGISTERING)
            outcome = await self._register(result.account_id)

        if not outcome:
            self._transition(SyncState.RETRYING)
            logger.warning("Sync failed. Waiting for next file change to retry...")
            return False

        self._transition(SyncState.WATCHING)
        return True

    async def watch(self):
        self._transition(SyncState.WATCHING)
        logger.info("Any file changes will trigger a plugin update attempt.")
        async for relative_path in self.watcher.events():
            try:
                await self.on_file_event(relative_path)
            except Exception as e:
                # A failed sync cycle never ends the session
                self._transition(SyncState.RETRYING)
                logger.error(f"Sync after change in {relative_path} failed: {e!r}. Waiting for next file change...")

    async def _flow(self):
        await self.provision_tunnel()
        await self.setup_and_validate()
        logger.info("Tunnel is running. Watching for changes. Press Ctrl+C to stop.")
        await self.watch()

    # Shutdown

    async def shutdown(self, exit_code: int = 0):
        """Stop the flow and release everything, at most once per run."""
        if self._cleanup_started:
            logger.debug("Cleanup already in progress")
            return
        self._cleanup_started = True
        self.exit_code = exit_code

        flow = self._flow_task
        if flow is not None and flow is not asyncio.current_task() and not flow.done():
            flow.cancel()
            try:
                await flow
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.debug(f"Flow ended with {e!r} during shutdown")

        await self.cleanup()
        self._terminated.set()

    async def cleanup(self):
        self._transition(SyncState.CLEANING_UP)
        logger.info("Terminating. Cleaning up...")

        try:
            self.store.remove(Config.SESSION_KEY)
        except Exception as e:
            logger.error(f"Error removing session state: {e}")

        if self.session.plugin_id:
            try:
                result = await self.registry.delete(self.session.plugin_id)
                if result:
                    logger.info(f"Plugin {self.session.plugin_id} deleted")
            except Exception as e:
                logger.error(f"Error deleting plugin {self.session.plugin_id}: {e}")

        if self.session.tunnel is not None:
            try:
                await self.session.tunnel.teardown()
            except Exception as e:
                logger.error(f"Error closing tunnel: {e}")

        try:
            self.watcher.stop()
            await self.registry.aclose()
        except Exception as e:
            logger.error(f"Error releasing resources: {e}")

        self._transition(SyncState.TERMINATED)
        logger.info("Cleanup completed. Exiting...")

    def _on_tunnel_lost(self, reason: str):
        # The registered plugin points at a URL that no longer routes
        logger.error(f"Tunnel lost ({reason}). Shutting down...")
        self.request_shutdown(1)

    def request_shutdown(self, exit_code: int = 0):
        if self._shutdown_task is not None or self._cleanup_started:
            logger.info("Already shutting down...")
            return
        self._shutdown_task = asyncio.ensure_future(self.shutdown(exit_code))

    def _on_flow_done(self, task: asyncio.Task):
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Fatal error: {error}")
        self.request_shutdown(1 if error is not None else 0)

    def _handle_loop_exception(self, loop, context):
        logger.error(f"Unhandled async failure: {context.get('exception') or context.get('message')}")
        self.request_shutdown(1)

    def _install_signal_handlers(self, loop: asyncio.AbstractEventLoop):
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_shutdown, 0)
            except (NotImplementedError, RuntimeError):
                # Windows event loops have no add_signal_handler
                signal.signal(sig, lambda signum, frame: loop.call_soon_threadsafe(self.request_shutdown, 0))

    def _remove_signal_handlers(self, loop: asyncio.AbstractEventLoop):
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.remove_signal_handler(sig)
            except (NotImplementedError, RuntimeError):
                signal.signal(sig, signal.SIG_DFL)

    async def run(self) -> int:
        loop = asyncio.get_running_loop()
        previous_handler = loop.get_exception_handler()
        loop.set_exception_handler(self._handle_loop_exception)
        self._install_signal_handlers(loop)

        try:
            self._flow_task = asyncio.create_task(self._flow())
            self._flow_task.add_done_callback(self._on_flow_done)
            await self._terminated.wait()
        finally:
            self._remove_signal_handlers(loop)
            loop.set_exception_handler(previous_handler)

        return self.exit_code
