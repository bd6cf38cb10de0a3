import asyncio
import base64
import json
import logging
import os
import time
from typing import Callable, Optional
from urllib.parse import urlparse

import httpx
import websockets

from ..errors import TunnelSetupError
from ..utils import is_binary_content
from .base import ProviderKind, TunnelSession

logger = logging.getLogger("agenttunnel-tunnel")

# Largest local response relayed through the tunnel
MAX_RESPONSE_SIZE = int(os.environ.get("AGENTTUNNEL_MAX_RESPONSE_SIZE", str(50 * 1024 * 1024)))


class HostedTunnelClient:
    """Websocket client for a hosted tunnel server.

    The server assigns a public hostname and relays each incoming HTTP request
    as a JSON frame; the client replays it against the local endpoint and sends
    the response back on the same socket.
    """

    def __init__(self, server_url: str, local_port: int, api_key: Optional[str] = None):
        self.server_url = server_url
        self.local_url = f"http://localhost:{local_port}"
        self.api_key = api_key
        self.assigned_hostname: Optional[str] = None
        self.websocket = None
        self.running = False
        self.websocket_send_lock = asyncio.Lock()
        self.last_keepalive: Optional[float] = None
        self.keepalive_timeout = 35  # Server sends keepalive every 30s
        self.listen_task: Optional[asyncio.Task] = None
        self.pending_requests = set()
        self.hostname_timeout = 10.0
        self.stopping = False
        # Called with a reason when the server side drops the tunnel
        self.on_disconnect: Optional[Callable[[str], None]] = None

        parsed = urlparse(server_url)
        ws_scheme = "wss" if parsed.scheme in ("https", "wss") else "ws"
        self.ws_url = f"{ws_scheme}://{parsed.netloc}/ws"

    @property
    def public_url(self) -> Optional[str]:
        if not self.assigned_hostname:
            return None
        return f"https://{self.assigned_hostname}"

    async def connect(self) -> str:
        """Open the websocket and wait for a hostname; returns the public URL."""
        logger.info(f"Connecting to tunnel server at {self.ws_url}...")

        headers = {}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            self.websocket = await websockets.connect(
                self.ws_url,
                additional_headers=headers,
                ping_interval=10,
                ping_timeout=20,
                close_timeout=10,
                max_size=512 * 1024 * 1024,
            )

            async with self.websocket_send_lock:
                await self.websocket.send(json.dumps({
                    "type": "client_info",
                    "local_endpoint": self.local_url,
                }))

            try:
                hostname_message = await asyncio.wait_for(self.websocket.recv(), timeout=self.hostname_timeout)
            except asyncio.TimeoutError:
                raise TunnelSetupError("Timeout waiting for hostname assignment from server")

            hostname_data = json.loads(hostname_message)
            if hostname_data.get("type") != "hostname_assigned" or not hostname_data.get("hostname"):
                raise TunnelSetupError("Did not receive hostname assignment from server")

        except TunnelSetupError:
            await self._close_websocket()
            raise
        except websockets.exceptions.InvalidURI:
            raise TunnelSetupError(f"Invalid WebSocket URL: {self.ws_url}")
        except websockets.exceptions.InvalidStatus as e:
            status_code = e.response.status_code
            if status_code == 401:
                raise TunnelSetupError("Invalid API key - authentication failed") from e
            raise TunnelSetupError(f"WebSocket connection failed with status {status_code}") from e
        except (websockets.exceptions.WebSocketException, OSError, json.JSONDecodeError) as e:
            await self._close_websocket()
            raise TunnelSetupError(f"Failed to connect to tunnel server: {e}") from e

        self.assigned_hostname = hostname_data["hostname"]
        self.running = True
        self.last_keepalive = time.time()
        logger.info(f"Tunnel ready! Access your local server at: {self.public_url}")
        logger.info(f"Forwarding to local endpoint: {self.local_url}")
        return self.public_url

    async def handle_request(self, request_data: dict) -> dict:
        request_id = request_data.get("request_id", "unknown")
        method = request_data.get("method", "GET")
        path = request_data.get("path", "/")
        body = request_data.get("body", "")

        if request_data.get("is_binary") and body:
            body = base64.b64decode(body)

        try:
            async with httpx.AsyncClient() as client:
                response = await client.request(
                    method=method,
                    url=f"{self.local_url}{path}",
                    headers=request_data.get("headers", {}),
                    params=request_data.get("query_params", {}),
                    content=body,
                    timeout=600.0,
                )
        except httpx.HTTPError as e:
            logger.error(f"[{request_id}] Error handling local request: {e}")
            return {
                "status_code": 502,
                "headers": {"content-type": "text/plain"},
                "body": f"Local endpoint unavailable: {e}",
                "is_binary": False,
            }

        logger.info(f"{method} {path} -> {response.status_code}")

        if len(response.content) > MAX_RESPONSE_SIZE:
            size_mb = len(response.content) / (1024 * 1024)
            max_mb = MAX_RESPONSE_SIZE / (1024 * 1024)
            return {
                "status_code": 413,
                "headers": {"content-type": "text/plain"},
                "body": f"Response too large: {size_mb:.1f}MB exceeds maximum allowed size of {max_mb:.1f}MB.",
                "is_binary": False,
            }

        response_data = {
            "status_code": response.status_code,
            "headers": dict(response.headers),
        }
        if is_binary_content(response.headers.get("content-type", "")):
            response_data["body"] = base64.b64encode(response.content).decode("ascii")
            response_data["is_binary"] = True
        else:
            response_data["body"] = response.text
            response_data["is_binary"] = False
        return response_data

    async def _process_request(self, request_data: dict):
        response_data = await self.handle_request(request_data)
        if request_data.get("request_id"):
            response_data["request_id"] = request_data["request_id"]
        await self._send(response_data)

    async def _send(self, message: dict):
        async with self.websocket_send_lock:
            # Check inside the lock, the socket may close between frames
            if self.websocket:
                await self.websocket.send(json.dumps(message))

    async def listen(self):
        """Relay request frames until the socket closes or the client stops."""
        reason = "tunnel stopped"
        try:
            while self.running and self.websocket:
                try:
                    message = await asyncio.wait_for(self.websocket.recv(), timeout=1.0)
                except asyncio.TimeoutError:
                    if self.last_keepalive and time.time() - self.last_keepalive > self.keepalive_timeout:
                        reason = f"no keepalive received for {self.keepalive_timeout} seconds"
                        logger.error(f"No keepalive received for {self.keepalive_timeout} seconds, closing tunnel")
                        break
                    continue

                request_data = json.loads(message)
                if request_data.get("type") == "keepalive":
                    await self._send({"type": "keepalive_ack"})
                    self.last_keepalive = time.time()
                    continue

                task = asyncio.create_task(self._process_request(request_data))
                self.pending_requests.add(task)
                task.add_done_callback(self.pending_requests.discard)
        except websockets.exceptions.ConnectionClosed:
            reason = "connection closed by server"
            logger.error("Tunnel connection closed by server")
        except json.JSONDecodeError as e:
            reason = f"malformed frame from server: {e}"
            logger.error(f"Malformed frame from tunnel server: {e}")
        finally:
            self.running = False
            if not self.stopping and self.on_disconnect is not None:
                self.on_disconnect(reason)

    def start(self):
        self.listen_task = asyncio.create_task(self.listen())

    async def stop_async(self):
        self.stopping = True
        self.running = False
        for task in list(self.pending_requests):
            task.cancel()
        if self.listen_task and not self.listen_task.done():
            self.listen_task.cancel()
            try:
                await self.listen_task
            except asyncio.CancelledError:
                pass
        await self._close_websocket()

    async def _close_websocket(self):
        if self.websocket:
            try:
                await self.websocket.close()
            except Exception as e:
                logger.debug(f"Error closing websocket: {e}")
            self.websocket = None


async def open_hosted_tunnel(local_port: int, server_url: str, api_key: Optional[str] = None) -> TunnelSession:
    client = HostedTunnelClient(server_url, local_port, api_key=api_key)
    public_url = await client.connect()
    session = TunnelSession(public_url=public_url, provider_kind=ProviderKind.HOSTED, close=client.stop_async)
    client.on_disconnect = session.notify_lost
    client.start()
    return session
