"""
SSH reverse tunnel through a public forwarding host (serveo.net by default).

Runs ``ssh -R 80:localhost:<port> <host> -i <key>`` and watches its stdout
for the line announcing the public URL:

    Forwarding HTTP traffic from https://abc123.serveo.net

The stdout reader is a small state machine, Waiting -> UrlFound | Failed.
Once the URL is found the process keeps running in the background and its
output continues to be logged.
"""

import asyncio
import logging
import re
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional

from ..errors import TunnelSetupError
from .base import ProviderKind, TunnelSession

logger = logging.getLogger("agenttunnel-tunnel")

FORWARDING_MARKER = "forwarding"
URL_PATTERN = re.compile(r"https?://[^\s]+")


class DecoderState(Enum):
    WAITING = "waiting"
    URL_FOUND = "url_found"
    FAILED = "failed"


class ForwardingDecoder:
    """Line-oriented decoder that extracts the public URL from ssh output."""

    def __init__(self):
        self.state = DecoderState.WAITING
        self.url: Optional[str] = None
        self.failure: Optional[str] = None

    def feed(self, line: str) -> DecoderState:
        if self.state is not DecoderState.WAITING:
            return self.state
        if FORWARDING_MARKER in line.lower():
            match = URL_PATTERN.search(line)
            if match:
                self.url = match.group(0)
                self.state = DecoderState.URL_FOUND
        return self.state

    def fail(self, reason: str) -> DecoderState:
        if self.state is DecoderState.WAITING:
            self.failure = reason
            self.state = DecoderState.FAILED
        return self.state


async def ensure_ssh_key(key_path: Path) -> Path:
    """Generate a 4096-bit RSA key at ``key_path`` unless one already exists."""
    if key_path.exists():
        return key_path

    logger.info("Generating SSH key for the reverse tunnel...")
    key_path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
    try:
        process = await asyncio.create_subprocess_exec(
            "ssh-keygen", "-t", "rsa", "-b", "4096", "-f", str(key_path), "-N", "",
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as e:
        raise TunnelSetupError("ssh-keygen not found; install OpenSSH to use the SSH tunnel") from e

    _, stderr = await process.communicate()
    if process.returncode != 0:
        raise TunnelSetupError(
            f"ssh-keygen exited with code {process.returncode}: {stderr.decode(errors='replace').strip()}"
        )
    logger.info("SSH key generated successfully.")
    return key_path


class SshReverseTunnel:
    def __init__(self, local_port: int, host: str, key_path: Path):
        self.local_port = local_port
        self.host = host
        self.key_path = key_path
        self.process: Optional[asyncio.subprocess.Process] = None
        self.decoder = ForwardingDecoder()
        self.url_ready = asyncio.Event()
        self.reader_tasks: List[asyncio.Task] = []
        self.stopping = False
        self.on_exit: Optional[Callable[[str], None]] = None

    def command(self) -> List[str]:
        return [
            "ssh",
            "-o", "StrictHostKeyChecking=accept-new",
            "-o", "ServerAliveInterval=30",
            "-R", f"80:localhost:{self.local_port}",
            self.host,
            "-i", str(self.key_path),
        ]

    async def start(self) -> str:
        await ensure_ssh_key(self.key_path)

        try:
            self.process = await asyncio.create_subprocess_exec(
                *self.command(),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise TunnelSetupError("ssh not found; install OpenSSH to use the SSH tunnel") from e

        self.reader_tasks = [
            asyncio.create_task(self._read_stdout()),
            asyncio.create_task(self._read_stderr()),
        ]
        exit_waiter = asyncio.create_task(self._watch_exit())
        self.reader_tasks.append(exit_waiter)

        await self.url_ready.wait()
        if self.decoder.state is DecoderState.URL_FOUND:
            logger.info(f"SSH tunnel URL: {self.decoder.url}")
            return self.decoder.url

        await self.stop()
        raise TunnelSetupError(self.decoder.failure or "SSH tunnel failed before a URL was announced")

    async def _read_stdout(self):
        async for raw in self.process.stdout:
            line = raw.decode(errors="replace").rstrip()
            if line:
                logger.info(f"[ssh] {line}")
            if self.decoder.feed(line) is DecoderState.URL_FOUND:
                self.url_ready.set()

    async def _read_stderr(self):
        async for raw in self.process.stderr:
            line = raw.decode(errors="replace").rstrip()
            if line:
                logger.warning(f"Tunnel error: {line}")

    async def _watch_exit(self):
        returncode = await self.process.wait()
        # Drain remaining stdout so a final forwarding line is not lost
        await asyncio.gather(*self.reader_tasks[:2], return_exceptions=True)
        if self.decoder.fail(f"Tunnel process exited with code {returncode}") is DecoderState.FAILED:
            logger.error(f"Tunnel process exited with code {returncode}")
        else:
            logger.error(f"SSH tunnel process exited with code {returncode}")
            if not self.stopping and self.on_exit is not None:
                self.on_exit(f"ssh exited with code {returncode}")
        self.url_ready.set()

    async def stop(self):
        self.stopping = True
        if self.process and self.process.returncode is None:
            self.process.terminate()
            try:
                await asyncio.wait_for(self.process.wait(), timeout=5.0)
            except asyncio.TimeoutError:
                logger.warning("SSH tunnel did not exit after SIGTERM, killing it")
                self.process.kill()
                await self.process.wait()
        for task in self.reader_tasks:
            if not task.done():
                task.cancel()


async def open_ssh_tunnel(local_port: int, host: str, key_path: Path) -> TunnelSession:
    tunnel = SshReverseTunnel(local_port, host, key_path)
    public_url = await tunnel.start()
    session = TunnelSession(public_url=public_url, provider_kind=ProviderKind.SSH_REVERSE, close=tunnel.stop)
    tunnel.on_exit = session.notify_lost
    return session
