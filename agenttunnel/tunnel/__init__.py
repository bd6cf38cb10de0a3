"""Tunnel strategies that expose a local port on a public URL."""

import logging
from pathlib import Path
from typing import Optional

from ..config import Config
from ..errors import TunnelSetupError
from .base import ProviderKind, TunnelSession
from .hosted import HostedTunnelClient, open_hosted_tunnel
from .ssh import ForwardingDecoder, SshReverseTunnel, ensure_ssh_key, open_ssh_tunnel

logger = logging.getLogger("agenttunnel-tunnel")

__all__ = [
    "ProviderKind",
    "TunnelSession",
    "HostedTunnelClient",
    "SshReverseTunnel",
    "ForwardingDecoder",
    "ensure_ssh_key",
    "provision",
]


async def provision(kind: ProviderKind, local_port: int, server_url: Optional[str] = None,
                    api_key: Optional[str] = None, ssh_host: Optional[str] = None,
                    ssh_key_path: Optional[Path] = None) -> TunnelSession:
    """
    Open a tunnel of the requested kind for ``local_port``.

    Raises:
        TunnelSetupError: if no public URL could be obtained. Not retried.
    """
    logger.info(f"Setting up {kind.value} tunnel on port {local_port}...")

    try:
        if kind is ProviderKind.HOSTED:
            return await open_hosted_tunnel(
                local_port,
                server_url or Config.HOSTED_TUNNEL_SERVER,
                api_key=api_key if api_key is not None else Config.HOSTED_TUNNEL_API_KEY,
            )
        if kind is ProviderKind.SSH_REVERSE:
            return await open_ssh_tunnel(
                local_port,
                ssh_host or Config.SSH_TUNNEL_HOST,
                Path(ssh_key_path) if ssh_key_path else Config.SSH_KEY_PATH,
            )
    except TunnelSetupError:
        raise
    except Exception as e:
        raise TunnelSetupError(f"Failed to set up {kind.value} tunnel: {e}") from e

    raise ValueError(f"Unknown tunnel provider: {kind!r}")
