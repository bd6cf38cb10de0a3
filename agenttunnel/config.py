import os
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

logger = logging.getLogger("agenttunnel")


@dataclass(frozen=True)
class BitteUrls:
    """Remote endpoints for one wallet deployment (mainnet or testnet)"""
    wallet_url: str
    registry_base: str
    playground_url: str
    sign_message_url: str
    sign_message_success_url: str

    @classmethod
    def for_network(cls, testnet: bool = False) -> "BitteUrls":
        wallet_url = Config.TESTNET_WALLET_URL if testnet else Config.MAINNET_WALLET_URL
        wallet_url = wallet_url.rstrip("/")
        return cls(
            wallet_url=wallet_url,
            registry_base=f"{wallet_url}/api/ai-plugins",
            playground_url=f"{wallet_url}/smart-actions/prompt/what%20can%20you%20help%20me%20with%3F?mode=debug&agentId=",
            sign_message_url=f"{wallet_url}/sign-message",
            sign_message_success_url=f"{wallet_url}/success",
        )


class Config:
    """Client configuration from environment variables"""

    # Wallet deployments
    MAINNET_WALLET_URL: str = os.getenv("AGENTTUNNEL_WALLET_URL", "https://wallet.bitte.ai")
    TESTNET_WALLET_URL: str = os.getenv("AGENTTUNNEL_TESTNET_WALLET_URL", "https://testnet.wallet.bitte.ai")

    # Signed-message handshake
    SIGN_MESSAGE: str = "Register Bitte Agent!"
    SIGN_MESSAGE_PORT: int = int(os.getenv("AGENTTUNNEL_SIGN_PORT", "6969"))

    # Persisted state keys
    CREDENTIAL_KEY: str = "BITTE_KEY"
    SESSION_KEY: str = "BITTE_CONFIG"
    STATE_FILE_NAME: str = "bitte.dev.json"

    # Spec discovery
    AI_PLUGIN_PATH: str = ".well-known/ai-plugin.json"

    # Registry
    API_KEY_HEADER: str = "bitte-api-key"
    FETCH_ATTEMPTS: int = 3
    FETCH_RETRY_DELAY: float = 1.0
    REQUEST_TIMEOUT: float = float(os.getenv("AGENTTUNNEL_REQUEST_TIMEOUT", "30"))

    # Tunnels
    HOSTED_TUNNEL_SERVER: str = os.getenv("AGENTTUNNEL_SERVER_URL", "https://tunnel.terrateam.dev")
    HOSTED_TUNNEL_API_KEY: Optional[str] = os.getenv("AGENTTUNNEL_API_KEY")
    SSH_TUNNEL_HOST: str = os.getenv("AGENTTUNNEL_SSH_HOST", "serveo.net")
    SSH_KEY_PATH: Path = Path(os.getenv("AGENTTUNNEL_SSH_KEY", str(Path.home() / ".ssh" / "serveo_key")))

    # Pause between tunnel creation and the first request through it
    TUNNEL_SETTLE_DELAY: float = 1.0

    @classmethod
    def validate(cls):
        """Validate configuration and warn about suspicious values"""
        if not 0 < cls.SIGN_MESSAGE_PORT < 65536:
            raise ValueError(f"AGENTTUNNEL_SIGN_PORT must be a valid TCP port, got {cls.SIGN_MESSAGE_PORT}")

        if not cls.MAINNET_WALLET_URL.startswith("https://"):
            logger.warning(f"Wallet URL {cls.MAINNET_WALLET_URL} is not served over https")

    @classmethod
    def spec_url(cls, base_url: str) -> str:
        """Public location of the agent's plugin manifest for a base URL"""
        return f"{base_url.rstrip('/')}/{cls.AI_PLUGIN_PATH}"
