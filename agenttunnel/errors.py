"""Error taxonomy and result values shared by the agenttunnel components.

Expected outcomes (an invalid spec, an unauthenticated update, a rejected
registration) travel as result values. Exceptions are reserved for setup
failures and structurally broken input.
"""

from dataclasses import dataclass
from typing import Optional


class AgentTunnelError(Exception):
    """Base class for all agenttunnel errors."""


class TunnelSetupError(AgentTunnelError):
    """No public URL could be obtained from the tunnel provider."""


class BrowserLaunchError(AgentTunnelError):
    """The system browser could not be opened for the signing flow."""


class HandshakeRejected(AgentTunnelError):
    """The local handshake listener received a request it cannot accept."""


class PortInUseError(AgentTunnelError):
    """The handshake port is already owned by another listener."""

    def __init__(self, port: int):
        super().__init__(f"Handshake port {port} is already in use; is another handshake in progress?")
        self.port = port


class MalformedCredential(AgentTunnelError):
    """A credential is structurally invalid (bad JSON, base64, or key encoding)."""


class NonceTooLong(MalformedCredential):
    """The decoded nonce is longer than 32 bytes."""

    def __init__(self, length: int):
        super().__init__(f"Expected nonce to be at most 32 bytes, got {length}")
        self.length = length


class NetworkFailure(AgentTunnelError):
    """Transport-level failure (DNS, refused connection, timeout) after all retries."""

    def __init__(self, method: str, url: str, attempts: int, cause: Optional[BaseException] = None):
        super().__init__(f"{method} {url} failed after {attempts} attempts: {cause}")
        self.method = method
        self.url = url
        self.attempts = attempts
        self.cause = cause


class RegistryRejected(AgentTunnelError):
    """The registry answered with a non-2xx status."""

    def __init__(self, status_code: int, detail: str, debug_url: Optional[str] = None):
        super().__init__(f"Registry rejected request with status {status_code}: {detail}")
        self.status_code = status_code
        self.detail = detail
        self.debug_url = debug_url


class NotAuthenticated(AgentTunnelError):
    """No valid cached credential is available for the operation."""


class SpecInvalid(AgentTunnelError):
    """The agent's published spec could not be fetched or failed validation."""


@dataclass(frozen=True)
class RegistryResult:
    """Outcome of a registry call: either ok with a plugin id, or a failure."""
    ok: bool
    plugin_id: Optional[str] = None
    error: Optional[AgentTunnelError] = None

    @classmethod
    def success(cls, plugin_id: str) -> "RegistryResult":
        return cls(ok=True, plugin_id=plugin_id)

    @classmethod
    def fail(cls, error: AgentTunnelError) -> "RegistryResult":
        return cls(ok=False, error=error)

    def __bool__(self) -> bool:
        return self.ok


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of validating the agent's published spec."""
    valid: bool
    account_id: Optional[str] = None
    error: Optional[SpecInvalid] = None
