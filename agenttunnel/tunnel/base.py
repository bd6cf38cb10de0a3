import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Optional

logger = logging.getLogger("agenttunnel-tunnel")


class ProviderKind(str, Enum):
    HOSTED = "hosted"
    SSH_REVERSE = "ssh"


@dataclass
class TunnelSession:
    """A live public URL and the handle that tears it down.

    ``teardown`` runs the provider's close function at most once; later calls
    are no-ops. Providers call ``notify_lost`` when the tunnel dies on its own,
    which reaches the owner through ``on_lost``.
    """
    public_url: str
    provider_kind: ProviderKind
    close: Optional[Callable[[], Awaitable[None]]] = None
    on_lost: Optional[Callable[[str], None]] = field(default=None, repr=False)
    _closed: bool = field(default=False, repr=False)

    @property
    def closed(self) -> bool:
        return self._closed

    def notify_lost(self, reason: str):
        if self.closed:
            return
        logger.error(f"{self.provider_kind.value} tunnel {self.public_url} lost: {reason}")
        if self.on_lost is not None:
            self.on_lost(reason)

    async def teardown(self):
        # Flag is flipped before the first await so concurrent callers see it
        if self._closed:
            return
        self._closed = True
        if self.close is None:
            return
        logger.info(f"Closing {self.provider_kind.value} tunnel {self.public_url}")
        await self.close()
