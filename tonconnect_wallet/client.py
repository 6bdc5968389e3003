"""Client to the bridge relay."""
from contextlib import AbstractAsyncContextManager
import logging
from typing import Optional

from httpx import AsyncClient, HTTPError

from .config import BRIDGE_TTL
from .crypto import SessionCrypto
from .errors import BridgeError, NoOpenClient


LOGGER = logging.getLogger(__name__)


class BridgeClient(AbstractAsyncContextManager):
    """Post encrypted messages to application sessions through the relay."""

    def __init__(self, base_url: str, ttl: int = BRIDGE_TTL, **kwargs):
        """Initialize the bridge client."""
        self.base_url = base_url.rstrip("/")
        self.ttl = ttl
        self.client: Optional[AsyncClient] = None
        self.active: int = 0
        self.options = kwargs

    async def __aenter__(self):
        """Start the client."""
        self.active += 1
        if not self.client:
            self.client = AsyncClient(base_url=self.base_url, **self.options)
            await self.client.__aenter__()
        return self

    async def __aexit__(self, exc_type, exc_value, traceback):
        """Stop the client."""
        self.active -= 1
        if self.active < 1 and self.client:
            await self.client.__aexit__(exc_type, exc_value, traceback)
            self.client = None

    async def send(
        self,
        session: SessionCrypto,
        to: str,
        body: str,
        ttl: Optional[int] = None,
    ):
        """Send an encrypted body from our session to an application client id."""
        if not self.client:
            raise NoOpenClient(
                "No client has been opened; use `async with bridge_client`"
            )

        LOGGER.debug("Sending message from %s to %s", session.session_id, to)
        try:
            response = await self.client.post(
                "/message",
                params={
                    "client_id": session.session_id,
                    "to": to,
                    "ttl": ttl or self.ttl,
                },
                content=body.encode("ascii"),
                headers={"Content-Type": "text/plain"},
            )
        except HTTPError as error:
            raise BridgeError(f"Failed to reach bridge: {error}")

        if response.is_error:
            raise BridgeError(
                f"Failed to send message: HTTP {response.status_code}: "
                f"{response.text[:200]}"
            )
