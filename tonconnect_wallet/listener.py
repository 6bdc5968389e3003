"""Bridge event subscription."""
import asyncio
from contextlib import suppress
import logging
from typing import Awaitable, Callable, List, Optional

import aiohttp

from .models import BridgeEvent, IncomingRequest, Wallet
from .service import ConnectionService


# Logging
LOGGER = logging.getLogger("uvicorn.error." + __name__)

RequestHandler = Callable[[IncomingRequest], Awaitable[None]]


class EventParser:
    """Incremental Server-Sent Events parser."""

    def __init__(self):
        self._id: Optional[str] = None
        self._event: Optional[str] = None
        self._data: List[str] = []

    def feed(self, line: str) -> Optional[BridgeEvent]:
        """Feed one line; returns an event when a blank line completes it."""
        line = line.rstrip("\r\n")
        if not line:
            if not self._data and self._event is None:
                return None
            event = BridgeEvent(
                id=self._id,
                event=self._event or "message",
                data="\n".join(self._data),
            )
            self._id, self._event, self._data = None, None, []
            return event
        if line.startswith(":"):
            return None
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "id":
            self._id = value
        elif name == "event":
            self._event = value
        elif name == "data":
            self._data.append(value)
        return None


class BridgeListener:
    """Stream relay events for every app connected to one wallet."""

    def __init__(
        self,
        service: ConnectionService,
        wallet: Wallet,
        handler: RequestHandler,
        bridge_url: Optional[str] = None,
    ):
        self.service = service
        self.wallet = wallet
        self.handler = handler
        self.bridge_url = (bridge_url or service.settings.bridge_url).rstrip("/")
        self.cursor = service.cursor.for_wallet(wallet.address)

        self._task: Optional[asyncio.Future] = None
        self._response: Optional[aiohttp.ClientResponse] = None
        self._opened: asyncio.Event = asyncio.Event()

    async def process(self, event: BridgeEvent):
        """Handle one event; a failure is logged and the stream goes on."""
        try:
            request = await self.service.handle_bridge_event(
                event, [self.wallet.address], cursor=self.cursor
            )
            if request:
                await self.handler(request)
        except Exception:
            LOGGER.exception("Failed to process bridge event %s", event.id)

    async def _open(self):
        apps = await self.service.get_connected_apps(self.wallet)
        if not apps:
            LOGGER.debug("No connected apps for %s; not listening", self.wallet.address)
            return
        params = {"client_id": ",".join(app.session.session_id for app in apps)}
        last_event_id = self.cursor.get()
        if last_event_id:
            params["last_event_id"] = last_event_id

        LOGGER.debug("Starting event stream from %s", self.bridge_url)
        async with aiohttp.ClientSession() as session:
            try:
                async with session.get(
                    self.bridge_url + "/events",
                    params=params,
                    headers={"Accept": "text/event-stream"},
                    timeout=aiohttp.ClientTimeout(total=None, sock_read=None),
                ) as response:
                    response.raise_for_status()
                    LOGGER.debug("Event stream connected to %s", self.bridge_url)
                    self._response = response
                    self._opened.set()
                    parser = EventParser()
                    async for raw_line in response.content:
                        event = parser.feed(raw_line.decode("utf-8"))
                        if event is None:
                            continue
                        if event.event == "heartbeat":
                            continue
                        await self.process(event)
            except (aiohttp.ClientError, asyncio.TimeoutError, ValueError):
                LOGGER.exception("Bridge event stream error")
        self._response = None

    def open(self):
        """Open the event stream."""
        self._task = asyncio.ensure_future(self._open())

    async def wait_opened(self):
        await self._opened.wait()

    async def close(self):
        """Stop the event stream."""
        if self._response:
            self._response.close()
        if self._task:
            self._task.cancel()
            with suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        self._opened.clear()
