"""
TonConnect wallet agent.

Exposes the connection engine over HTTP so a wallet can be driven without a
user interface: register wallets, answer connection deeplinks, receive
application requests from the bridge and preview, confirm or cancel them.

Required operations include:
- register wallet
- connect to application
- receive request
- preview, confirm and cancel request
"""

import asyncio
from dataclasses import asdict
import logging
from typing import Any, Dict, List, Optional, Tuple

import httpx
from fastapi import FastAPI, HTTPException

from pydantic.dataclasses import dataclass
from async_selective_queue import AsyncSelectiveQueue as Queue

from .address import to_raw
from .chain import TonApiChainService
from .client import BridgeClient
from .config import Settings
from .cursor import CursorStore
from .errors import (
    AlreadyHandled,
    BridgeError,
    ChainServiceError,
    ManifestError,
    RequestError,
    StorageError,
    TonConnectError,
)
from .keys import InMemoryKeyProvider
from .listener import BridgeListener
from .manifest import ManifestLoader
from .models import (
    AppInfo as AppInfoModel,
    BridgeEvent,
    ConnectedApp,
    Handshake as HandshakeModel,
    HandshakeInfo as HandshakeInfoModel,
    IncomingRequest,
    NewEvent as NewEventModel,
    NewWallet as NewWalletModel,
    RequestInfo as RequestInfoModel,
    Wallet,
    WalletInfo as WalletInfoModel,
)
from .registry import AppRegistry
from .service import ConnectionService
from .vault import MemoryVault


# Convert dataclasses to pydantic dataclasses
# See this issue for why this is necessary:
# https://github.com/tiangolo/fastapi/issues/5138
@dataclass
class NewWallet(NewWalletModel):
    pass


@dataclass
class WalletInfo(WalletInfoModel):
    pass


@dataclass
class Handshake(HandshakeModel):
    pass


@dataclass
class HandshakeInfo(HandshakeInfoModel):
    pass


@dataclass
class AppInfo(AppInfoModel):
    pass


@dataclass
class RequestInfo(RequestInfoModel):
    pass


@dataclass
class NewEvent(NewEventModel):
    pass


# Logging
LOGGER = logging.getLogger("uvicorn.error." + __name__)

# Global state
settings = Settings.from_env()
vault = MemoryVault()
keys = InMemoryKeyProvider()
wallets: Dict[str, Wallet] = {}
listeners: Dict[str, BridgeListener] = {}
requests: Dict[Tuple[str, str], IncomingRequest] = {}
incoming: Queue[IncomingRequest] = Queue()
http_client = httpx.AsyncClient(timeout=settings.http_timeout)
service = ConnectionService(
    manifest_loader=ManifestLoader(http_client),
    bridge=BridgeClient(
        settings.bridge_url, ttl=settings.bridge_ttl, timeout=settings.http_timeout
    ),
    registry=AppRegistry(vault),
    cursor=CursorStore(vault),
    chain=TonApiChainService(
        http_client, settings.tonapi_url, token=settings.tonapi_token
    ),
    keys=keys,
    settings=settings,
)

# Defaults
TIMEOUT = 5

app = FastAPI(title="TonConnect Wallet Agent", version="0.1.0")


@app.on_event("startup")
async def setup_incoming_queue():
    incoming._cond = asyncio.Condition()


@app.on_event("startup")
async def open_bridge():
    await service.bridge.__aenter__()


@app.on_event("shutdown")
async def shutdown():
    for listener in listeners.values():
        await listener.close()
    listeners.clear()
    await service.bridge.__aexit__(None, None, None)
    await http_client.aclose()


def _raise_for(error: TonConnectError):
    """Translate an engine error into an HTTP error."""
    if isinstance(error, AlreadyHandled):
        status_code = 409
    elif isinstance(error, (BridgeError, ManifestError, ChainServiceError)):
        status_code = 502
    elif isinstance(error, RequestError):
        status_code = 502 if error.retryable else 400
    elif isinstance(error, StorageError):
        status_code = 500
    else:
        status_code = 400
    raise HTTPException(
        status_code=status_code,
        detail={
            "code": error.code,
            "message": str(error),
            "retryable": error.retryable,
        },
    )


def _wallet(address: str) -> Wallet:
    try:
        wallet = wallets.get(to_raw(address))
    except ValueError:
        wallet = None
    if not wallet:
        raise HTTPException(status_code=404, detail=f"No wallet matching {address}")
    return wallet


def _request(client_id: str, request_id: str) -> IncomingRequest:
    request = requests.get((client_id, request_id))
    if not request:
        raise HTTPException(
            status_code=404,
            detail=f"No request {request_id} from app {client_id}",
        )
    return request


def _wallet_info(wallet: Wallet) -> WalletInfo:
    return WalletInfo(
        address=wallet.address,
        public_key=wallet.public_key.hex(),
        kind=wallet.kind,
        network=wallet.network,
    )


def _app_info(connected: ConnectedApp) -> AppInfo:
    return AppInfo(
        client_id=connected.client_id,
        session_id=connected.session.session_id,
        name=connected.manifest.name,
        url=connected.manifest.url,
        icon_url=connected.manifest.icon_url,
    )


def _request_info(request: IncomingRequest) -> RequestInfo:
    return RequestInfo(
        request_id=request.id,
        client_id=request.app.client_id,
        wallet_address=request.wallet_address,
        method=request.method,
        messages=[
            message.model_dump(by_alias=True, exclude_none=True)
            for params in request.params
            for message in params.messages
        ],
    )


async def handle_new_request(request: IncomingRequest):
    """Store an incoming request until it is handled."""
    LOGGER.debug("Request %s received from %s", request.id, request.app.client_id)
    requests[request.key] = request
    await incoming.put(request)


@app.post("/wallet", response_model=WalletInfo, operation_id="new_wallet")
async def new_wallet(new_wallet: NewWallet):
    """Register a wallet with the agent."""
    try:
        if new_wallet.seed:
            public_key = keys.add(new_wallet.address, bytes.fromhex(new_wallet.seed))
        elif new_wallet.public_key:
            public_key = bytes.fromhex(new_wallet.public_key)
        else:
            raise ValueError("Either seed or public_key is required")
        wallet = Wallet(
            address=new_wallet.address,
            public_key=public_key,
            kind=new_wallet.kind,
            network=new_wallet.network,
        )
    except ValueError as error:
        raise HTTPException(status_code=400, detail=str(error))

    wallets[wallet.address] = wallet
    LOGGER.debug("Registered wallet %s", wallet)
    return _wallet_info(wallet)


@app.get("/wallets", response_model=List[WalletInfo], operation_id="get_wallets")
async def get_wallets() -> List[WalletInfo]:
    return [_wallet_info(wallet) for wallet in wallets.values()]


@app.delete("/wallet/{address}", response_model=str, operation_id="delete_wallet")
async def delete_wallet(address: str):
    """Delete a wallet and every app connected to it."""
    wallet = _wallet(address)
    if wallet.address in listeners:
        await listeners.pop(wallet.address).close()
    try:
        await service.forget_wallet(wallet)
    except TonConnectError as error:
        _raise_for(error)
    keys.remove(wallet.address)
    wallets.pop(wallet.address)
    return wallet.address


@app.post("/handshake", response_model=HandshakeInfo, operation_id="handshake")
async def handshake(handshake: Handshake):
    """Parse a connection deeplink and load the application's manifest."""
    try:
        parameters, manifest = await service.start_handshake(handshake.deeplink)
    except TonConnectError as error:
        _raise_for(error)
    return HandshakeInfo(
        client_id=parameters.client_id,
        version=parameters.version.value,
        manifest=manifest.model_dump(by_alias=True, exclude_none=True),
        items=[item.name for item in parameters.items],
    )


@app.post("/connect/{address}", response_model=AppInfo, operation_id="connect")
async def connect(address: str, handshake: Handshake):
    """Connect a wallet to the application named by a deeplink."""
    wallet = _wallet(address)
    try:
        parameters, manifest = await service.start_handshake(handshake.deeplink)
        connected = await service.connect(wallet, parameters, manifest)
    except TonConnectError as error:
        _raise_for(error)
    return _app_info(connected)


@app.post("/decline", response_model=str, operation_id="decline")
async def decline(handshake: Handshake):
    """Decline a connection request."""
    try:
        parameters, _ = await service.start_handshake(handshake.deeplink)
    except TonConnectError as error:
        _raise_for(error)
    await service.decline_connection(parameters)
    return parameters.client_id


@app.get("/apps/{address}", response_model=List[AppInfo], operation_id="get_apps")
async def get_apps(address: str) -> List[AppInfo]:
    wallet = _wallet(address)
    try:
        connected = await service.get_connected_apps(wallet)
    except TonConnectError as error:
        _raise_for(error)
    return [_app_info(entry) for entry in connected]


@app.delete(
    "/apps/{address}/{client_id}", response_model=str, operation_id="disconnect"
)
async def disconnect(address: str, client_id: str):
    """Disconnect an application from a wallet."""
    wallet = _wallet(address)
    try:
        removed = await service.disconnect(wallet, client_id)
    except TonConnectError as error:
        _raise_for(error)
    if not removed:
        raise HTTPException(
            status_code=404, detail=f"No app matching {client_id} for {address}"
        )
    return client_id


@app.post("/event", response_model=Optional[RequestInfo])
async def new_event(new_event: NewEvent):
    """Receive a bridge event, as delivered by the relay's event stream."""
    event = BridgeEvent(id=new_event.id, event=new_event.event, data=new_event.data)
    try:
        request = await service.handle_bridge_event(event, list(wallets))
    except TonConnectError as error:
        _raise_for(error)
    if not request:
        return None
    await handle_new_request(request)
    return _request_info(request)


@app.get("/listen/{address}", response_model=str, operation_id="open_listener")
async def open_listener(address: str):
    """Stream bridge events for every app connected to a wallet."""
    wallet = _wallet(address)
    if wallet.address in listeners:
        await listeners.pop(wallet.address).close()
    listener = BridgeListener(service, wallet, handle_new_request)
    listeners[wallet.address] = listener
    listener.open()
    return wallet.address


@app.delete("/listen/{address}", response_model=str)
async def close_listener(address: str):
    """Close a wallet's event stream."""
    address = _wallet(address).address
    if address not in listeners:
        raise HTTPException(
            status_code=404, detail=f"No listener matching {address} found"
        )
    await listeners.pop(address).close()
    return address


@app.get(
    "/requests", response_model=List[RequestInfo], operation_id="get_requests"
)
async def get_requests(client_id: Optional[str] = None):
    """Retrieve all received requests, optionally for one application."""
    if not client_id:
        LOGGER.debug("Retrieving requests")
        return [_request_info(request) for request in incoming.get_all()]

    return [
        _request_info(request)
        for request in incoming.get_all(
            lambda request: request.app.client_id == client_id
        )
    ]


@app.get("/request", response_model=RequestInfo, operation_id="wait_for_request")
async def get_request(
    client_id: Optional[str] = None,
    wait: Optional[bool] = True,
    timeout: int = TIMEOUT,
):
    """Wait for a request matching criteria."""

    def _condition(request: IncomingRequest):
        return request.app.client_id == client_id if client_id else True

    if wait:
        try:
            request = await incoming.get(select=_condition, timeout=timeout)
        except asyncio.TimeoutError:
            raise HTTPException(
                status_code=408,
                detail="No request found before timeout",
            )
    else:
        request = incoming.get_nowait(select=_condition)

    if not request:
        raise HTTPException(status_code=404, detail="No request found")

    return _request_info(request)


@app.post("/request/{client_id}/{request_id}/preview", operation_id="preview")
async def preview_request(client_id: str, request_id: str) -> Dict[str, Any]:
    """Emulate a request and describe its effects."""
    request = _request(client_id, request_id)
    wallet = _wallet(request.wallet_address or "")
    try:
        preview = await service.preview_request(wallet, request)
    except TonConnectError as error:
        _raise_for(error)
    return asdict(preview)


@app.post("/request/{client_id}/{request_id}/confirm", operation_id="confirm")
async def confirm_request(client_id: str, request_id: str) -> Dict[str, Any]:
    """Sign, broadcast and answer a request."""
    request = _request(client_id, request_id)
    wallet = _wallet(request.wallet_address or "")
    try:
        signed_message = await service.confirm_request(wallet, request)
    except TonConnectError as error:
        _raise_for(error)
    return {"request_id": request_id, "result": signed_message}


@app.post(
    "/request/{client_id}/{request_id}/cancel",
    response_model=str,
    operation_id="cancel",
)
async def cancel_request(client_id: str, request_id: str):
    """Decline a request."""
    request = _request(client_id, request_id)
    try:
        await service.cancel_request(request)
    except TonConnectError as error:
        _raise_for(error)
    return request_id


__all__ = ["app"]
