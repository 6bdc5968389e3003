"""Connection protocol orchestration.

Per application request the engine walks
``received -> emulating -> awaiting_user_decision`` and from there either
``confirming -> sent`` or ``cancelling -> sent``. Exactly one response is
transmitted per request; the ledger below rejects a second confirm or cancel.
"""
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from pydantic import ValidationError

from . import deeplink, response, transaction
from .chain import ChainService
from .client import BridgeClient
from .config import Settings
from .crypto import SessionCrypto
from .cursor import CursorStore
from .errors import (
    AlreadyHandled,
    BridgeError,
    BroadcastFailed,
    ChainServiceError,
    CryptoError,
    InvalidRequest,
    PreviewFailed,
    TonConnectError,
    UnsupportedWalletKind,
)
from .keys import SigningKeyProvider
from .manifest import ManifestLoader
from .models import (
    AppRequestMessage,
    BridgeEvent,
    BridgeMessage,
    ConnectedApp,
    ConnectionParameters,
    ErrorCode,
    IncomingRequest,
    Manifest,
    Preview,
    PreviewAction,
    TransactionParams,
    Wallet,
)
from .registry import AppRegistry
from .transaction import DEFAULT_SEND_MODE, NoOpSigner, SecretKeySigner


LOGGER = logging.getLogger(__name__)

# Validity window for transfers whose request carries no valid_until
DEFAULT_VALIDITY = 300

# Seconds a request stays answerable and an answered one stays in the ledger
RETENTION = 3600


class RequestState(str, Enum):
    RECEIVED = "received"
    EMULATING = "emulating"
    AWAITING_USER_DECISION = "awaiting_user_decision"
    CONFIRMING = "confirming"
    CANCELLING = "cancelling"
    SENT = "sent"


@dataclass
class RequestRecord:
    state: RequestState = RequestState.RECEIVED
    in_flight: bool = False
    signed_message: Optional[str] = None
    keep_until: Optional[float] = None


class RequestLedger:
    """State and claims of application requests, keyed by (client id, id).

    Only one request per application is confirmed or cancelled at a time, so
    two transfers never race for the same seqno. Answered requests are pruned
    once they are past their validity and the retention window; a request
    that old can no longer be claimed.
    """

    def __init__(self, retention: float = RETENTION):
        self.retention = retention
        self._records: Dict[Tuple[str, str], RequestRecord] = {}
        self._busy: Dict[str, str] = {}

    def __contains__(self, request: IncomingRequest) -> bool:
        self._prune()
        return request.key in self._records

    def _prune(self):
        now = time.time()
        expired = [
            key
            for key, record in self._records.items()
            if record.keep_until is not None and record.keep_until <= now
        ]
        for key in expired:
            del self._records[key]

    def _horizon(self, request: IncomingRequest) -> float:
        valid_until = request.params[0].valid_until if request.params else None
        return max(request.received_at + self.retention, valid_until or 0)

    def record(self, request: IncomingRequest) -> RequestRecord:
        self._prune()
        return self._records.setdefault(request.key, RequestRecord())

    def state(self, request: IncomingRequest) -> RequestState:
        return self.record(request).state

    def begin_preview(self, request: IncomingRequest):
        record = self.record(request)
        if record.in_flight or record.state in (
            RequestState.EMULATING,
            RequestState.CONFIRMING,
            RequestState.CANCELLING,
            RequestState.SENT,
        ):
            raise AlreadyHandled(f"Request {request.id} is already being handled")
        record.state = RequestState.EMULATING

    def end_preview(self, request: IncomingRequest, succeeded: bool = True):
        """Leave the emulating state unless a confirm or cancel took over."""
        record = self.record(request)
        if record.state != RequestState.EMULATING or record.in_flight:
            return
        record.state = (
            RequestState.AWAITING_USER_DECISION if succeeded else RequestState.RECEIVED
        )

    def claim(self, request: IncomingRequest, state: RequestState) -> RequestRecord:
        """Mark a request as taken by a confirm or cancel."""
        record = self.record(request)
        if record.state == RequestState.SENT:
            raise AlreadyHandled(f"Request {request.id} was already answered")
        if record.in_flight or record.state == RequestState.EMULATING:
            raise AlreadyHandled(f"Request {request.id} is already being handled")
        if state == RequestState.CANCELLING and record.signed_message:
            raise AlreadyHandled(
                f"Request {request.id} was already broadcast and cannot be cancelled"
            )
        if time.time() > self._horizon(request):
            raise InvalidRequest(f"Request {request.id} is too old to answer")
        client_id = request.app.client_id
        busy = self._busy.get(client_id)
        if busy is not None:
            raise AlreadyHandled(
                f"Request {busy} from {client_id} is being handled",
                retryable=True,
            )
        self._busy[client_id] = request.id
        record.in_flight = True
        record.state = state
        return record

    def _unclaim(self, request: IncomingRequest) -> RequestRecord:
        client_id = request.app.client_id
        if self._busy.get(client_id) == request.id:
            del self._busy[client_id]
        record = self.record(request)
        record.in_flight = False
        return record

    def release(self, request: IncomingRequest):
        self._unclaim(request).state = RequestState.AWAITING_USER_DECISION

    def finish(self, request: IncomingRequest):
        record = self._unclaim(request)
        record.state = RequestState.SENT
        record.keep_until = max(time.time() + self.retention, self._horizon(request))


def map_emulation(result: Mapping[str, Any], seqno: Optional[int] = None) -> Preview:
    """Map a chain emulation result into a user facing preview."""
    event = result.get("event") or {}
    extra = int(event.get("extra", 0))
    preview = Preview(fee=-extra if extra < 0 else 0, seqno=seqno)
    for action in event.get("actions", []):
        action_type = action.get("type", "Unknown")
        details = action.get(action_type) or {}
        preview.actions.append(
            PreviewAction(
                type=action_type,
                status=action.get("status", "ok"),
                details=dict(details),
            )
        )
        if action_type == "NftItemTransfer" and details.get("nft"):
            if details["nft"] not in preview.nft_addresses:
                preview.nft_addresses.append(details["nft"])
        elif action_type == "NftPurchase" and isinstance(details.get("nft"), dict):
            nft = details["nft"]
            preview.nfts[nft["address"]] = nft
        jetton = details.get("jetton")
        if isinstance(jetton, dict) and jetton.get("address"):
            if jetton["address"] not in preview.jetton_addresses:
                preview.jetton_addresses.append(jetton["address"])
    return preview


class ConnectionService:
    """Connect handshake and request handling for wallets."""

    def __init__(
        self,
        *,
        manifest_loader: ManifestLoader,
        bridge: BridgeClient,
        registry: AppRegistry,
        cursor: CursorStore,
        chain: ChainService,
        keys: SigningKeyProvider,
        settings: Optional[Settings] = None,
        ledger: Optional[RequestLedger] = None,
    ):
        self.manifest_loader = manifest_loader
        self.bridge = bridge
        self.registry = registry
        self.cursor = cursor
        self.chain = chain
        self.keys = keys
        self.settings = settings or Settings()
        self.ledger = ledger or RequestLedger()
        self._last_event_id = 0

    def _next_event_id(self) -> int:
        self._last_event_id = max(int(time.time() * 1000), self._last_event_id + 1)
        return self._last_event_id

    def _private_key(self, wallet: Wallet) -> bytes:
        if not wallet.can_sign:
            raise UnsupportedWalletKind(wallet.kind.value)
        try:
            return self.keys.get_private_key(wallet)
        except KeyError:
            raise UnsupportedWalletKind(wallet.kind.value) from None

    async def _send_best_effort(
        self, session: SessionCrypto, client_id: str, body: str, what: str
    ):
        try:
            await self.bridge.send(session, client_id, body)
        except BridgeError as error:
            LOGGER.warning("Failed to deliver %s to %s: %s", what, client_id, error)

    # Handshake

    async def start_handshake(
        self, link: str
    ) -> Tuple[ConnectionParameters, Manifest]:
        """Parse a connection deeplink and load the application's manifest."""
        parameters = deeplink.parse(link, self.settings.deeplink_schemes)
        manifest = await self.manifest_loader.load(parameters.manifest_url)
        LOGGER.debug(
            "Handshake started by %s (%s)", manifest.name, parameters.client_id
        )
        return parameters, manifest

    async def connect(
        self, wallet: Wallet, parameters: ConnectionParameters, manifest: Manifest
    ) -> ConnectedApp:
        """Answer a connection request and remember the application.

        The app is persisted before the answer is transmitted; a failed
        transmission removes it again and raises a retryable BridgeError.
        """
        private_key = self._private_key(wallet)
        session = SessionCrypto.generate()
        body = response.connect_success(
            parameters.items,
            wallet,
            session,
            private_key,
            manifest,
            parameters.client_id,
            event_id=self._next_event_id(),
            device=self.settings.device,
        )
        app = ConnectedApp(
            client_id=parameters.client_id, manifest=manifest, session=session
        )
        await self.registry.add(wallet.address, app)
        try:
            await self.bridge.send(session, parameters.client_id, body)
        except BridgeError:
            try:
                await self.registry.remove(wallet.address, app.client_id)
            except TonConnectError as error:
                LOGGER.warning(
                    "Could not roll back app %s after failed connect: %s",
                    app.client_id,
                    error,
                )
            raise
        LOGGER.info("Wallet %s connected to %s", wallet.address, manifest.name)
        return app

    async def decline_connection(self, parameters: ConnectionParameters):
        """Tell the application the user declined; best effort."""
        session = SessionCrypto.generate()
        body = response.connect_error(
            session, parameters.client_id, event_id=self._next_event_id()
        )
        await self._send_best_effort(
            session, parameters.client_id, body, "connect error"
        )

    async def get_connected_apps(self, wallet: Wallet) -> List[ConnectedApp]:
        return await self.registry.get(wallet.address)

    async def disconnect(self, wallet: Wallet, client_id: str) -> bool:
        """Notify the application and forget it."""
        apps = await self.registry.get(wallet.address)
        for app in apps:
            if app.client_id == client_id:
                body = response.disconnect_event(
                    app.session, app.client_id, event_id=self._next_event_id()
                )
                await self._send_best_effort(
                    app.session, app.client_id, body, "disconnect event"
                )
        return await self.registry.remove(wallet.address, client_id)

    async def forget_wallet(self, wallet: Wallet):
        await self.registry.clear(wallet.address)

    # Requests

    def _transaction_params(
        self, wallet: Wallet, request: IncomingRequest
    ) -> TransactionParams:
        if not request.params:
            raise InvalidRequest(f"Request {request.id} has no parameters")
        params = request.params[0]
        if params.valid_until is not None and params.valid_until < time.time():
            raise InvalidRequest(f"Request {request.id} has expired")
        if params.network is not None and params.network != wallet.network:
            raise InvalidRequest(
                f"Request {request.id} targets network {params.network.value}"
            )
        if params.from_ is not None and params.from_ != wallet.address:
            raise InvalidRequest(f"Request {request.id} is for another wallet")
        return params

    def _build(
        self,
        wallet: Wallet,
        seqno: int,
        params: TransactionParams,
        signer: transaction.SigningStrategy,
    ) -> str:
        return transaction.build(
            wallet,
            seqno,
            params.messages,
            DEFAULT_SEND_MODE,
            signer,
            valid_until=params.valid_until or int(time.time()) + DEFAULT_VALIDITY,
            max_messages=self.settings.max_messages,
        )

    async def preview_request(
        self, wallet: Wallet, request: IncomingRequest
    ) -> Preview:
        """Emulate a request with an empty signature and describe its effects.

        Confirm and cancel are refused while the emulation runs.
        """
        self.ledger.begin_preview(request)
        try:
            preview = await self._emulate(wallet, request)
        except BaseException:
            self.ledger.end_preview(request, succeeded=False)
            raise
        self.ledger.end_preview(request)
        return preview

    async def _emulate(self, wallet: Wallet, request: IncomingRequest) -> Preview:
        try:
            params = self._transaction_params(wallet, request)
            seqno = await self.chain.get_seqno(wallet)
            message = self._build(wallet, seqno, params, NoOpSigner())
            result = await self.chain.emulate(message, wallet)
            preview = map_emulation(result, seqno)
        except (TonConnectError, KeyError, TypeError, ValueError) as error:
            raise PreviewFailed(
                f"Could not preview request {request.id}: {error}"
            ) from error

        if preview.nft_addresses:
            try:
                preview.nfts.update(
                    await self.chain.get_nfts(preview.nft_addresses, wallet)
                )
            except ChainServiceError as error:
                LOGGER.warning("Could not load NFTs for preview: %s", error)
        return preview

    async def confirm_request(self, wallet: Wallet, request: IncomingRequest) -> str:
        """Sign with the wallet key, broadcast, then answer the application.

        A failed broadcast transmits nothing and leaves the request open for a
        retry or a cancel. Once broadcast, a retried confirm only retransmits.
        """
        private_key = self._private_key(wallet)
        record = self.ledger.claim(request, RequestState.CONFIRMING)
        app = request.app
        try:
            if record.signed_message is None:
                params = self._transaction_params(wallet, request)
                try:
                    seqno = await self.chain.get_seqno(wallet)
                    message = self._build(
                        wallet, seqno, params, SecretKeySigner(private_key)
                    )
                    await self.chain.broadcast(message, wallet)
                except ChainServiceError as error:
                    raise BroadcastFailed(
                        f"Could not broadcast request {request.id}: {error}"
                    ) from error
                record.signed_message = message
                LOGGER.info("Broadcast request %s from %s", request.id, app.client_id)
            body = response.transaction_success(
                app.session, record.signed_message, request.id, app.client_id
            )
            await self.bridge.send(app.session, app.client_id, body)
        except BaseException:
            self.ledger.release(request)
            raise
        self.ledger.finish(request)
        return record.signed_message

    async def cancel_request(self, request: IncomingRequest):
        """Answer with a user declined error; delivery is best effort."""
        self.ledger.claim(request, RequestState.CANCELLING)
        app = request.app
        try:
            body = response.transaction_error(
                app.session, ErrorCode.USER_DECLINED, request.id, app.client_id
            )
            await self._send_best_effort(
                app.session, app.client_id, body, "cancellation"
            )
        finally:
            self.ledger.finish(request)

    # Bridge events

    async def handle_bridge_event(
        self,
        event: BridgeEvent,
        wallet_addresses=None,
        cursor: Optional[CursorStore] = None,
    ) -> Optional[IncomingRequest]:
        """Decrypt and dispatch one relay event.

        Returns the incoming request when the event carried a transaction to
        sign. Events already covered by the cursor are ignored. Listeners that
        subscribe per wallet pass that wallet's cursor.
        """
        if event.event != "message":
            return None
        cursor = cursor or self.cursor
        if not cursor.is_new(event.id):
            LOGGER.debug("Ignoring already processed event %s", event.id)
            return None

        request = await self._dispatch(event, wallet_addresses)
        cursor.advance(event.id)
        return request

    async def _dispatch(
        self, event: BridgeEvent, wallet_addresses
    ) -> Optional[IncomingRequest]:
        try:
            message = BridgeMessage.model_validate_json(event.data)
        except ValidationError:
            LOGGER.warning("Bridge event %s could not be decoded", event.id)
            return None

        found = await self.registry.find(message.from_, wallet_addresses)
        if not found:
            LOGGER.warning("Received message from unknown app %s", message.from_)
            return None
        wallet_address, app = found

        try:
            plaintext = app.session.decrypt_b64(message.message, app.client_id)
        except CryptoError as error:
            LOGGER.warning("Dropping message from %s: %s", app.client_id, error)
            return None

        try:
            app_request = AppRequestMessage.model_validate_json(plaintext)
        except ValidationError:
            LOGGER.warning("Dropping unreadable request from %s", app.client_id)
            return None

        LOGGER.debug(
            "Request %s (%s) from %s",
            app_request.id,
            app_request.method,
            app.client_id,
        )
        if app_request.method == "sendTransaction":
            try:
                params = [
                    TransactionParams.model_validate_json(param)
                    if isinstance(param, str)
                    else TransactionParams.model_validate(param)
                    for param in app_request.params
                ]
            except ValidationError as error:
                body = response.transaction_error(
                    app.session,
                    ErrorCode.BAD_REQUEST,
                    app_request.id,
                    app.client_id,
                    f"Bad request: {error.error_count()} invalid fields",
                )
                await self._send_best_effort(
                    app.session, app.client_id, body, "bad request error"
                )
                return None
            request = IncomingRequest(
                id=app_request.id,
                params=params,
                app=app,
                method=app_request.method,
                wallet_address=wallet_address,
            )
            self.ledger.record(request)
            return request

        if app_request.method == "disconnect":
            await self.registry.remove(wallet_address, app.client_id)
            body = response.disconnect_result(
                app.session, app_request.id, app.client_id
            )
            await self._send_best_effort(
                app.session, app.client_id, body, "disconnect result"
            )
            return None

        body = response.transaction_error(
            app.session, ErrorCode.METHOD_NOT_SUPPORTED, app_request.id, app.client_id
        )
        await self._send_best_effort(
            app.session, app.client_id, body, "unsupported method error"
        )
        return None
