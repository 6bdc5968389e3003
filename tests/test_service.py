import asyncio
import json
import time
from typing import Any, Dict

import pytest

from tonconnect_wallet import transaction
from tonconnect_wallet.crypto import SessionCrypto
from tonconnect_wallet.errors import (
    AlreadyHandled,
    BridgeError,
    BroadcastFailed,
    InvalidRequest,
    PreviewFailed,
    UnsupportedWalletKind,
)
from tonconnect_wallet.models import (
    BridgeEvent,
    ConnectedApp,
    IncomingRequest,
    TransactionParams,
    Wallet,
)
from tonconnect_wallet.service import (
    ConnectionService,
    RequestLedger,
    RequestState,
    map_emulation,
)

from conftest import FakeBridge, FakeChain, make_deeplink, make_event

DESTINATION = "0:" + "33" * 32


def tx_params(**overrides) -> Dict[str, Any]:
    params = {
        "valid_until": int(time.time()) + 600,
        "messages": [{"address": DESTINATION, "amount": "1000000000"}],
    }
    params.update(overrides)
    return params


def read(dapp: SessionCrypto, sent: Dict[str, Any]) -> Dict[str, Any]:
    return json.loads(dapp.decrypt_b64(sent["body"], sent["session"].session_id))


def app_event(
    dapp: SessionCrypto, app: ConnectedApp, body: Dict[str, Any], event_id: str
) -> BridgeEvent:
    return make_event(dapp, app.session.session_id, body, event_id)


async def connect(service: ConnectionService, wallet: Wallet, dapp: SessionCrypto):
    parameters, manifest = await service.start_handshake(
        make_deeplink(dapp.session_id)
    )
    return await service.connect(wallet, parameters, manifest)


def make_request(app: ConnectedApp, request_id: str = "1", **overrides):
    return IncomingRequest(
        id=request_id,
        params=[TransactionParams.model_validate(tx_params(**overrides))],
        app=app,
    )


@pytest.fixture
async def app(service: ConnectionService, wallet: Wallet, dapp: SessionCrypto):
    yield await connect(service, wallet, dapp)


# Handshake


@pytest.mark.asyncio
async def test_start_handshake_loads_manifest(service: ConnectionService, dapp):
    parameters, manifest = await service.start_handshake(
        make_deeplink(dapp.session_id)
    )
    assert parameters.client_id == dapp.session_id
    assert manifest.name == "Example App"
    assert service.manifest_loader.urls == [parameters.manifest_url]


@pytest.mark.asyncio
async def test_connect_persists_and_answers(
    service: ConnectionService, wallet: Wallet, dapp, bridge: FakeBridge
):
    app = await connect(service, wallet, dapp)

    (sent,) = bridge.sent
    assert sent["to"] == dapp.session_id
    assert sent["session"].session_id == app.session.session_id
    event = read(dapp, sent)
    assert event["event"] == "connect"
    assert event["payload"]["items"][0]["address"] == wallet.address

    (stored,) = await service.get_connected_apps(wallet)
    assert stored.client_id == dapp.session_id
    assert stored.session.session_id == app.session.session_id


@pytest.mark.asyncio
async def test_connect_watch_only_wallet(
    service: ConnectionService, watch_only_wallet: Wallet, dapp, bridge: FakeBridge
):
    with pytest.raises(UnsupportedWalletKind):
        await connect(service, watch_only_wallet, dapp)
    assert bridge.sent == []
    assert await service.get_connected_apps(watch_only_wallet) == []


@pytest.mark.asyncio
async def test_connect_without_key(
    service: ConnectionService, wallet: Wallet, dapp, bridge: FakeBridge
):
    service.keys.remove(wallet.address)
    with pytest.raises(UnsupportedWalletKind):
        await connect(service, wallet, dapp)
    assert bridge.sent == []


@pytest.mark.asyncio
async def test_connect_bridge_failure_rolls_back(
    service: ConnectionService, wallet: Wallet, dapp, bridge: FakeBridge
):
    bridge.fail = True
    with pytest.raises(BridgeError) as excinfo:
        await connect(service, wallet, dapp)
    assert excinfo.value.retryable
    assert await service.get_connected_apps(wallet) == []


@pytest.mark.asyncio
async def test_reconnect_replaces_app(service: ConnectionService, wallet, dapp):
    await connect(service, wallet, dapp)
    second = await connect(service, wallet, dapp)
    (stored,) = await service.get_connected_apps(wallet)
    assert stored.session.session_id == second.session.session_id


@pytest.mark.asyncio
async def test_decline_connection(
    service: ConnectionService, dapp, bridge: FakeBridge
):
    parameters, _ = await service.start_handshake(make_deeplink(dapp.session_id))
    await service.decline_connection(parameters)
    event = read(dapp, bridge.sent[0])
    assert event["event"] == "connect_error"
    assert event["payload"]["code"] == 300

    bridge.fail = True
    await service.decline_connection(parameters)


@pytest.mark.asyncio
async def test_disconnect(
    service: ConnectionService, wallet: Wallet, dapp, app, bridge: FakeBridge
):
    assert await service.disconnect(wallet, app.client_id)
    assert read(dapp, bridge.sent[-1])["event"] == "disconnect"
    assert await service.get_connected_apps(wallet) == []
    assert not await service.disconnect(wallet, app.client_id)


@pytest.mark.asyncio
async def test_forget_wallet(service: ConnectionService, wallet: Wallet, app):
    await service.forget_wallet(wallet)
    assert await service.get_connected_apps(wallet) == []


# Requests


@pytest.mark.asyncio
async def test_preview_then_confirm_uses_fresh_seqno(
    service: ConnectionService,
    wallet: Wallet,
    dapp,
    app,
    bridge: FakeBridge,
    chain: FakeChain,
):
    request = make_request(app)
    preview = await service.preview_request(wallet, request)
    assert preview.seqno == 7
    assert preview.fee == 1000
    assert service.ledger.state(request) == RequestState.AWAITING_USER_DECISION

    (emulated,) = chain.emulated
    emulated_message = transaction.decode(emulated)
    assert emulated_message.seqno == 7
    assert emulated_message.signature == bytes(64)

    signed = await service.confirm_request(wallet, request)
    message = transaction.decode(signed)
    assert message.seqno == 8
    assert message.verify(wallet.public_key)
    assert chain.broadcasts == [signed]
    assert service.ledger.state(request) == RequestState.SENT

    assert read(dapp, bridge.sent[-1]) == {"id": "1", "result": signed}


@pytest.mark.asyncio
async def test_double_confirm(
    service: ConnectionService, wallet: Wallet, app, bridge: FakeBridge, chain
):
    request = make_request(app)
    await service.confirm_request(wallet, request)
    with pytest.raises(AlreadyHandled):
        await service.confirm_request(wallet, request)
    assert len(chain.broadcasts) == 1
    assert len(bridge.sent) == 2


@pytest.mark.asyncio
async def test_cancel_after_confirm(service: ConnectionService, wallet, app, bridge):
    request = make_request(app)
    await service.confirm_request(wallet, request)
    with pytest.raises(AlreadyHandled):
        await service.cancel_request(request)
    assert len(bridge.sent) == 2


@pytest.mark.asyncio
async def test_broadcast_failure_keeps_request_open(
    service: ConnectionService, wallet, app, bridge: FakeBridge, chain: FakeChain
):
    request = make_request(app)
    chain.fail_broadcast = True
    with pytest.raises(BroadcastFailed) as excinfo:
        await service.confirm_request(wallet, request)
    assert excinfo.value.retryable
    assert len(bridge.sent) == 1
    assert service.ledger.state(request) == RequestState.AWAITING_USER_DECISION

    chain.fail_broadcast = False
    await service.confirm_request(wallet, request)
    assert len(chain.broadcasts) == 1
    assert len(bridge.sent) == 2


@pytest.mark.asyncio
async def test_cancel_after_failed_broadcast(
    service: ConnectionService, wallet, dapp, app, bridge: FakeBridge, chain
):
    request = make_request(app)
    chain.fail_broadcast = True
    with pytest.raises(BroadcastFailed):
        await service.confirm_request(wallet, request)
    await service.cancel_request(request)
    assert read(dapp, bridge.sent[-1])["error"]["code"] == 300


@pytest.mark.asyncio
async def test_confirm_retransmits_after_bridge_failure(
    service: ConnectionService, wallet, dapp, app, bridge: FakeBridge, chain
):
    request = make_request(app)
    bridge.fail = True
    with pytest.raises(BridgeError):
        await service.confirm_request(wallet, request)
    assert len(chain.broadcasts) == 1

    with pytest.raises(AlreadyHandled):
        await service.cancel_request(request)

    bridge.fail = False
    signed = await service.confirm_request(wallet, request)
    assert chain.broadcasts == [signed]
    assert read(dapp, bridge.sent[-1])["result"] == signed


class GatedChain(FakeChain):
    """Emulation blocks until the gate opens."""

    def __init__(self, seqnos=(7, 8)):
        super().__init__(seqnos)
        self.entered = asyncio.Event()
        self.gate = asyncio.Event()

    async def emulate(self, message: str, wallet: Wallet):
        self.entered.set()
        await self.gate.wait()
        return await super().emulate(message, wallet)


class SlowSeqnoChain(FakeChain):
    async def get_seqno(self, wallet: Wallet) -> int:
        await asyncio.sleep(0.01)
        return await super().get_seqno(wallet)


@pytest.mark.asyncio
async def test_confirm_refused_while_previewing(
    service: ConnectionService, wallet: Wallet, app, bridge: FakeBridge
):
    chain = GatedChain()
    service.chain = chain
    request = make_request(app)
    preview = asyncio.ensure_future(service.preview_request(wallet, request))
    await chain.entered.wait()

    with pytest.raises(AlreadyHandled):
        await service.confirm_request(wallet, request)
    with pytest.raises(AlreadyHandled):
        await service.cancel_request(request)

    chain.gate.set()
    await preview
    assert service.ledger.state(request) == RequestState.AWAITING_USER_DECISION
    await service.confirm_request(wallet, request)
    assert len(chain.broadcasts) == 1
    assert len(bridge.sent) == 2


@pytest.mark.asyncio
async def test_late_preview_end_keeps_sent(app):
    ledger = RequestLedger()
    request = make_request(app)
    ledger.begin_preview(request)
    ledger.end_preview(request)
    ledger.claim(request, RequestState.CONFIRMING)
    ledger.end_preview(request, succeeded=False)
    assert ledger.state(request) == RequestState.CONFIRMING
    ledger.finish(request)
    ledger.end_preview(request)
    assert ledger.state(request) == RequestState.SENT
    with pytest.raises(AlreadyHandled):
        ledger.claim(request, RequestState.CONFIRMING)
    with pytest.raises(AlreadyHandled):
        ledger.begin_preview(request)


@pytest.mark.asyncio
async def test_preview_failure_reopens_request(
    service: ConnectionService, wallet, app, chain: FakeChain
):
    request = make_request(app)
    chain.fail_emulate = True
    with pytest.raises(PreviewFailed):
        await service.preview_request(wallet, request)
    assert service.ledger.state(request) == RequestState.RECEIVED
    await service.cancel_request(request)
    assert service.ledger.state(request) == RequestState.SENT


@pytest.mark.asyncio
async def test_concurrent_confirms_from_one_app(
    service: ConnectionService, wallet: Wallet, app, bridge: FakeBridge
):
    chain = SlowSeqnoChain(seqnos=(7, 8))
    service.chain = chain
    first, second = make_request(app, "1"), make_request(app, "2")
    results = await asyncio.gather(
        service.confirm_request(wallet, first),
        service.confirm_request(wallet, second),
        return_exceptions=True,
    )
    assert results[0] == chain.broadcasts[0]
    assert isinstance(results[1], AlreadyHandled)
    assert results[1].retryable
    assert len(bridge.sent) == 2
    assert service.ledger.state(second) == RequestState.RECEIVED

    await service.confirm_request(wallet, second)
    seqnos = [transaction.decode(message).seqno for message in chain.broadcasts]
    assert seqnos == [7, 8]


@pytest.mark.asyncio
async def test_ledger_prunes_answered_requests(app, monkeypatch):
    ledger = RequestLedger(retention=60)
    request = make_request(app, valid_until=int(time.time()) + 30)
    ledger.claim(request, RequestState.CANCELLING)
    ledger.finish(request)
    assert request in ledger

    later = time.time() + 120
    monkeypatch.setattr(time, "time", lambda: later)
    assert request not in ledger
    with pytest.raises(InvalidRequest):
        ledger.claim(request, RequestState.CONFIRMING)


@pytest.mark.asyncio
async def test_cancel(service: ConnectionService, dapp, app, bridge: FakeBridge):
    request = make_request(app, "5")
    await service.cancel_request(request)
    assert read(dapp, bridge.sent[-1]) == {
        "id": "5",
        "error": {"code": 300, "message": "User declined the transaction"},
    }
    with pytest.raises(AlreadyHandled):
        await service.cancel_request(request)


@pytest.mark.asyncio
async def test_cancel_is_best_effort(service: ConnectionService, app, bridge):
    request = make_request(app)
    bridge.fail = True
    await service.cancel_request(request)
    assert service.ledger.state(request) == RequestState.SENT


@pytest.mark.asyncio
async def test_confirm_watch_only(
    service: ConnectionService, watch_only_wallet, app, chain: FakeChain
):
    request = make_request(app)
    with pytest.raises(UnsupportedWalletKind):
        await service.confirm_request(watch_only_wallet, request)
    assert chain.broadcasts == []
    assert chain.seqno_calls == 0


@pytest.mark.asyncio
async def test_preview_failure(service: ConnectionService, wallet, app, chain):
    chain.fail_emulate = True
    with pytest.raises(PreviewFailed) as excinfo:
        await service.preview_request(wallet, make_request(app))
    assert excinfo.value.retryable


@pytest.mark.asyncio
async def test_preview_loads_nfts(
    service: ConnectionService, wallet, app, chain: FakeChain
):
    nft = "0:" + "55" * 32
    chain.emulation = {
        "event": {
            "extra": -2500,
            "actions": [
                {
                    "type": "NftItemTransfer",
                    "status": "ok",
                    "NftItemTransfer": {"nft": nft, "recipient": DESTINATION},
                }
            ],
        }
    }
    chain.nfts = {nft: {"address": nft, "metadata": {"name": "Item"}}}
    preview = await service.preview_request(wallet, make_request(app))
    assert preview.fee == 2500
    assert preview.nft_addresses == [nft]
    assert preview.nfts[nft]["metadata"]["name"] == "Item"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides",
    [
        {"valid_until": 1},
        {"network": "-3"},
        {"from": "0:" + "44" * 32},
    ],
)
async def test_request_rejected(
    service: ConnectionService, wallet, app, chain: FakeChain, overrides
):
    request = make_request(app, **overrides)
    with pytest.raises(InvalidRequest):
        await service.confirm_request(wallet, request)
    assert chain.broadcasts == []
    with pytest.raises(PreviewFailed):
        await service.preview_request(wallet, request)


# Bridge events


@pytest.mark.asyncio
async def test_handle_send_transaction(
    service: ConnectionService, wallet: Wallet, dapp, app
):
    body = {
        "id": 3,
        "method": "sendTransaction",
        "params": [json.dumps(tx_params())],
    }
    request = await service.handle_bridge_event(app_event(dapp, app, body, "10"))
    assert request.id == "3"
    assert request.wallet_address == wallet.address
    assert request.app.client_id == dapp.session_id
    assert request.params[0].messages[0].address == DESTINATION
    assert request.params[0].messages[0].amount == 1000000000
    assert service.cursor.get() == "10"

    assert await service.handle_bridge_event(app_event(dapp, app, body, "10")) is None
    assert await service.handle_bridge_event(app_event(dapp, app, body, "9")) is None


@pytest.mark.asyncio
async def test_wallet_cursors_are_independent(
    service: ConnectionService, wallet: Wallet, dapp, app
):
    other_seed = bytes(range(1, 33))
    other = Wallet(
        address="0:" + "44" * 32,
        public_key=service.keys.add("0:" + "44" * 32, other_seed),
    )
    other_dapp = SessionCrypto.generate()
    other_app = await connect(service, other, other_dapp)
    body = {
        "id": "1",
        "method": "sendTransaction",
        "params": [json.dumps(tx_params())],
    }

    first = await service.handle_bridge_event(
        app_event(dapp, app, body, "100"),
        [wallet.address],
        cursor=service.cursor.for_wallet(wallet.address),
    )
    second = await service.handle_bridge_event(
        app_event(other_dapp, other_app, body, "90"),
        [other.address],
        cursor=service.cursor.for_wallet(other.address),
    )
    assert first.wallet_address == wallet.address
    assert second.wallet_address == other.address
    assert service.cursor.for_wallet(wallet.address).get() == "100"
    assert service.cursor.for_wallet(other.address).get() == "90"
    assert service.cursor.get() is None


@pytest.mark.asyncio
async def test_handle_unsupported_method(
    service: ConnectionService, dapp, app, bridge: FakeBridge
):
    body = {"id": "4", "method": "signData", "params": []}
    assert await service.handle_bridge_event(app_event(dapp, app, body, "1")) is None
    assert read(dapp, bridge.sent[-1])["error"]["code"] == 400


@pytest.mark.asyncio
async def test_handle_bad_params(
    service: ConnectionService, dapp, app, bridge: FakeBridge
):
    body = {
        "id": "4",
        "method": "sendTransaction",
        "params": [json.dumps({"messages": [{"address": "nowhere", "amount": 1}]})],
    }
    assert await service.handle_bridge_event(app_event(dapp, app, body, "1")) is None
    reply = read(dapp, bridge.sent[-1])
    assert reply["id"] == "4"
    assert reply["error"]["code"] == 1


@pytest.mark.asyncio
async def test_handle_app_disconnect(
    service: ConnectionService, wallet, dapp, app, bridge: FakeBridge
):
    body = {"id": "8", "method": "disconnect", "params": []}
    assert await service.handle_bridge_event(app_event(dapp, app, body, "1")) is None
    assert await service.get_connected_apps(wallet) == []
    assert read(dapp, bridge.sent[-1]) == {"id": "8", "result": {}}


@pytest.mark.asyncio
async def test_handle_unknown_app(service: ConnectionService, app):
    stranger = SessionCrypto.generate()
    body = {"id": "1", "method": "sendTransaction", "params": []}
    event = app_event(stranger, app, body, "1")
    assert await service.handle_bridge_event(event) is None


@pytest.mark.asyncio
async def test_handle_tampered_message(service: ConnectionService, dapp, app):
    event = BridgeEvent(
        id="1",
        event="message",
        data=json.dumps({"from": dapp.session_id, "message": "AAAA"}),
    )
    assert await service.handle_bridge_event(event) is None


@pytest.mark.asyncio
async def test_handle_heartbeat(service: ConnectionService):
    assert await service.handle_bridge_event(BridgeEvent(None, "heartbeat", "")) is None


def test_map_emulation():
    preview = map_emulation(
        {
            "event": {
                "extra": -100,
                "actions": [
                    {
                        "type": "JettonTransfer",
                        "status": "ok",
                        "JettonTransfer": {
                            "amount": "5",
                            "jetton": {"address": "0:" + "66" * 32},
                        },
                    },
                    {
                        "type": "NftPurchase",
                        "status": "failed",
                        "NftPurchase": {"nft": {"address": "0:" + "77" * 32}},
                    },
                    {"type": "TonTransfer", "TonTransfer": {"amount": 1}},
                ],
            }
        },
        seqno=2,
    )
    assert preview.fee == 100
    assert preview.seqno == 2
    assert [action.type for action in preview.actions] == [
        "JettonTransfer",
        "NftPurchase",
        "TonTransfer",
    ]
    assert preview.actions[1].status == "failed"
    assert preview.jetton_addresses == ["0:" + "66" * 32]
    assert "0:" + "77" * 32 in preview.nfts


def test_map_emulation_refund():
    assert map_emulation({"event": {"extra": 50, "actions": []}}).fee == 0
