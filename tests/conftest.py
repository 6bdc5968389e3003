import hashlib
import json
from typing import Any, Dict, List, Optional
from urllib.parse import quote

from nacl.signing import SigningKey
import pytest

from tonconnect_wallet.crypto import SessionCrypto
from tonconnect_wallet.cursor import CursorStore
from tonconnect_wallet.errors import BridgeError, ChainServiceError
from tonconnect_wallet.keys import InMemoryKeyProvider
from tonconnect_wallet.models import BridgeEvent, Manifest, Wallet, WalletKind
from tonconnect_wallet.registry import AppRegistry
from tonconnect_wallet.service import ConnectionService
from tonconnect_wallet.vault import MemoryVault


SEED = bytes(range(32))
MANIFEST = {
    "url": "https://app.example.com",
    "name": "Example App",
    "iconUrl": "https://app.example.com/icon.png",
}


class FakeBridge:
    """Records what would have been posted to the relay."""

    def __init__(self):
        self.sent: List[Dict[str, Any]] = []
        self.fail = False

    async def send(self, session: SessionCrypto, to: str, body: str, ttl=None):
        if self.fail:
            raise BridgeError("bridge unavailable")
        self.sent.append({"session": session, "to": to, "body": body})


class FakeChain:
    def __init__(self, seqnos=(1,)):
        self.seqnos = list(seqnos)
        self.seqno_calls = 0
        self.emulated: List[str] = []
        self.broadcasts: List[str] = []
        self.emulation: Dict[str, Any] = {"event": {"actions": [], "extra": -1000}}
        self.nfts: Dict[str, Any] = {}
        self.fail_broadcast = False
        self.fail_emulate = False

    async def get_seqno(self, wallet: Wallet) -> int:
        seqno = self.seqnos[min(self.seqno_calls, len(self.seqnos) - 1)]
        self.seqno_calls += 1
        return seqno

    async def emulate(self, message: str, wallet: Wallet):
        if self.fail_emulate:
            raise ChainServiceError("emulation rejected")
        self.emulated.append(message)
        return self.emulation

    async def broadcast(self, message: str, wallet: Wallet):
        if self.fail_broadcast:
            raise ChainServiceError("broadcast rejected")
        self.broadcasts.append(message)

    async def get_nfts(self, addresses, wallet: Wallet):
        return {
            address: self.nfts[address] for address in addresses if address in self.nfts
        }


class FakeManifestLoader:
    def __init__(self, manifest: Optional[dict] = None):
        self.manifest = Manifest.model_validate(manifest or MANIFEST)
        self.urls: List[str] = []

    async def load(self, url: str) -> Manifest:
        self.urls.append(url)
        return self.manifest


def make_deeplink(client_id: str, items=None, manifest_url=None, version="2") -> str:
    payload = {
        "manifestUrl": manifest_url or MANIFEST["url"] + "/tonconnect-manifest.json",
        "items": items or [{"name": "ton_addr"}],
    }
    return f"tc://?v={version}&id={client_id}&r={quote(json.dumps(payload))}"


def make_event(
    dapp: SessionCrypto, session_id: str, body: Dict[str, Any], event_id: str
) -> BridgeEvent:
    """Relay event carrying a request the application encrypted for us."""
    message = dapp.encrypt_b64(json.dumps(body).encode(), session_id)
    return BridgeEvent(
        id=event_id,
        event="message",
        data=json.dumps({"from": dapp.session_id, "message": message}),
    )


@pytest.fixture
def seed():
    yield SEED


@pytest.fixture
def wallet(seed: bytes):
    public_key = bytes(SigningKey(seed).verify_key)
    yield Wallet(
        address="0:" + hashlib.sha256(public_key).hexdigest(),
        public_key=public_key,
    )


@pytest.fixture
def watch_only_wallet(wallet: Wallet):
    yield Wallet(
        address=wallet.address,
        public_key=wallet.public_key,
        kind=WalletKind.WATCH_ONLY,
    )


@pytest.fixture
def keys(wallet: Wallet, seed: bytes):
    provider = InMemoryKeyProvider()
    provider.add(wallet.address, seed)
    yield provider


@pytest.fixture
def dapp():
    """The application side of a session."""
    yield SessionCrypto.generate()


@pytest.fixture
def vault():
    yield MemoryVault()


@pytest.fixture
def registry(vault: MemoryVault):
    yield AppRegistry(vault)


@pytest.fixture
def bridge():
    yield FakeBridge()


@pytest.fixture
def chain():
    yield FakeChain(seqnos=(7, 8))


@pytest.fixture
def service(
    vault: MemoryVault,
    registry: AppRegistry,
    bridge: FakeBridge,
    chain: FakeChain,
    keys: InMemoryKeyProvider,
):
    yield ConnectionService(
        manifest_loader=FakeManifestLoader(),
        bridge=bridge,
        registry=registry,
        cursor=CursorStore(vault),
        chain=chain,
        keys=keys,
    )
