import logging

from .crypto import SessionCrypto
from .errors import (
    AlreadyHandled,
    BridgeError,
    BroadcastFailed,
    ChainServiceError,
    CryptoError,
    InvalidCiphertext,
    InvalidRequest,
    MalformedDeeplink,
    ManifestError,
    ManifestMalformed,
    ManifestUnreachable,
    NoOpenClient,
    PreviewFailed,
    ProtocolError,
    RequestError,
    StorageError,
    StorageIOFailure,
    TonConnectError,
    UnsupportedWalletKind,
)
from .models import (
    ConnectedApp,
    ConnectionParameters,
    IncomingRequest,
    Manifest,
    Network,
    Preview,
    Wallet,
    WalletKind,
)
from .client import BridgeClient
from .service import ConnectionService, RequestState


LOGGER = logging.getLogger(__name__)


try:
    from .app import app
except ModuleNotFoundError:
    LOGGER.warning("Server dependencies not found; install extra `server` if needed")

__all__ = [
    "AlreadyHandled",
    "BridgeClient",
    "BridgeError",
    "BroadcastFailed",
    "ChainServiceError",
    "ConnectedApp",
    "ConnectionParameters",
    "ConnectionService",
    "CryptoError",
    "IncomingRequest",
    "InvalidCiphertext",
    "InvalidRequest",
    "MalformedDeeplink",
    "Manifest",
    "ManifestError",
    "ManifestMalformed",
    "ManifestUnreachable",
    "Network",
    "NoOpenClient",
    "Preview",
    "PreviewFailed",
    "ProtocolError",
    "RequestError",
    "RequestState",
    "SessionCrypto",
    "StorageError",
    "StorageIOFailure",
    "TonConnectError",
    "UnsupportedWalletKind",
    "Wallet",
    "WalletKind",
    "app",
]
