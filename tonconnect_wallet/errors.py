"""Error types raised by the connection engine."""
from typing import Optional


class TonConnectError(Exception):
    """Base error for the connection engine."""

    code = "tonconnect_error"
    retryable = False

    def __init__(self, message: str, *, retryable: Optional[bool] = None):
        super().__init__(message)
        if retryable is not None:
            self.retryable = retryable


class ProtocolError(TonConnectError):
    """Malformed or unsupported protocol input."""

    code = "protocol_error"


class MalformedDeeplink(ProtocolError):
    code = "malformed_deeplink"


class UnsupportedWalletKind(ProtocolError):
    """Raised when a wallet cannot produce real signatures."""

    code = "unsupported_wallet_kind"

    def __init__(self, kind: str):
        super().__init__(f"Wallet kind {kind!r} cannot sign requests")
        self.kind = kind


class InvalidRequest(ProtocolError):
    code = "invalid_request"


class ManifestError(TonConnectError):
    """Manifest could not be loaded."""

    code = "manifest_error"
    retryable = True


class ManifestUnreachable(ManifestError):
    code = "manifest_unreachable"


class ManifestMalformed(ManifestError):
    code = "manifest_malformed"
    retryable = False


class CryptoError(TonConnectError):
    code = "crypto_error"


class InvalidCiphertext(CryptoError):
    code = "invalid_ciphertext"


class StorageError(TonConnectError):
    code = "storage_error"
    retryable = True


class StorageIOFailure(StorageError):
    code = "storage_io_failure"


class RequestError(TonConnectError):
    """Failure while handling an application request."""

    code = "request_error"


class PreviewFailed(RequestError):
    code = "preview_failed"
    retryable = True


class AlreadyHandled(RequestError):
    code = "already_handled"


class BroadcastFailed(RequestError):
    code = "broadcast_failed"
    retryable = True


class BridgeError(TonConnectError):
    """Relay transmission failed."""

    code = "bridge_error"
    retryable = True


class NoOpenClient(BridgeError):
    """Raised when no client is open."""

    code = "no_open_client"
    retryable = False


class ChainServiceError(TonConnectError):
    """Chain service call failed."""

    code = "chain_service_error"
    retryable = True
