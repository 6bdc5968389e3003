"""Outbound bridge messages.

Every builder returns a relay-ready body: the response serialized to JSON,
encrypted for the application with the session key pair and base64 encoded.
"""
import base64
import hashlib
import json
import time
from typing import Any, Mapping, Optional, Sequence
from urllib.parse import urlsplit

import nacl.exceptions
from nacl.signing import SigningKey

from .address import Address
from .config import DeviceInfo
from .crypto import SessionCrypto
from .errors import CryptoError, InvalidRequest
from .models import (
    ERROR_MESSAGES,
    AddressItem,
    ErrorCode,
    Manifest,
    ProofItem,
    RequestItem,
    Wallet,
)


PROOF_PREFIX = b"ton-proof-item-v2/"
CONNECT_PREFIX = b"ton-connect"


def _seal(session: SessionCrypto, client_id: str, body: Mapping[str, Any]) -> str:
    try:
        plaintext = json.dumps(body, separators=(",", ":")).encode("utf-8")
    except (TypeError, ValueError) as error:
        raise InvalidRequest(f"Response could not be serialized: {error}")
    try:
        return session.encrypt_b64(plaintext, client_id)
    except CryptoError:
        raise InvalidRequest(f"Client id {client_id!r} is not a session public key")


def proof_message(address: Address, domain: str, timestamp: int, payload: str) -> bytes:
    """Message hashed into an ownership proof."""
    domain_bytes = domain.encode("utf-8")
    return b"".join(
        [
            PROOF_PREFIX,
            address.workchain.to_bytes(4, "big", signed=True),
            address.hash_part,
            len(domain_bytes).to_bytes(4, "little"),
            domain_bytes,
            timestamp.to_bytes(8, "little"),
            payload.encode("utf-8"),
        ]
    )


def proof_digest(message: bytes) -> bytes:
    return hashlib.sha256(
        b"\xff\xff" + CONNECT_PREFIX + hashlib.sha256(message).digest()
    ).digest()


def sign_proof(
    wallet: Wallet,
    wallet_private_key: bytes,
    manifest: Manifest,
    payload: str,
    timestamp: int,
) -> dict:
    domain = urlsplit(manifest.url).hostname
    if not domain:
        raise InvalidRequest("Manifest url has no host to prove ownership for")
    message = proof_message(Address.parse(wallet.address), domain, timestamp, payload)
    try:
        signature = SigningKey(wallet_private_key).sign(proof_digest(message)).signature
    except (TypeError, ValueError, nacl.exceptions.CryptoError):
        raise InvalidRequest("Wallet signing key is not a valid Ed25519 seed") from None
    return {
        "timestamp": timestamp,
        "domain": {"lengthBytes": len(domain.encode("utf-8")), "value": domain},
        "signature": base64.b64encode(signature).decode("ascii"),
        "payload": payload,
    }


def connect_success(
    items: Sequence[RequestItem],
    wallet: Wallet,
    session: SessionCrypto,
    wallet_private_key: bytes,
    manifest: Manifest,
    client_id: str,
    *,
    event_id: int,
    device: Optional[DeviceInfo] = None,
    timestamp: Optional[int] = None,
) -> str:
    """Build the connect event answering every requested item."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    reply_items = []
    for item in items:
        if isinstance(item, AddressItem):
            address_item = {
                "name": "ton_addr",
                "address": wallet.address,
                "network": wallet.network.value,
                "publicKey": wallet.public_key.hex(),
            }
            if wallet.state_init:
                address_item["walletStateInit"] = wallet.state_init
            reply_items.append(address_item)
        elif isinstance(item, ProofItem):
            reply_items.append(
                {
                    "name": "ton_proof",
                    "proof": sign_proof(
                        wallet, wallet_private_key, manifest, item.payload, timestamp
                    ),
                }
            )
        else:
            raise InvalidRequest(f"Unsupported connect item {item!r}")

    body = {
        "event": "connect",
        "id": event_id,
        "payload": {
            "items": reply_items,
            "device": (device or DeviceInfo()).to_dict(),
        },
    }
    return _seal(session, client_id, body)


def connect_error(
    session: SessionCrypto,
    client_id: str,
    *,
    event_id: int,
    error_code: ErrorCode = ErrorCode.USER_DECLINED,
    message: str = "User declined the connection",
) -> str:
    body = {
        "event": "connect_error",
        "id": event_id,
        "payload": {"code": int(error_code), "message": message},
    }
    return _seal(session, client_id, body)


def transaction_success(
    session: SessionCrypto, signed_message: str, request_id: str, client_id: str
) -> str:
    if not signed_message:
        raise InvalidRequest("Signed message is empty")
    return _seal(session, client_id, {"id": request_id, "result": signed_message})


def transaction_error(
    session: SessionCrypto,
    error_code: ErrorCode,
    request_id: str,
    client_id: str,
    message: Optional[str] = None,
) -> str:
    try:
        code = ErrorCode(error_code)
    except ValueError:
        raise InvalidRequest(f"Unknown error code {error_code!r}")
    body = {
        "id": request_id,
        "error": {"code": int(code), "message": message or ERROR_MESSAGES[code]},
    }
    return _seal(session, client_id, body)


def disconnect_result(session: SessionCrypto, request_id: str, client_id: str) -> str:
    """Reply to an application initiated disconnect."""
    return _seal(session, client_id, {"id": request_id, "result": {}})


def disconnect_event(session: SessionCrypto, client_id: str, *, event_id: int) -> str:
    """Wallet initiated disconnect."""
    return _seal(
        session, client_id, {"event": "disconnect", "id": event_id, "payload": {}}
    )
