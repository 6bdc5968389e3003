"""Transfer message construction and signing.

The builder assembles an unsigned transfer envelope, hands its digest to
whichever signing strategy it was given and wraps envelope and signature into
a chain-ready message. It never picks the strategy itself.
"""
import base64
import binascii
import hashlib
import json
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Sequence, Union

import nacl.exceptions
from nacl.signing import SigningKey, VerifyKey

from .config import MAX_MESSAGES
from .errors import InvalidRequest
from .models import MessageIntent, Wallet


SIGNATURE_LENGTH = 64
DEFAULT_SEND_MODE = 3


class NoOpSigner:
    """Structurally valid, non-authoritative signature for emulation."""

    def sign(self, digest: bytes) -> bytes:
        return bytes(SIGNATURE_LENGTH)

    def __repr__(self):
        return "NoOpSigner()"


@dataclass(frozen=True)
class SecretKeySigner:
    """Binding Ed25519 signature from the wallet's private key seed."""

    secret_key: bytes = field(repr=False)

    def sign(self, digest: bytes) -> bytes:
        try:
            return SigningKey(self.secret_key).sign(digest).signature
        except (TypeError, ValueError, nacl.exceptions.CryptoError):
            raise InvalidRequest(
                "Wallet signing key is not a valid Ed25519 seed"
            ) from None


SigningStrategy = Union[NoOpSigner, SecretKeySigner]


@dataclass(frozen=True)
class SignedMessage:
    envelope: Dict[str, Any]
    signature: bytes

    @property
    def seqno(self) -> int:
        return self.envelope["seqno"]

    @property
    def digest(self) -> bytes:
        return envelope_digest(self.envelope)

    def verify(self, public_key: bytes) -> bool:
        try:
            VerifyKey(public_key).verify(self.digest, self.signature)
        except nacl.exceptions.BadSignatureError:
            return False
        return True


def build_envelope(
    wallet: Wallet,
    seqno: int,
    intents: Sequence[MessageIntent],
    send_mode: int = DEFAULT_SEND_MODE,
    *,
    valid_until: Optional[int] = None,
    max_messages: int = MAX_MESSAGES,
) -> Dict[str, Any]:
    if seqno < 0:
        raise InvalidRequest(f"Invalid seqno {seqno}")
    if not intents:
        raise InvalidRequest("Transfer has no messages")
    if len(intents) > max_messages:
        raise InvalidRequest(
            f"Transfer has {len(intents)} messages, at most {max_messages} allowed"
        )
    return {
        "wallet": wallet.address,
        "seqno": seqno,
        "valid_until": valid_until,
        "messages": [
            {
                "destination": intent.address,
                "amount": str(intent.amount),
                "state_init": intent.state_init,
                "payload": intent.payload,
                "send_mode": send_mode,
            }
            for intent in intents
        ],
    }


def serialize_envelope(envelope: Dict[str, Any]) -> bytes:
    return json.dumps(envelope, sort_keys=True, separators=(",", ":")).encode("utf-8")


def envelope_digest(envelope: Dict[str, Any]) -> bytes:
    return hashlib.sha256(serialize_envelope(envelope)).digest()


def build(
    wallet: Wallet,
    seqno: int,
    intents: Sequence[MessageIntent],
    send_mode: int,
    signer: SigningStrategy,
    *,
    valid_until: Optional[int] = None,
    max_messages: int = MAX_MESSAGES,
) -> str:
    """Build a signed, chain-ready message encoded as base64."""
    envelope = build_envelope(
        wallet,
        seqno,
        intents,
        send_mode,
        valid_until=valid_until,
        max_messages=max_messages,
    )
    signature = signer.sign(envelope_digest(envelope))
    if len(signature) != SIGNATURE_LENGTH:
        raise InvalidRequest("Signer produced a signature of the wrong length")
    message = {
        "envelope": envelope,
        "signature": base64.b64encode(signature).decode("ascii"),
    }
    return base64.b64encode(serialize_envelope(message)).decode("ascii")


def decode(message: str) -> SignedMessage:
    """Decode a chain-ready message produced by ``build``."""
    try:
        data = json.loads(base64.b64decode(message, validate=True))
        return SignedMessage(
            envelope=data["envelope"],
            signature=base64.b64decode(data["signature"], validate=True),
        )
    except (binascii.Error, ValueError, KeyError, TypeError) as error:
        raise InvalidRequest(f"Not a chain-ready message: {error}")
