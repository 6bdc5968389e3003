"""Session key material and encrypted bridge payloads."""
import base64
import binascii
from typing import Union

import nacl.exceptions
import nacl.utils
from nacl.public import Box, PrivateKey, PublicKey

from .errors import InvalidCiphertext


NONCE_LENGTH = Box.NONCE_SIZE
TAG_LENGTH = 16

PublicKeyLike = Union[PublicKey, bytes, str]


def as_public_key(key: PublicKeyLike) -> PublicKey:
    """Accept a PublicKey, raw 32 bytes or a hex string."""
    if isinstance(key, PublicKey):
        return key
    if isinstance(key, str):
        try:
            key = bytes.fromhex(key)
        except ValueError:
            raise InvalidCiphertext("Counterpart public key is not valid hex")
    try:
        return PublicKey(key)
    except (TypeError, ValueError, nacl.exceptions.CryptoError):
        raise InvalidCiphertext("Counterpart public key has the wrong length")


class SessionCrypto:
    """Key pair for one wallet-application relationship.

    The session id, the identity the wallet presents to the relay, is the hex
    encoded public key.
    """

    def __init__(self, private_key: PrivateKey):
        self._private_key = private_key

    @classmethod
    def generate(cls) -> "SessionCrypto":
        return cls(PrivateKey.generate())

    @classmethod
    def from_private_key(cls, private_key: bytes) -> "SessionCrypto":
        """Reconstruct the key pair of a previously persisted app."""
        return cls(PrivateKey(bytes(private_key)))

    @property
    def public_key(self) -> PublicKey:
        return self._private_key.public_key

    @property
    def private_key_bytes(self) -> bytes:
        return bytes(self._private_key)

    @property
    def session_id(self) -> str:
        return bytes(self.public_key).hex()

    def encrypt(self, plaintext: bytes, their_public_key: PublicKeyLike) -> bytes:
        """Encrypt for the counterpart; the result is nonce || ciphertext."""
        box = Box(self._private_key, as_public_key(their_public_key))
        nonce = nacl.utils.random(NONCE_LENGTH)
        encrypted = box.encrypt(plaintext, nonce)
        return encrypted.nonce + encrypted.ciphertext

    def decrypt(self, ciphertext: bytes, their_public_key: PublicKeyLike) -> bytes:
        if len(ciphertext) < NONCE_LENGTH + TAG_LENGTH:
            raise InvalidCiphertext("Ciphertext is shorter than nonce and tag")
        box = Box(self._private_key, as_public_key(their_public_key))
        try:
            return box.decrypt(
                ciphertext[NONCE_LENGTH:], ciphertext[:NONCE_LENGTH]
            )
        except nacl.exceptions.CryptoError:
            raise InvalidCiphertext("Message failed authentication") from None

    def encrypt_b64(self, plaintext: bytes, their_public_key: PublicKeyLike) -> str:
        """Encrypt and encode as a relay body."""
        return base64.b64encode(self.encrypt(plaintext, their_public_key)).decode(
            "ascii"
        )

    def decrypt_b64(self, body: str, their_public_key: PublicKeyLike) -> bytes:
        try:
            ciphertext = base64.b64decode(body, validate=True)
        except (binascii.Error, ValueError):
            raise InvalidCiphertext("Relay body is not valid base64") from None
        return self.decrypt(ciphertext, their_public_key)

    def __repr__(self) -> str:
        return f"SessionCrypto(session_id={self.session_id!r})"


def session_id(public_key: PublicKeyLike) -> str:
    """Session id for a public key."""
    return bytes(as_public_key(public_key)).hex()
