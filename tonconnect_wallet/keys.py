"""Wallet signing key providers."""
from typing import Dict, Protocol

from nacl.signing import SigningKey

from .address import to_raw
from .models import Wallet


class SigningKeyProvider(Protocol):
    def get_private_key(self, wallet: Wallet) -> bytes:
        """Return the wallet's 32 byte Ed25519 seed; raise KeyError if unknown."""
        ...


class InMemoryKeyProvider:
    """Seeds held in process memory, keyed by wallet address."""

    def __init__(self):
        self._seeds: Dict[str, bytes] = {}

    def add(self, wallet_address: str, seed: bytes) -> bytes:
        """Store a seed and return the matching public key."""
        signing_key = SigningKey(seed)
        self._seeds[to_raw(wallet_address)] = bytes(seed)
        return bytes(signing_key.verify_key)

    def remove(self, wallet_address: str):
        self._seeds.pop(to_raw(wallet_address), None)

    def get_private_key(self, wallet: Wallet) -> bytes:
        return self._seeds[wallet.address]

    def __repr__(self):
        return f"InMemoryKeyProvider(wallets={len(self._seeds)})"
