"""Account address parsing.

Addresses arrive either in raw form (``0:<64 hex chars>``) or in the
user-friendly form: 36 bytes encoded with base64 or base64url, laid out as
``flags (1) | workchain (1) | account hash (32) | crc16-xmodem (2)``.
"""
import base64
import binascii
from dataclasses import dataclass


BOUNCEABLE_TAG = 0x11
NON_BOUNCEABLE_TAG = 0x51
TEST_FLAG = 0x80


@dataclass(frozen=True)
class Address:
    workchain: int
    hash_part: bytes

    @classmethod
    def parse(cls, value: str) -> "Address":
        """Parse a raw or user-friendly address; raises ValueError."""
        if not isinstance(value, str) or not value:
            raise ValueError("Address must be a non-empty string")
        if ":" in value:
            return cls._parse_raw(value)
        return cls._parse_friendly(value)

    @classmethod
    def _parse_raw(cls, value: str) -> "Address":
        workchain, _, account = value.partition(":")
        try:
            hash_part = bytes.fromhex(account)
            workchain_id = int(workchain)
        except ValueError:
            raise ValueError(f"Invalid raw address {value!r}")
        if len(hash_part) != 32:
            raise ValueError(f"Invalid raw address {value!r}")
        return cls(workchain_id, hash_part)

    @classmethod
    def _parse_friendly(cls, value: str) -> "Address":
        if len(value) != 48:
            raise ValueError(f"Invalid address {value!r}")
        try:
            data = base64.urlsafe_b64decode(
                value.replace("+", "-").replace("/", "_")
            )
        except binascii.Error:
            raise ValueError(f"Invalid address {value!r}")
        if len(data) != 36:
            raise ValueError(f"Invalid address {value!r}")
        if binascii.crc_hqx(data[:34], 0) != int.from_bytes(data[34:], "big"):
            raise ValueError(f"Address checksum mismatch for {value!r}")
        tag = data[0] & ~TEST_FLAG
        if tag not in (BOUNCEABLE_TAG, NON_BOUNCEABLE_TAG):
            raise ValueError(f"Unknown address tag in {value!r}")
        workchain = int.from_bytes(data[1:2], "big", signed=True)
        return cls(workchain, data[2:34])

    @property
    def raw(self) -> str:
        return f"{self.workchain}:{self.hash_part.hex()}"

    def to_friendly(
        self, *, bounceable: bool = True, testnet: bool = False, urlsafe: bool = True
    ) -> str:
        tag = BOUNCEABLE_TAG if bounceable else NON_BOUNCEABLE_TAG
        if testnet:
            tag |= TEST_FLAG
        data = (
            bytes([tag])
            + self.workchain.to_bytes(1, "big", signed=True)
            + self.hash_part
        )
        data += binascii.crc_hqx(data, 0).to_bytes(2, "big")
        encode = base64.urlsafe_b64encode if urlsafe else base64.b64encode
        return encode(data).decode("ascii")

    def __str__(self) -> str:
        return self.raw


def to_raw(value: str) -> str:
    """Normalize an address string to canonical raw form."""
    return Address.parse(value).raw
