import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Sequence, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .address import to_raw
from .crypto import SessionCrypto


class ProtocolVersion(str, Enum):
    V2 = "2"


class Network(str, Enum):
    MAINNET = "-239"
    TESTNET = "-3"


class WalletKind(str, Enum):
    REGULAR = "regular"
    WATCH_ONLY = "watch_only"
    EXTERNAL = "external"
    LEDGER = "ledger"


class ErrorCode(int, Enum):
    UNKNOWN = 0
    BAD_REQUEST = 1
    UNKNOWN_APP = 100
    USER_DECLINED = 300
    METHOD_NOT_SUPPORTED = 400


ERROR_MESSAGES = {
    ErrorCode.UNKNOWN: "Unknown error",
    ErrorCode.BAD_REQUEST: "Bad request",
    ErrorCode.UNKNOWN_APP: "Unknown app",
    ErrorCode.USER_DECLINED: "User declined the transaction",
    ErrorCode.METHOD_NOT_SUPPORTED: "Method not supported",
}


class WireModel(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)


class Manifest(WireModel):
    url: str
    name: str
    icon_url: str = Field(alias="iconUrl")
    terms_of_use_url: Optional[str] = Field(default=None, alias="termsOfUseUrl")
    privacy_policy_url: Optional[str] = Field(default=None, alias="privacyPolicyUrl")


class AddressItem(WireModel):
    name: Literal["ton_addr"]


class ProofItem(WireModel):
    name: Literal["ton_proof"]
    payload: str


RequestItem = Annotated[Union[AddressItem, ProofItem], Field(discriminator="name")]


class RequestPayload(WireModel):
    manifest_url: str = Field(alias="manifestUrl")
    items: List[RequestItem]


@dataclass(frozen=True)
class ConnectionParameters:
    version: ProtocolVersion
    client_id: str
    request_payload: RequestPayload

    @property
    def manifest_url(self) -> str:
        return self.request_payload.manifest_url

    @property
    def items(self) -> Sequence[RequestItem]:
        return self.request_payload.items


class MessageIntent(WireModel):
    address: str
    amount: int
    state_init: Optional[str] = Field(default=None, alias="stateInit")
    payload: Optional[str] = None

    @field_validator("address")
    @classmethod
    def _normalize_address(cls, value: str) -> str:
        return to_raw(value)

    @field_validator("amount")
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("amount must not be negative")
        return value


class TransactionParams(WireModel):
    valid_until: Optional[int] = None
    network: Optional[Network] = None
    from_: Optional[str] = Field(default=None, alias="from")
    messages: List[MessageIntent]

    @field_validator("from_")
    @classmethod
    def _normalize_from(cls, value: Optional[str]) -> Optional[str]:
        return to_raw(value) if value is not None else None


class AppRequestMessage(WireModel):
    """Decrypted body of an application request."""

    id: str
    method: str
    params: List[Any] = Field(default_factory=list)

    @field_validator("id", mode="before")
    @classmethod
    def _id_as_str(cls, value: Any) -> str:
        return str(value)


class BridgeMessage(WireModel):
    from_: str = Field(alias="from")
    message: str


@dataclass(frozen=True)
class BridgeEvent:
    """One Server-Sent Event delivered by the relay."""

    id: Optional[str]
    event: str
    data: str


@dataclass(frozen=True)
class Wallet:
    address: str
    public_key: bytes = field(repr=False)
    kind: WalletKind = WalletKind.REGULAR
    network: Network = Network.MAINNET
    state_init: Optional[str] = field(default=None, repr=False)

    def __post_init__(self):
        object.__setattr__(self, "address", to_raw(self.address))

    @property
    def can_sign(self) -> bool:
        return self.kind == WalletKind.REGULAR


@dataclass(frozen=True)
class ConnectedApp:
    client_id: str
    manifest: Manifest
    session: SessionCrypto = field(repr=False, compare=False)


@dataclass(frozen=True)
class IncomingRequest:
    id: str
    params: Sequence[TransactionParams]
    app: ConnectedApp
    method: str = "sendTransaction"
    wallet_address: Optional[str] = None
    received_at: float = field(default_factory=time.time, compare=False)

    @property
    def key(self):
        return (self.app.client_id, self.id)


@dataclass
class PreviewAction:
    type: str
    status: str = "ok"
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Preview:
    fee: int
    actions: List[PreviewAction] = field(default_factory=list)
    nft_addresses: List[str] = field(default_factory=list)
    jetton_addresses: List[str] = field(default_factory=list)
    nfts: Dict[str, Any] = field(default_factory=dict)
    seqno: Optional[int] = None


# Persisted records


class ConnectedAppRecord(WireModel):
    client_id: str
    manifest: Manifest
    private_key: str

    @classmethod
    def from_app(cls, app: ConnectedApp) -> "ConnectedAppRecord":
        return cls(
            client_id=app.client_id,
            manifest=app.manifest,
            private_key=app.session.private_key_bytes.hex(),
        )

    def to_app(self) -> ConnectedApp:
        return ConnectedApp(
            client_id=self.client_id,
            manifest=self.manifest,
            session=SessionCrypto.from_private_key(bytes.fromhex(self.private_key)),
        )


class ConnectedAppsRecord(WireModel):
    apps: List[ConnectedAppRecord] = Field(default_factory=list)


# Agent API


@dataclass
class NewWallet:
    address: str
    seed: Optional[str] = field(default=None, metadata={"example": "00" * 32})
    public_key: Optional[str] = None
    kind: WalletKind = WalletKind.REGULAR
    network: Network = Network.MAINNET


@dataclass
class WalletInfo:
    address: str
    public_key: str
    kind: WalletKind
    network: Network


@dataclass
class Handshake:
    deeplink: str


@dataclass
class HandshakeInfo:
    client_id: str
    version: str
    manifest: Dict[str, Any]
    items: Sequence[str] = field(default_factory=list)


@dataclass
class AppInfo:
    client_id: str
    session_id: str
    name: str
    url: str
    icon_url: str


@dataclass
class RequestInfo:
    request_id: str
    client_id: str
    wallet_address: Optional[str]
    method: str
    messages: Sequence[Dict[str, Any]] = field(default_factory=list)


@dataclass
class NewEvent:
    data: str
    id: Optional[str] = None
    event: str = "message"
