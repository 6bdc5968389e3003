"""Blockchain collaborator: seqno lookup, emulation and broadcast."""
import logging
from typing import Any, Dict, Mapping, Optional, Protocol, Sequence

import httpx

from .errors import ChainServiceError
from .models import Network, Wallet


LOGGER = logging.getLogger(__name__)


class ChainService(Protocol):
    """Implementations raise ChainServiceError on any failure."""

    async def get_seqno(self, wallet: Wallet) -> int:
        ...

    async def emulate(self, message: str, wallet: Wallet) -> Mapping[str, Any]:
        ...

    async def broadcast(self, message: str, wallet: Wallet) -> None:
        ...

    async def get_nfts(
        self, addresses: Sequence[str], wallet: Wallet
    ) -> Mapping[str, Any]:
        ...


class TonApiChainService:
    """Chain service backed by a TonAPI compatible HTTP API."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        base_url: str,
        token: Optional[str] = None,
        testnet_url: Optional[str] = None,
    ):
        self.client = client
        self.base_url = base_url.rstrip("/")
        self.testnet_url = (testnet_url or "https://testnet.tonapi.io").rstrip("/")
        self._token = token

    def _url(self, wallet: Wallet, path: str) -> str:
        base = self.testnet_url if wallet.network == Network.TESTNET else self.base_url
        return base + path

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    async def _request(self, method: str, url: str, **kwargs) -> Any:
        try:
            response = await self.client.request(
                method, url, headers=self._headers(), **kwargs
            )
        except httpx.HTTPError as error:
            raise ChainServiceError(f"{method} {url} failed: {error}")
        if response.is_error:
            raise ChainServiceError(
                f"{method} {url} failed: HTTP {response.status_code}: "
                f"{response.text[:200]}"
            )
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            raise ChainServiceError(f"{method} {url} returned invalid JSON")

    async def get_seqno(self, wallet: Wallet) -> int:
        data = await self._request(
            "GET", self._url(wallet, f"/v2/wallet/{wallet.address}/seqno")
        )
        try:
            return int(data["seqno"])
        except (KeyError, TypeError, ValueError):
            raise ChainServiceError("Seqno response has no seqno")

    async def emulate(self, message: str, wallet: Wallet) -> Mapping[str, Any]:
        data = await self._request(
            "POST", self._url(wallet, "/v2/wallet/emulate"), json={"boc": message}
        )
        if not isinstance(data, dict):
            raise ChainServiceError("Emulation response is not an object")
        return data

    async def broadcast(self, message: str, wallet: Wallet):
        LOGGER.debug("Broadcasting message for wallet %s", wallet.address)
        await self._request(
            "POST", self._url(wallet, "/v2/blockchain/message"), json={"boc": message}
        )

    async def get_nfts(
        self, addresses: Sequence[str], wallet: Wallet
    ) -> Mapping[str, Any]:
        if not addresses:
            return {}
        data = await self._request(
            "POST",
            self._url(wallet, "/v2/nfts/_bulk"),
            json={"account_ids": list(addresses)},
        )
        items = (data or {}).get("nft_items", [])
        return {item["address"]: item for item in items if "address" in item}
