"""Connected applications per wallet."""
import asyncio
import logging
from typing import Dict, Iterable, List, Optional, Tuple

from pydantic import ValidationError

from .address import to_raw
from .errors import StorageError, StorageIOFailure
from .models import ConnectedApp, ConnectedAppRecord, ConnectedAppsRecord
from .vault import Vault


LOGGER = logging.getLogger(__name__)

KEY_PREFIX = "tonconnect.apps."


class AppRegistry:
    """Durable mapping of wallet address to the apps it connected to.

    Every mutation is a read-modify-write of the wallet's whole record,
    serialized by a lock per wallet address.
    """

    def __init__(self, vault: Vault):
        self.vault = vault
        self._locks: Dict[str, asyncio.Lock] = {}
        self._known_wallets: set = set()

    def lock(self, wallet_address: str) -> asyncio.Lock:
        return self._locks.setdefault(to_raw(wallet_address), asyncio.Lock())

    @staticmethod
    def _key(wallet_address: str) -> str:
        return KEY_PREFIX + to_raw(wallet_address)

    def _load(self, wallet_address: str) -> List[ConnectedApp]:
        try:
            raw = self.vault.load(self._key(wallet_address))
        except OSError as error:
            raise StorageIOFailure(f"Failed to read apps for {wallet_address}: {error}")
        if raw is None:
            return []
        try:
            record = ConnectedAppsRecord.model_validate_json(raw)
            apps = [app.to_app() for app in record.apps]
        except ValidationError as error:
            raise StorageIOFailure(
                f"Stored apps for {wallet_address} are corrupt: "
                f"{error.error_count()} errors"
            )
        except (TypeError, ValueError) as error:
            raise StorageIOFailure(
                f"Stored session key for {wallet_address} is unusable: {error}"
            )
        self._known_wallets.add(to_raw(wallet_address))
        return apps

    def _save(self, wallet_address: str, apps: Iterable[ConnectedApp]):
        record = ConnectedAppsRecord(
            apps=[ConnectedAppRecord.from_app(app) for app in apps]
        )
        try:
            self.vault.save(
                self._key(wallet_address),
                record.model_dump_json(by_alias=True).encode("utf-8"),
            )
        except OSError as error:
            raise StorageIOFailure(
                f"Failed to write apps for {wallet_address}: {error}"
            )
        self._known_wallets.add(to_raw(wallet_address))

    async def get(self, wallet_address: str) -> List[ConnectedApp]:
        """Apps connected to a wallet; empty if none were persisted."""
        return self._load(wallet_address)

    async def add(self, wallet_address: str, app: ConnectedApp):
        """Insert an app, replacing any app with the same client id."""
        async with self.lock(wallet_address):
            apps = [
                existing
                for existing in self._load(wallet_address)
                if existing.client_id != app.client_id
            ]
            apps.append(app)
            self._save(wallet_address, apps)
        LOGGER.debug("Stored app %s for wallet %s", app.client_id, wallet_address)

    async def remove(self, wallet_address: str, client_id: str) -> bool:
        """Remove an app; returns False when there was nothing to remove."""
        async with self.lock(wallet_address):
            apps = self._load(wallet_address)
            remaining = [app for app in apps if app.client_id != client_id]
            if len(remaining) == len(apps):
                return False
            self._save(wallet_address, remaining)
        LOGGER.debug("Removed app %s for wallet %s", client_id, wallet_address)
        return True

    async def clear(self, wallet_address: str):
        """Forget every app of a deleted wallet."""
        async with self.lock(wallet_address):
            try:
                self.vault.delete(self._key(wallet_address))
            except OSError as error:
                raise StorageIOFailure(
                    f"Failed to delete apps for {wallet_address}: {error}"
                )
            self._known_wallets.discard(to_raw(wallet_address))
        self._locks.pop(to_raw(wallet_address), None)

    async def find(
        self, client_id: str, wallet_addresses: Optional[Iterable[str]] = None
    ) -> Optional[Tuple[str, ConnectedApp]]:
        """Locate the wallet and app for an application client id."""
        candidates = (
            [to_raw(address) for address in wallet_addresses]
            if wallet_addresses is not None
            else sorted(self._known_wallets)
        )
        for wallet_address in candidates:
            try:
                apps = self._load(wallet_address)
            except StorageError:
                LOGGER.warning("Skipping unreadable app record of %s", wallet_address)
                continue
            for app in apps:
                if app.client_id == client_id:
                    return wallet_address, app
        return None
