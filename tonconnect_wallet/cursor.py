"""Last processed bridge event id."""
import logging
from typing import Optional

from .address import to_raw
from .errors import StorageIOFailure
from .vault import Vault


LOGGER = logging.getLogger(__name__)

CURSOR_KEY = "tonconnect.last_event_id"


def _order(event_id: str):
    return (0, int(event_id), "") if event_id.isdigit() else (1, 0, event_id)


class CursorStore:
    """Monotonic cursor used to resume the bridge subscription."""

    def __init__(self, vault: Vault, key: str = CURSOR_KEY):
        self.vault = vault
        self.key = key
        self._cached: Optional[str] = None
        self._loaded = False

    def get(self) -> Optional[str]:
        if not self._loaded:
            try:
                raw = self.vault.load(self.key)
            except OSError as error:
                raise StorageIOFailure(f"Failed to read bridge cursor: {error}")
            self._cached = raw.decode("utf-8") if raw else None
            self._loaded = True
        return self._cached

    def is_new(self, event_id: Optional[str]) -> bool:
        """Whether an event has not been processed yet."""
        if event_id is None:
            return True
        current = self.get()
        return current is None or _order(event_id) > _order(current)

    def advance(self, event_id: Optional[str]) -> bool:
        """Persist a processed event id; older or repeated ids are ignored."""
        if event_id is None or not self.is_new(event_id):
            return False
        try:
            self.vault.save(self.key, event_id.encode("utf-8"))
        except OSError as error:
            raise StorageIOFailure(f"Failed to write bridge cursor: {error}")
        self._cached = event_id
        LOGGER.debug("Bridge cursor advanced to %s", event_id)
        return True

    def for_wallet(self, address: str) -> "CursorStore":
        """A separate cursor for one wallet's subscription."""
        return CursorStore(self.vault, f"{self.key}.{to_raw(address)}")
