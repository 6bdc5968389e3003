"""Application manifest loading."""
import logging

import httpx
from pydantic import ValidationError

from .errors import ManifestMalformed, ManifestUnreachable
from .models import Manifest


LOGGER = logging.getLogger(__name__)


class ManifestLoader:
    """Fetch an application's manifest; performs no retries."""

    def __init__(self, client: httpx.AsyncClient):
        self.client = client

    async def load(self, url: str) -> Manifest:
        LOGGER.debug("Loading manifest from %s", url)
        try:
            response = await self.client.get(url, follow_redirects=True)
        except (httpx.HTTPError, httpx.InvalidURL) as error:
            raise ManifestUnreachable(f"Failed to fetch manifest from {url}: {error}")

        if response.is_error:
            raise ManifestUnreachable(
                f"Failed to fetch manifest from {url}: HTTP {response.status_code}"
            )

        try:
            return Manifest.model_validate_json(response.content)
        except ValidationError as error:
            raise ManifestMalformed(
                f"Manifest at {url} could not be decoded: {error.error_count()} errors"
            )
