"""Connection deeplink parsing."""
import json
import string
from typing import Iterable, Mapping, Optional, Sequence
from urllib.parse import parse_qs, urlsplit

from pydantic import ValidationError

from .errors import MalformedDeeplink
from .models import ConnectionParameters, ProtocolVersion, RequestPayload


# Query keys as sent on the wire, with their long-form aliases
VERSION_KEYS = ("v", "version")
CLIENT_ID_KEYS = ("id", "clientId")
REQUEST_PAYLOAD_KEYS = ("r", "requestPayload")

DEFAULT_SCHEMES = ("tc",)


def _first(query: Mapping[str, Sequence[str]], keys: Iterable[str]) -> Optional[str]:
    for key in keys:
        values = query.get(key)
        if values and values[0]:
            return values[0]
    return None


def parse(url: str, schemes: Sequence[str] = DEFAULT_SCHEMES) -> ConnectionParameters:
    """Parse a connection deeplink into connection parameters."""
    try:
        parts = urlsplit(url)
    except (TypeError, ValueError) as error:
        raise MalformedDeeplink(f"Deeplink is not a URL: {error}")

    if parts.scheme not in schemes:
        raise MalformedDeeplink(f"Unexpected deeplink scheme {parts.scheme!r}")

    query = parse_qs(parts.query)
    version_value = _first(query, VERSION_KEYS)
    client_id = _first(query, CLIENT_ID_KEYS)
    payload_value = _first(query, REQUEST_PAYLOAD_KEYS)

    if version_value is None:
        raise MalformedDeeplink("Deeplink has no protocol version")
    if client_id is None:
        raise MalformedDeeplink("Deeplink has no client id")
    if payload_value is None:
        raise MalformedDeeplink("Deeplink has no request payload")

    try:
        version = ProtocolVersion(version_value)
    except ValueError:
        raise MalformedDeeplink(f"Unrecognized protocol version {version_value!r}")

    # The client id doubles as the application's session public key
    if len(client_id) != 64 or not all(char in string.hexdigits for char in client_id):
        raise MalformedDeeplink("Client id is not a hex encoded public key")

    try:
        payload = RequestPayload.model_validate(json.loads(payload_value))
    except (ValueError, ValidationError) as error:
        raise MalformedDeeplink(f"Request payload could not be decoded: {error}")

    if not payload.items:
        raise MalformedDeeplink("Request payload asks for no items")

    return ConnectionParameters(
        version=version, client_id=client_id, request_payload=payload
    )
