"""Engine settings."""
import os
from dataclasses import dataclass, field, replace
from typing import Mapping, Optional, Sequence, Tuple


# Defaults
BRIDGE_URL = "https://bridge.tonapi.io/bridge"
BRIDGE_TTL = 300
HTTP_TIMEOUT = 10.0
TONAPI_URL = "https://tonapi.io"
MAX_MESSAGES = 4
PROTOCOL_VERSION = 2


@dataclass(frozen=True)
class DeviceInfo:
    platform: str = "linux"
    app_name: str = "Tonkeeper"
    app_version: str = "0.1.0"
    max_protocol_version: int = PROTOCOL_VERSION
    max_messages: int = MAX_MESSAGES

    def to_dict(self) -> dict:
        return {
            "platform": self.platform,
            "appName": self.app_name,
            "appVersion": self.app_version,
            "maxProtocolVersion": self.max_protocol_version,
            "features": [
                "SendTransaction",
                {"name": "SendTransaction", "maxMessages": self.max_messages},
            ],
        }


@dataclass(frozen=True)
class Settings:
    bridge_url: str = BRIDGE_URL
    bridge_ttl: int = BRIDGE_TTL
    http_timeout: float = HTTP_TIMEOUT
    tonapi_url: str = TONAPI_URL
    tonapi_token: Optional[str] = field(default=None, repr=False)
    deeplink_schemes: Tuple[str, ...] = ("tc",)
    max_messages: int = MAX_MESSAGES
    device: DeviceInfo = field(default_factory=DeviceInfo)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """Build settings, overriding defaults with TONCONNECT_* variables."""
        env = os.environ if environ is None else environ
        settings = cls()
        overrides = {}
        if "TONCONNECT_BRIDGE_URL" in env:
            overrides["bridge_url"] = env["TONCONNECT_BRIDGE_URL"].rstrip("/")
        if "TONCONNECT_BRIDGE_TTL" in env:
            overrides["bridge_ttl"] = int(env["TONCONNECT_BRIDGE_TTL"])
        if "TONCONNECT_HTTP_TIMEOUT" in env:
            overrides["http_timeout"] = float(env["TONCONNECT_HTTP_TIMEOUT"])
        if "TONCONNECT_TONAPI_URL" in env:
            overrides["tonapi_url"] = env["TONCONNECT_TONAPI_URL"].rstrip("/")
        if "TONCONNECT_TONAPI_TOKEN" in env:
            overrides["tonapi_token"] = env["TONCONNECT_TONAPI_TOKEN"]
        if "TONCONNECT_DEEPLINK_SCHEMES" in env:
            overrides["deeplink_schemes"] = _split(env["TONCONNECT_DEEPLINK_SCHEMES"])
        if "TONCONNECT_MAX_MESSAGES" in env:
            max_messages = int(env["TONCONNECT_MAX_MESSAGES"])
            overrides["max_messages"] = max_messages
            overrides["device"] = replace(settings.device, max_messages=max_messages)
        if "TONCONNECT_APP_NAME" in env:
            overrides["device"] = replace(
                overrides.get("device", settings.device),
                app_name=env["TONCONNECT_APP_NAME"],
            )
        return replace(settings, **overrides)


def _split(value: str) -> Sequence[str]:
    return tuple(part.strip() for part in value.split(",") if part.strip())
