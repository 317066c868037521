"""Configuration for the ClawBridge client.

Gateway selection and addressing come from environment variables (a ``.env``
file is loaded by the CLI). Values passed with ``clawbridge --save`` are kept
in a JSON file in the platform data directory.
"""

import json
import os
import platform
from dataclasses import asdict, dataclass, fields
from functools import lru_cache
from pathlib import Path
from typing import Optional


# =============================================================================
# Gateway URLs
# =============================================================================

# Production gateway (cloud deployment); replace with your actual domain
GATEWAY_URL_PRODUCTION = "wss://openclaw-gateway.up.railway.app:3377"

# Local development gateway
GATEWAY_URL_DEVELOPMENT = "ws://localhost:3377"

# For device testing on the same network (use your computer's IP)
GATEWAY_URL_DEVICE = "ws://192.168.1.100:3377"

GATEWAY_URLS = {
    "production": GATEWAY_URL_PRODUCTION,
    "development": GATEWAY_URL_DEVELOPMENT,
    "device": GATEWAY_URL_DEVICE,
}


# =============================================================================
# Persistent Configuration (File-based)
# =============================================================================

def get_data_dir() -> Path:
    """Get the data directory for clawbridge."""
    if platform.system() == "Windows":
        base = Path(os.environ.get("APPDATA", Path.home() / "AppData" / "Roaming"))
    elif platform.system() == "Darwin":
        base = Path.home() / "Library" / "Application Support"
    else:
        base = Path(os.environ.get("XDG_DATA_HOME", Path.home() / ".local" / "share"))

    data_dir = base / "clawbridge"
    data_dir.mkdir(parents=True, exist_ok=True)
    return data_dir


def get_config_path() -> Path:
    """Get the path to the config file."""
    return get_data_dir() / "config.json"


@dataclass
class BridgeConfig:
    """Settings remembered between runs with ``clawbridge --save``."""
    auth_token: str = ""
    gateway_url: str = ""  # Empty = resolve from mode
    protocol: str = "keyed"  # "keyed" (req/res) or "single" (message/response)
    channel: str = "clawbridge"
    account_id: str = "default"

    def save(self) -> None:
        get_config_path().write_text(json.dumps(asdict(self), indent=2))

    @classmethod
    def load(cls) -> "BridgeConfig":
        """Read the saved config; defaults when missing or unreadable."""
        try:
            data = json.loads(get_config_path().read_text())
        except (FileNotFoundError, json.JSONDecodeError):
            return cls()
        if not isinstance(data, dict):
            return cls()
        known = {f.name for f in fields(cls)}
        return cls(**{key: str(value) for key, value in data.items() if key in known})

    def clear_token(self) -> None:
        self.auth_token = ""
        self.save()


# =============================================================================
# Environment Variable Configuration
# =============================================================================


@lru_cache(maxsize=1)
def load_config() -> dict:
    """
    Load application configuration from environment variables.

    Returns:
        dict with configuration values
    """
    return {
        # Gateway selection. OPENCLAW_WS_URL wins over the mode-based URL.
        "GATEWAY_URL_OVERRIDE": os.getenv("OPENCLAW_WS_URL", ""),
        "MODE": os.getenv("CLAWBRIDGE_MODE", "development").lower(),

        # Opaque auth payload passed through the connect handshake
        "AUTH_TOKEN": os.getenv("OPENCLAW_TOKEN", ""),

        # Wire protocol and addressing
        "PROTOCOL": os.getenv("CLAWBRIDGE_PROTOCOL", "keyed").lower(),
        "CHANNEL": os.getenv("CLAWBRIDGE_CHANNEL", "clawbridge"),
        "ACCOUNT_ID": os.getenv("CLAWBRIDGE_ACCOUNT_ID", "default"),
        "CLIENT_ID": os.getenv("CLAWBRIDGE_CLIENT_ID", "clawbridge"),
        "LOCALE": os.getenv("CLAWBRIDGE_LOCALE", "en-US"),
    }


def get_config_value(key: str, default: Optional[str] = None) -> Optional[str]:
    """Get a single configuration value."""
    config = load_config()
    return config.get(key, default)


def resolve_gateway_url(mode: Optional[str] = None) -> str:
    """Resolve the gateway WebSocket URL.

    The OPENCLAW_WS_URL environment variable overrides everything. Otherwise
    the URL is picked by mode: ``production``, ``development`` (default) or
    ``device`` for a physical device on the local network.

    Raises:
        ValueError: if the mode is unknown
    """
    override = get_config_value("GATEWAY_URL_OVERRIDE")
    if override:
        return override

    mode = (mode or get_config_value("MODE") or "development").lower()
    try:
        return GATEWAY_URLS[mode]
    except KeyError:
        raise ValueError(f"Unknown gateway mode '{mode}' (expected one of: {', '.join(GATEWAY_URLS)})")
