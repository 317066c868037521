"""Runtime status file for ``clawbridge status``.

A running bridge keeps ``runtime.json`` in the data directory (see
``config.get_data_dir``) up to date with its pid, gateway and whether the
gateway connection is currently up. Scripts and health checks read it back
through ``get_status()``.
"""

import json
import os
from dataclasses import asdict, dataclass, fields
from datetime import datetime, timezone
from functools import lru_cache
from pathlib import Path
from typing import Any, Optional

from .config import get_data_dir

RUNTIME_FILE = "runtime.json"


@lru_cache(maxsize=1)
def get_version() -> str:
    """Installed package version, or the source default when not installed."""
    from importlib.metadata import PackageNotFoundError, version

    try:
        return version("clawbridge")
    except PackageNotFoundError:
        return "0.1.0"


def get_runtime_path() -> Path:
    return get_data_dir() / RUNTIME_FILE


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class RuntimeInfo:
    """What a running bridge publishes about itself.

    Attributes:
        pid: Process ID of the bridge
        started_at: ISO timestamp of process start
        version: clawbridge version
        gateway_url: Gateway the bridge talks to
        protocol: Wire protocol variant ("keyed" or "single")
        connected: Whether the gateway connection is up right now
        connection_changed_at: ISO timestamp of the last connectivity change
    """

    pid: int
    started_at: str
    version: str
    gateway_url: str
    protocol: str = "keyed"
    connected: bool = False
    connection_changed_at: Optional[str] = None

    def save(self) -> None:
        # Atomic replace: readers never see a partial file
        path = get_runtime_path()
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(asdict(self), indent=2))
        os.replace(tmp_path, path)

    def update_connection_status(self, connected: bool) -> None:
        """Connectivity subscriber: record the new state on disk."""
        self.connected = connected
        self.connection_changed_at = _now()
        self.save()

    def is_alive(self) -> bool:
        try:
            os.kill(self.pid, 0)
        except OSError:
            return False
        return True

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RuntimeInfo":
        known = {f.name for f in fields(cls)}
        return cls(**{key: value for key, value in data.items() if key in known})

    @classmethod
    def load(cls) -> Optional["RuntimeInfo"]:
        """Read runtime.json; None when it is missing or unreadable."""
        path = get_runtime_path()
        try:
            return cls.from_dict(json.loads(path.read_text()))
        except FileNotFoundError:
            return None
        except (json.JSONDecodeError, TypeError, AttributeError):
            return None

    @classmethod
    def clear(cls) -> None:
        get_runtime_path().unlink(missing_ok=True)

    def to_status_dict(self) -> dict:
        return {"running": True, **asdict(self)}


def write_runtime_info(gateway_url: str, protocol: str, version: Optional[str] = None) -> RuntimeInfo:
    """Publish runtime info for this process and return it."""
    info = RuntimeInfo(
        pid=os.getpid(),
        started_at=_now(),
        version=version or get_version(),
        gateway_url=gateway_url,
        protocol=protocol,
    )
    info.save()
    return info


def get_status() -> dict:
    """Status for ``clawbridge status``.

    A runtime file left behind by a process that no longer exists is removed
    and reported as not running.
    """
    info = RuntimeInfo.load()
    if info is None:
        return {"running": False}
    if not info.is_alive():
        RuntimeInfo.clear()
        return {"running": False}
    return info.to_status_dict()
