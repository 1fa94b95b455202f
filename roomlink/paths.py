from __future__ import annotations

import os
from pathlib import Path


def default_roomlink_dir() -> Path:
    override = os.environ.get("ROOMLINK_HOME")
    if override:
        return Path(override)
    return Path.home() / ".roomlink"


def default_config_path() -> Path:
    return default_roomlink_dir() / "roomlinkd.toml"


def default_client_config_path() -> Path:
    return default_roomlink_dir() / "roomlink.toml"


def default_identity_path() -> Path:
    return default_roomlink_dir() / "relay_identity"


def default_store_path() -> Path:
    return default_roomlink_dir() / "store.toml"


def ensure_private_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
    try:
        # Best-effort tightening; may fail on some filesystems.
        os.chmod(path, 0o700)
    except Exception:
        pass
