from __future__ import annotations

import os
from pathlib import Path

_DEFAULT_BASE = "/var/lib/rootenc"

BUILD_DIR_NAME = "armbian_rootenc_build"
STATE_DIR_NAME = ".rootenc_install_state"
CONFIG_VARS_NAME = ".rootenc_config_vars"


def _expand(path: str) -> str:
    candidate = Path(path).expanduser()
    try:
        return str(candidate.resolve())
    except FileNotFoundError:
        return str(candidate)


def rootenc_base_path() -> str:
    """Return the base directory for rootenc logs.

    Overridable via ``ROOTENC_BASE_PATH``.
    """

    override = os.environ.get("ROOTENC_BASE_PATH")
    if override:
        return _expand(override)
    return _expand(_DEFAULT_BASE)


def rootenc_logs_dir() -> str:
    return str(Path(rootenc_base_path()) / "logs")
