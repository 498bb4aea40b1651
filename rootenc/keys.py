"""SSH public keys for the dropbear unlock shell."""
from __future__ import annotations

import os

from .errors import ConfigError
from .executil import run, trace

KEYFILE = "authorized_keys"


def have_local_keys(use_local: bool, keyfile: str = KEYFILE) -> bool:
    return use_local and os.path.exists(keyfile)


def fetch_authorized_keys(userhost: str, use_local: bool, keyfile: str = KEYFILE) -> str:
    """Make sure ``keyfile`` exists, pulling public keys from ``userhost``."""

    if have_local_keys(use_local, keyfile):
        trace("keys.local", path=keyfile)
        return keyfile
    if not userhost:
        raise ConfigError("no unlocking host given and no local authorized_keys file")
    run(["rsync", f"{userhost}:.ssh/id_*.pub", keyfile], check=True, timeout=120.0)
    return keyfile


def shred_fetched_keys(use_local: bool, keyfile: str = KEYFILE) -> bool:
    """Remove keys we fetched; a user-supplied file is left alone."""

    if use_local or not os.path.exists(keyfile):
        return False
    run(["shred", "-u", keyfile], check=False)
    return True


def host_reachable(userhost: str) -> bool:
    host = userhost.split("@", 1)[-1]
    return run(["ping", "-c1", host], check=False, timeout=30.0).rc == 0
