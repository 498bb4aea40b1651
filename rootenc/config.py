"""Config snapshot serialisation, validation and environment loading."""
from __future__ import annotations

import re
from dataclasses import replace
from typing import Iterable, Mapping, Optional

from .errors import ConfigError
from .model import SNAPSHOT_KEYS, ConfigSnapshot, Flags

_BOOL_FIELDS = ("add_all_mods", "use_local_authorized_keys")
_TRUE = ("y", "yes", "1", "true")

DEFAULT_BOOTPART_LABEL = "ARMBIAN_BOOT"
DEFAULT_ROOTFS_NAME = "rootfs"

# (pattern, message) per user-supplied snapshot field
PATTERNS: dict[str, tuple[str, str]] = {
    "ip_address": (
        r"^(dhcp|none|[0-9]{1,3}\.[0-9]{1,3}\.[0-9]+\.[0-9]{1,3})$",
        "malformed IP address",
    ),
    "bootpart_label": (
        r"^[A-Za-z0-9_]{1,16}$",
        "Label must contain no more than 16 characters in the set 'A-Za-z0-9_'",
    ),
    "rootfs_name": (
        r"^[a-z0-9_]{1,48}$",
        "Name must contain no more than 48 characters in the set 'a-z0-9_'",
    ),
    "disk_passwd": (
        r"^[A-Za-z0-9_ ]{1,10}$",
        "Temporary disk password must contain no more than 10 characters in the set 'A-Za-z0-9_ '",
    ),
    "unlocking_userhost": (r"^\S+@\S+$", "malformed USER@HOST"),
}

DEV_FLAGS = {
    "ROOTENC_REUSE_FS": "reuse_fs",
    "ROOTENC_TESTING": "testing",
    "ROOTENC_PAUSE": "pause",
    "ROOTENC_IGNORE_APT_ERRORS": "ignore_apt_errors",
    "APT_UPGRADE": "apt_upgrade",
}

_ASSIGN_RE = re.compile(r"^([A-Z_]+)=(.+)$")


def _bool_text(value: bool) -> str:
    return "y" if value else ""


def dump_snapshot(snapshot: ConfigSnapshot) -> str:
    lines = []
    for name, key in SNAPSHOT_KEYS.items():
        value = getattr(snapshot, name)
        if name in _BOOL_FIELDS:
            value = _bool_text(value)
        lines.append(f"{key}={value}")
    return "\n".join(lines) + "\n"


def parse_snapshot(text: str) -> ConfigSnapshot:
    by_key = {key: name for name, key in SNAPSHOT_KEYS.items()}
    values: dict[str, object] = {name: "" for name in SNAPSHOT_KEYS}
    for line in text.splitlines():
        if not line.strip() or line.lstrip().startswith("#") or "=" not in line:
            continue
        # value is kept exactly as written
        key, value = line.split("=", 1)
        name = by_key.get(key.strip())
        if name is None:
            continue
        values[name] = value
    for name in _BOOL_FIELDS:
        values[name] = str(values[name]).strip().lower() in _TRUE
    return ConfigSnapshot(**values)


def parse_assignments(args: Iterable[str]) -> dict[str, str]:
    """Parse trailing ``NAME=value`` command-line arguments."""

    out: dict[str, str] = {}
    for arg in args:
        match = _ASSIGN_RE.match(arg)
        if not match:
            raise ConfigError(f"{arg}: illegal argument (must be in format 'NAME=value')")
        out[match.group(1)] = match.group(2)
    return out


def check_value(name: str, value: str) -> Optional[str]:
    """Return an error message for ``value`` or None when it is acceptable."""

    if not value:
        return "must not be empty"
    if value != value.strip():
        return f"'{value}': leading or trailing spaces are not allowed"
    pattern = PATTERNS.get(name)
    if pattern and not re.search(pattern[0], value, re.IGNORECASE if name == "ip_address" else 0):
        return f"{value}: {pattern[1]}"
    return None


def validate_snapshot(snapshot: ConfigSnapshot) -> ConfigSnapshot:
    """Normalise and check ``snapshot``; raise :class:`ConfigError` on problems."""

    snapshot = replace(snapshot, ip_address=(snapshot.ip_address or "").lower())
    if not snapshot.image:
        raise ConfigError("image: must not be empty")
    for name in ("ip_address", "bootpart_label", "rootfs_name", "disk_passwd"):
        problem = check_value(name, getattr(snapshot, name))
        if problem:
            raise ConfigError(f"{SNAPSHOT_KEYS[name]}: {problem}")
    if snapshot.unlocking_userhost:
        problem = check_value("unlocking_userhost", snapshot.unlocking_userhost)
        if problem:
            raise ConfigError(f"UNLOCKING_USERHOST: {problem}")
    return snapshot


def user_values(environ: Mapping[str, str], assignments: Mapping[str, str]) -> dict[str, str]:
    """Collect snapshot field values from the environment and assignments.

    Assignments on the command line win over inherited environment values.
    """

    merged = dict(environ)
    merged.update(assignments)
    out = {}
    for name, key in SNAPSHOT_KEYS.items():
        if name in _BOOL_FIELDS or name == "image":
            continue
        value = merged.get(key)
        if value:
            out[name] = value
    return out


def apply_dev_flags(flags: Flags, environ: Mapping[str, str], assignments: Mapping[str, str]) -> Flags:
    merged = dict(environ)
    merged.update(assignments)
    updates = {attr: True for key, attr in DEV_FLAGS.items() if merged.get(key)}
    return replace(flags, **updates) if updates else flags
