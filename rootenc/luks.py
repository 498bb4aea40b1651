"""LUKS lifecycle for the root partition (passphrase via stdin)."""

from __future__ import annotations

import os

from .executil import run, trace, udev_settle

LUKS_TIMEOUT = 360.0


def is_luks(dev: str) -> bool:
    return run(["cryptsetup", "isLuks", dev], check=False).rc == 0


def format_luks(dev: str, passwd: str, reuse: bool = False) -> bool:
    """Write a fresh LUKS header to ``dev``.

    With ``reuse`` an existing header is kept.  Returns True when a new
    header was written.
    """

    if reuse and is_luks(dev):
        return False
    # key file "-" reads stdin verbatim, so no trailing newline
    run(["cryptsetup", "-q", "luksFormat", dev, "-"], check=True, input_text=passwd, timeout=LUKS_TIMEOUT)
    udev_settle()
    return True


def mapper_path(name: str) -> str:
    return f"/dev/mapper/{name}"


def open_luks(dev: str, name: str, passwd: str) -> str:
    if os.path.exists(mapper_path(name)):
        trace("luks.open_skipped", device=dev, name=name)
        return mapper_path(name)
    run(["cryptsetup", "luksOpen", dev, name], check=True, input_text=passwd + "\n", timeout=LUKS_TIMEOUT)
    udev_settle()
    return mapper_path(name)


def close_luks(name: str) -> bool:
    res = run(["cryptsetup", "luksClose", name], check=False, timeout=LUKS_TIMEOUT)
    return res.rc == 0


def device_maps(kind: str, target_root: str | None = None) -> list[str]:
    """List dm devices: ``unmounted`` ones or those ``mounted_on_target``."""

    out = run(["lsblk", "--list", "--noheadings", "--output=KNAME,MOUNTPOINT"], check=False).out or ""
    found = []
    for line in out.splitlines():
        parts = line.split(None, 1)
        if not parts or not parts[0].startswith("dm-"):
            continue
        mountpoint = parts[1].strip() if len(parts) > 1 else ""
        if kind == "unmounted" and mountpoint:
            continue
        if kind == "mounted_on_target" and not (target_root and mountpoint.endswith(target_root.rstrip("/"))):
            continue
        found.append(f"/dev/{parts[0]}")
    trace("luks.device_maps", kind=kind, maps=found)
    return found


def close_device_maps(maps: list[str]) -> list[str]:
    closed = []
    for dev in maps:
        if run(["cryptsetup", "status", dev], check=False).rc == 0 and close_luks(dev):
            closed.append(dev)
    return closed
