"""Target device checks and partition naming."""
from __future__ import annotations

import os
from typing import Callable

from . import console
from .errors import DeviceError
from .executil import run, trace
from .model import DeviceMap

SD_MAX_BYTES = 137438953472  # 128GiB


def _lsblk(dev: str, column: str, nodeps: bool = True, extra: list[str] | None = None) -> str:
    cmd = ["lsblk", "--noheadings", "--list", f"--output={column}"]
    if nodeps:
        cmd.insert(2, "--nodeps")
    cmd += extra or []
    cmd.append(dev)
    return (run(cmd, check=False).out or "").strip()


def normalize(dev: str) -> str:
    if not dev:
        raise DeviceError("You must supply a device name")
    return dev if dev.startswith("/dev/") else f"/dev/{dev}"


def partition_names(sdcard: str) -> tuple[str, str]:
    """mmcblk0 -> mmcblk0p1/p2, sdb -> sdb1/sdb2."""

    sep = "p" if sdcard[-1:].isdigit() else ""
    return f"{sdcard}{sep}1", f"{sdcard}{sep}2"


def _pttype(dev: str) -> str:
    out = run(["blkid", "--output=udev", dev], check=False).out or ""
    for line in out.splitlines():
        if line.startswith("ID_PART_TABLE_TYPE=") or line.startswith("ID_FS_TYPE="):
            return line.split("=", 1)[1].strip()
    return ""


def sdcard_doubts(dev: str) -> list[str]:
    """Reasons ``dev`` does not look like an SD card (may be empty)."""

    reasons = []
    removable = _lsblk(dev, "RM")
    if removable and removable.strip() == "0":
        reasons.append("Device is non-removable")
    pttype = _pttype(dev)
    if pttype and pttype != "dos":
        reasons.append(f"Partition type is {pttype.upper()}")
    size = _lsblk(dev, "SIZE", extra=["--bytes"])
    try:
        if int(size) > SD_MAX_BYTES:
            reasons.append("Size is > 128GiB")
    except ValueError:
        pass
    return reasons


def check_sdcard(dev: str, confirm: Callable[[str, bool], None]) -> DeviceMap:
    """Validate the target device and return its partition names.

    ``confirm(prompt, default_yes)`` raises when the operator declines.
    """

    dev = normalize(dev)
    if not os.path.exists(dev):
        raise DeviceError(f"{dev} does not exist")
    kind = _lsblk(dev, "TYPE")
    if kind != "disk":
        if kind == "part":
            raise DeviceError(f"{dev} is a partition, not a block device!")
        raise DeviceError(f"{dev} is not a block device!")
    info = " ".join(_lsblk(dev, "VENDOR,MODEL,SIZE").split())
    doubts = sdcard_doubts(dev)
    trace("devices.check", device=dev, type=kind, info=info, doubts=doubts)
    if doubts:
        console.warn(f"  {dev} ({info}) doesn't appear to be an SD card")
        console.warn("  for the following reasons:")
        for reason in doubts:
            console.warn(f"      {reason}")
        confirm("  Are you sure this is the correct device of your blank SD card?", False)
    name = dev[len("/dev/"):]
    boot, root = partition_names(name)
    console.step(f"Will write to target {dev} ({info})")
    return DeviceMap(sdcard=name, boot=boot, root=root, info=info)


def assert_not_mounted(dm: DeviceMap) -> None:
    mounted = _lsblk(dm.sdcard_path, "MOUNTPOINT", nodeps=False)
    if mounted:
        raise DeviceError(f"Device {dm.sdcard_path} has mounted partitions!")


def rootfs_in_use(name: str) -> str | None:
    """Return the mountpoint of /dev/mapper/<name> when it is mounted."""

    mapper = f"/dev/mapper/{name}"
    if not os.path.exists(mapper):
        return None
    return _lsblk(mapper, "MOUNTPOINT", nodeps=False) or None


def has_partition(dm: DeviceMap, name: str) -> bool:
    out = _lsblk(dm.sdcard_path, "NAME", nodeps=False)
    return name in out.split()


def fstype(dev: str) -> str:
    return _lsblk(dev, "FSTYPE")


def uuid_of(dev: str) -> str:
    return _lsblk(dev, "UUID")
