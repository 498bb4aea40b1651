"""MBR layout, boot loader copy and boot filesystem creation."""
from __future__ import annotations

import re

from . import devices
from .errors import DeviceError, StageError
from .executil import partprobe, run, trace
from .model import DeviceMap, Stage

BOOT_SECTORS = 409600  # 200MB
SECTOR = 512
DD_TIMEOUT = 3600.0


def _base_device(dev: str) -> str:
    # /dev/mmcblk0p2 -> /dev/mmcblk0, /dev/sdb2 -> /dev/sdb
    if re.search(r"\dp\d+$", dev):
        return re.sub(r"p\d+$", "", dev)
    return re.sub(r"\d+$", "", dev)


def guard_not_live_root(dm: DeviceMap) -> None:
    root_src = (run(["findmnt", "-no", "SOURCE", "/"], check=False).out or "").strip()
    if root_src.startswith("/dev/") and _base_device(root_src) == dm.sdcard_path:
        raise DeviceError(f"target {dm.sdcard_path} holds the live root filesystem {root_src}")


def image_start_sector(loop_dev: str) -> int:
    """First sector of the image's first partition (usually 32768)."""

    out = run(["fdisk", "-l", loop_dev, "-o", "Start"], check=True).out or ""
    lines = [line.strip() for line in out.splitlines() if line.strip()]
    try:
        return int(lines[-1])
    except (IndexError, ValueError):
        raise StageError(Stage.CARD_PARTITIONED, f"cannot read start sector of {loop_dev}") from None


def erase_head(dm: DeviceMap, start_sector: int, boot_sectors: int = BOOT_SECTORS, verbose: bool = True):
    """Zero everything up to the start of the second partition."""

    sectors = start_sector + boot_sectors + 100
    count = sectors // 8192 + 1
    trace("partitioning.erase", device=dm.sdcard_path, sectors=sectors, count=count)
    run(
        ["dd", "if=/dev/zero", f"of={dm.sdcard_path}", "status=progress", f"bs={SECTOR * 8192}", f"count={count}"],
        check=True,
        timeout=DD_TIMEOUT,
        capture=not verbose,
    )
    return sectors, count


def create_partition_label(dm: DeviceMap, verbose: bool = False):
    # fdisk complains about re-reading the table; the label is written anyway
    run(["fdisk", dm.sdcard_path], check=False, input_text="o\nw\n")
    partprobe(verbose)


def copy_boot_loader(image: str, dm: DeviceMap, start_sector: int, verbose: bool = True) -> int:
    count = start_sector // 2048
    run(
        ["dd", f"if={image}", f"of={dm.sdcard_path}", "status=progress", f"bs={SECTOR * 2048}", f"count={count}"],
        check=True,
        timeout=DD_TIMEOUT,
        capture=not verbose,
    )
    partprobe()
    return count


def fdisk_script(start_sector: int, boot_sectors: int = BOOT_SECTORS) -> str:
    p1_end = start_sector + boot_sectors - 1
    p2_start = p1_end + 1
    return f"o\nn\np\n1\n{start_sector}\n{p1_end}\nn\np\n2\n{p2_start}\n\nw\n"


def partition_card(dm: DeviceMap, start_sector: int, boot_sectors: int = BOOT_SECTORS, verbose: bool = False):
    run(["fdisk", dm.sdcard_path], check=False, input_text=fdisk_script(start_sector, boot_sectors))
    partprobe(verbose)
    for name in (dm.boot, dm.root):
        if not devices.has_partition(dm, name):
            raise StageError(Stage.CARD_PARTITIONED, f"Partitioning failed! ({name} missing)")


def ensure_ext4(dev: str, reuse_fs: bool = False, label: str | None = None) -> bool:
    """Create ext4 on ``dev`` unless reuse is allowed and one exists.

    Returns True when a filesystem was created.
    """

    if reuse_fs and devices.fstype(dev) == "ext4":
        trace("partitioning.mkfs_reused", device=dev)
        return False
    cmd = ["mkfs.ext4", "-F"]
    if label:
        cmd += ["-L", label]
    run(cmd + [dev], check=True, timeout=600.0)
    return True


def set_label(dev: str, label: str):
    run(["e2label", dev, label], check=True)
    partprobe()
