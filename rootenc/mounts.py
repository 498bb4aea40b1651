"""Mount helpers: image loop mount, scoped boot partition, target root."""
from __future__ import annotations

import contextlib
import os
from typing import Iterator

from . import luks
from .executil import run, trace
from .model import BuildDirs, DeviceMap

# source, destination (relative to target root), mount args
PSEUDO_FS = (
    ("udev", "dev", ["-t", "devtmpfs", "-o", "rw,relatime,nosuid,mode=0755"]),
    ("devpts", "dev/pts", ["-t", "devpts"]),
    ("tmpfs", "dev/shm", ["-t", "tmpfs", "-o", "rw,nosuid,nodev,relatime"]),
    ("proc", "proc", ["-t", "proc"]),
    ("sys", "sys", ["-t", "sysfs"]),
)


def is_mountpoint(path: str) -> bool:
    return run(["mountpoint", "-q", path], check=False).rc == 0


def mount(dev: str, target: str, args: list[str] | None = None):
    run(["mount", *(args or []), dev, target], check=True)


def umount(path: str):
    if is_mountpoint(path):
        run(["umount", path], check=True)


def umount_all(path: str, max_rounds: int = 8):
    """Lazily unmount ``path`` and everything below until nothing is left."""

    for _ in range(max_rounds):
        if not is_mountpoint(path):
            return
        run(["umount", "-Rl", path], check=False)
    trace("mounts.umount_stuck", path=path)


@contextlib.contextmanager
def boot_partition_mounted(dm: DeviceMap, boot_root: str) -> Iterator[str]:
    """Hold the boot partition at ``boot_root`` for the duration of the block."""

    os.makedirs(boot_root, exist_ok=True)
    mount(dm.boot_path, boot_root)
    try:
        yield boot_root
    finally:
        run(["umount", boot_root], check=False)


def create_build_dirs(dirs: BuildDirs):
    for path in dirs.all():
        os.makedirs(path, exist_ok=True)


def remove_build_dirs(dirs: BuildDirs):
    for path in reversed(dirs.all()):
        with contextlib.suppress(FileNotFoundError, OSError):
            os.rmdir(path)


def setup_loopmount(image: str, src_root: str) -> str:
    loop_dev = (run(["losetup", "-f"], check=True).out or "").strip()
    run(["losetup", "-P", loop_dev, image], check=True)
    mount(f"{loop_dev}p1", src_root)
    trace("mounts.loop", image=image, loop=loop_dev, mountpoint=src_root)
    return loop_dev


def close_loopmount(image: str, src_root: str):
    while is_mountpoint(src_root):
        if run(["umount", src_root], check=False).rc != 0:
            break
    out = run(["losetup", "--noheadings", "--raw", "--list", "-j", image], check=False).out or ""
    for line in out.splitlines():
        fields = line.split()
        if fields:
            run(["losetup", "-d", fields[0]], check=False)


def mount_target(dm: DeviceMap, rootfs_name: str, passwd: str, target_root: str):
    mapper = luks.open_luks(dm.root_path, rootfs_name, passwd)
    mount(mapper, target_root)
    boot = os.path.join(target_root, "boot")
    os.makedirs(boot, exist_ok=True)
    mount(dm.boot_path, boot)
    for src, dest, args in PSEUDO_FS:
        path = os.path.join(target_root, dest)
        os.makedirs(path, exist_ok=True)
        mount(src, path, args)


def umount_target(dirs: BuildDirs):
    for path in (dirs.boot, dirs.target):
        umount_all(path)
