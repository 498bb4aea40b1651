"""Host/target distribution and kernel detection."""
from __future__ import annotations

import os
import re
from dataclasses import dataclass

from .executil import run

_KERNEL_RE = re.compile(r"^vmlinu[xz]")


@dataclass
class SystemInfo:
    distro: str
    kernel: str


def kernel_in(boot_dir: str) -> str:
    try:
        names = sorted(n for n in os.listdir(boot_dir) if _KERNEL_RE.match(n))
    except FileNotFoundError:
        return ""
    return names[-1] if names else ""


def host_info() -> SystemInfo:
    distro = (run(["lsb_release", "--short", "--codename"], check=False).out or "").strip()
    return SystemInfo(distro=distro, kernel=kernel_in("/boot"))


def target_info(target_root: str) -> SystemInfo:
    res = run(["chroot", target_root, "lsb_release", "--short", "--codename"], check=False)
    return SystemInfo(
        distro=(res.out or "").strip(),
        kernel=kernel_in(os.path.join(target_root, "boot")),
    )


def distros_match(host: SystemInfo, target: SystemInfo) -> bool:
    return bool(host.distro) and host.distro == target.distro


def kernels_match(host: SystemInfo, target: SystemInfo) -> bool:
    """Same version up to the last dot, and the same flavour suffix."""

    h, t = host.kernel, target.kernel
    if not h or not t:
        return False
    return h.rsplit(".", 1)[0] == t.rsplit(".", 1)[0] and h.rsplit("-", 1)[-1] == t.rsplit("-", 1)[-1]


def describe(host: SystemInfo, target: SystemInfo) -> list[str]:
    return [
        f"{'':<8} {'Host':<28} Target",
        f"{'':<8} {'----':<28} ------",
        f"{'distro:':<8} {host.distro:<28} {target.distro}",
        f"{'kernel:':<8} {host.kernel:<28} {target.kernel}",
    ]
