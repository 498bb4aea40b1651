"""Target-side package install, initramfs rebuild and verification.

Everything here runs inside the chrooted target root, so commands are
invoked directly rather than through ``chroot``.
"""

from __future__ import annotations

import glob
import os
import re
from typing import Any, Dict

from . import console
from .errors import InitramfsError
from .executil import run, trace
from .model import IpMode

APT_TIMEOUT = 1800
INITRAMFS_TIMEOUT = 600
BOOT_SCRIPT_CMD = ["mkimage", "-C", "none", "-A", "arm", "-T", "script", "-d", "/boot/boot.cmd", "/boot/boot.scr"]
CRYPTSETUP_HOOK = "/etc/initramfs-tools/conf.d/cryptsetup"
DPKG_CFG = "/root/.dpkg.cfg"


def packages_for_target(distro: str, ip_mode: IpMode) -> list[str]:
    if distro in ("focal", "buster"):
        pkgs, pkgs_ssh = ["cryptsetup-initramfs"], ["dropbear-initramfs"]
    elif distro == "bionic":
        pkgs, pkgs_ssh = ["cryptsetup"], ["dropbear-initramfs"]
    else:
        console.warn(f"Warning: unrecognized target distribution '{distro}'")
        pkgs, pkgs_ssh = ["cryptsetup"], ["dropbear"]
    if ip_mode is not IpMode.NONE:
        pkgs += pkgs_ssh
    return pkgs


def packages_for_host(distro: str) -> list[str]:
    if distro in ("focal", "bionic", "buster"):
        return ["cryptsetup-bin", "ed"]
    console.warn(f"Warning: unrecognized host distribution '{distro}'")
    return ["cryptsetup", "ed"]


def installed(pkg: str) -> bool:
    out = run(["dpkg", "-l", pkg], check=False).out or ""
    return any(line.startswith("ii") for line in out.splitlines())


def missing(pkgs: list[str]) -> list[str]:
    return [p for p in pkgs if not installed(p)]


def apt_update(upgrade: bool = False, ignore_errors: bool = False):
    run(["apt", "--yes", "update"], check=not ignore_errors, timeout=APT_TIMEOUT, capture=False)
    if upgrade:
        run(["apt", "--yes", "upgrade"], check=not ignore_errors, timeout=APT_TIMEOUT, capture=False)


def install_host_packages(distro: str, upgrade: bool = False, ignore_errors: bool = False) -> list[str]:
    pkgs = missing(packages_for_host(distro))
    if pkgs:
        apt_update(upgrade, ignore_errors)
        run(["apt", "--yes", "install", *pkgs], check=True, timeout=APT_TIMEOUT, capture=False)
    return pkgs


def make_boot_script() -> str:
    res = run(BOOT_SCRIPT_CMD, check=True)
    console.display_file(" ".join(BOOT_SCRIPT_CMD), res.out or "")
    return res.out or ""


def enable_cryptsetup_hook(distro: str) -> bool:
    # bionic's initramfs hook skips cryptsetup unless forced
    if distro != "bionic":
        return False
    os.makedirs(os.path.dirname(CRYPTSETUP_HOOK), exist_ok=True)
    with open(CRYPTSETUP_HOOK, "w", encoding="utf-8") as fh:
        fh.write("export CRYPTSETUP=y\n")
    return True


def _initrd_listing() -> str:
    images = sorted(glob.glob("/boot/initrd.img-*"))
    return "\n".join(f"{p} {os.path.getmtime(p)}" for p in images)


def install_target_packages(distro: str, ip_mode: IpMode, upgrade: bool = False,
                            ignore_errors: bool = False) -> Dict[str, Any]:
    """Install unlock packages; report whether that already rebuilt the initrd."""

    pkgs = missing(packages_for_target(distro, ip_mode))
    stats: Dict[str, Any] = {"packages": pkgs, "initramfs_updated": False}
    if not pkgs:
        return stats
    console.info(f"target packages to install: {' '.join(pkgs)}")
    before = _initrd_listing()
    run(["dpkg", "--configure", "--pending", "--force-confdef"], check=True, timeout=APT_TIMEOUT)
    for noisy in ("bash-completion", "command-not-found"):
        run(["apt", "--yes", "purge", noisy], check=False, timeout=APT_TIMEOUT)
    apt_update(upgrade, ignore_errors)
    with open(DPKG_CFG, "w", encoding="utf-8") as fh:
        fh.write("force-confdef\n")
    try:
        run(["apt", "--yes", "install", *pkgs], check=True, timeout=APT_TIMEOUT, capture=False)
    finally:
        os.remove(DPKG_CFG)
    run(["apt", "--yes", "autoremove"], check=False, timeout=APT_TIMEOUT)
    stats["initramfs_updated"] = before != _initrd_listing()
    trace("initramfs.packages", **stats)
    return stats


def kernel_version(boot_dir: str = "/boot") -> str:
    for name in sorted(os.listdir(boot_dir)):
        match = re.match(r"^vmlinu[xz]-(.+)$", name)
        if match:
            return match.group(1)
    raise RuntimeError(f"initramfs: no kernel image found in {boot_dir}")


def update(boot_dir: str = "/boot") -> str:
    ver = kernel_version(boot_dir)
    run(["update-initramfs", "-k", ver, "-u"], check=True, timeout=INITRAMFS_TIMEOUT, capture=False)
    return ver


def check(ip_mode: IpMode, boot_dir: str = "/boot") -> Dict[str, int]:
    """Verify the initrd can unlock the root volume; raise InitramfsError if not."""

    images = sorted(glob.glob(os.path.join(boot_dir, "initrd.img*")))
    if not images:
        raise InitramfsError(f"no initrd image in {boot_dir}")
    res = run(["lsinitramfs", *images], check=False, timeout=INITRAMFS_TIMEOUT)
    lines = [line for line in (res.out or "").splitlines() if line.strip()]
    required = [("cryptsetup", lambda n: n > 5, "Cryptsetup scripts missing in initramfs image")]
    if ip_mode is not IpMode.NONE:
        required += [
            ("dropbear", lambda n: n > 5, "Dropbear scripts missing in initramfs image"),
            ("authorized_keys", lambda n: n == 1, "authorized_keys missing in initramfs image"),
        ]
    counts: Dict[str, int] = {}
    for word, accept, why in required:
        hits = [line for line in lines if word in line]
        counts[word] = len(hits)
        if not accept(len(hits)):
            raise InitramfsError(why, lines)
        console.display_file(f"lsinitramfs {boot_dir}/initrd.img* | grep '{word}'", "\n".join(hits))
    trace("initramfs.check", **counts)
    return counts
