"""Host-side edits of the mounted target's /etc and /boot files."""
import glob
import os
import re
import shutil

from .executil import run, trace
from .model import IpMode

ETC_FILES = ("/etc/resolv.conf", "/etc/hosts")
APT_PROXY_GLOB = "/etc/apt/apt.conf.d/*proxy"
DISTRO_FILES = ("/etc/apt/sources.list", "/etc/apt/sources.list.d/armbian.list")
DROPBEAR_DIR = "etc/dropbear-initramfs"
DROPBEAR_OPTIONS = 'DROPBEAR_OPTIONS="-p 2222"'
FS_OPTS = "defaults,noatime,nodiratime,commit=600,errors=remount-ro"
MODULES_HEADER = """\
# List of modules that you want to include in your initramfs.
# They will be loaded at boot time in the order below.
#
# Syntax:  module_name [args ...]
#
# You must run update-initramfs(8) to effect this change.
#
"""


def _target_path(target_root: str, path: str) -> str:
    return os.path.join(target_root, path.lstrip("/"))


def _read(path: str) -> str:
    try:
        with open(path, "r", encoding="utf-8") as f:
            return f.read()
    except FileNotFoundError:
        return ""


def _write(path: str, text: str) -> str:
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        f.write(text)
        f.flush()
        os.fsync(f.fileno())
    return text


def _drop_lines(text: str, pattern: str) -> str:
    rx = re.compile(pattern)
    kept = [line for line in text.splitlines() if not rx.match(line)]
    return "\n".join(kept) + ("\n" if kept else "")


def copy_to_target(target_root: str, path: str) -> bool:
    """Copy a host file to the same path in the target, following symlinks."""

    if not os.path.exists(path):
        trace("target_config.copy_missing", path=path)
        return False
    dest = _target_path(target_root, path)
    os.makedirs(os.path.dirname(dest), exist_ok=True)
    if os.path.islink(dest):
        os.remove(dest)
    shutil.copyfile(path, dest)
    return True


def copy_etc_files(target_root: str) -> list[str]:
    copied = [p for p in ETC_FILES if copy_to_target(target_root, p)]
    copied += [p for p in sorted(glob.glob(APT_PROXY_GLOB)) if copy_to_target(target_root, p)]
    return copied


def copy_distro_files(target_root: str) -> list[str]:
    return [p for p in DISTRO_FILES if copy_to_target(target_root, p)]


def edit_boot_cmd(target_root: str) -> str:
    path = _target_path(target_root, "/boot/boot.cmd")
    text = _drop_lines(_read(path), r"^\s*setenv (rootdev|console|bootlogo)")
    return _write(path, text)


def edit_armbian_env(target_root: str, rootfs_name: str) -> str:
    path = _target_path(target_root, "/boot/armbianEnv.txt")
    text = _drop_lines(_read(path), r"^\s*(rootdev|console|bootlogo)=")
    text += f"rootdev=/dev/mapper/{rootfs_name}\nconsole=display\nbootlogo=false\n"
    return _write(path, text)


def edit_initramfs_conf(target_root: str, ip_address: str, ip_mode: IpMode) -> str:
    """Comment out IP=, drop DEVICE=, then add what the unlock mode needs."""

    path = _target_path(target_root, "/etc/initramfs-tools/initramfs.conf")
    lines = []
    for line in _read(path).splitlines():
        if re.match(r"^\s*DEVICE=", line):
            continue
        if re.match(r"^\s*IP=", line):
            line = "# " + line
        lines.append(line)
    if ip_mode is IpMode.STATIC:
        lines.append(f"IP={ip_address}:::255.255.255.0::eth0:off")
    if ip_mode is not IpMode.NONE:
        lines.append("DEVICE=eth0")
    return _write(path, "\n".join(lines) + "\n")


def loaded_modules() -> list[str]:
    out = run(["lsmod"], check=False).out or ""
    return [line.split()[0] for line in out.splitlines()[1:] if line.strip()]


def write_initramfs_modules(target_root: str, modules: list[str]) -> str:
    path = _target_path(target_root, "/etc/initramfs-tools/modules")
    body = "\n".join(modules)
    return _write(path, MODULES_HEADER + body + ("\n" if body else ""))


def copy_authorized_keys(target_root: str, keyfile: str = "authorized_keys") -> str:
    dest = _target_path(target_root, DROPBEAR_DIR + "/authorized_keys")
    os.makedirs(os.path.dirname(dest), exist_ok=True)
    shutil.copyfile(keyfile, dest)
    return _read(dest)


def write_crypttab(target_root: str, rootfs_name: str, root_uuid: str) -> str:
    if not root_uuid:
        raise RuntimeError("could not determine LUKS UUID of root partition")
    path = _target_path(target_root, "/etc/crypttab")
    return _write(path, f"{rootfs_name} UUID={root_uuid} none initramfs,luks\n")


def write_fstab(target_root: str, rootfs_name: str, boot_uuid: str) -> str:
    if not boot_uuid:
        raise RuntimeError("could not determine UUID of boot partition")
    path = _target_path(target_root, "/etc/fstab")
    lines = [
        f"/dev/mapper/{rootfs_name} / ext4 {FS_OPTS} 0 1",
        f"UUID={boot_uuid} /boot ext4 {FS_OPTS} 0 2",
        "tmpfs /tmp tmpfs defaults,nosuid 0 0",
    ]
    return _write(path, "\n".join(lines) + "\n")


def edit_dropbear_cfg(target_root: str, ip_mode: IpMode) -> str | None:
    path = _target_path(target_root, DROPBEAR_DIR + "/config")
    if ip_mode is IpMode.NONE:
        if os.path.exists(path):
            os.remove(path)
        return None
    text = _read(path)
    if not re.search(r'^DROPBEAR_OPTIONS="-p 2222"', text, re.M):
        if text and not text.endswith("\n"):
            text += "\n"
        text += f"{DROPBEAR_OPTIONS}\nDROPBEAR=y\n"
    return _write(path, text)
