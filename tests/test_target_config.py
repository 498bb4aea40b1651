import os
from types import SimpleNamespace

import pytest

from rootenc import target_config
from rootenc.model import IpMode


def _put(root, rel, text):
    path = root / rel.lstrip("/")
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text)
    return path


def test_boot_cmd_drops_overridden_settings(tmp_path):
    _put(tmp_path, "/boot/boot.cmd", "setenv rootdev \"/dev/mmcblk0p1\"\nsetenv console \"both\"\nload mmc 0\n")
    assert target_config.edit_boot_cmd(str(tmp_path)) == "load mmc 0\n"


def test_armbian_env_points_at_mapper(tmp_path):
    _put(tmp_path, "/boot/armbianEnv.txt", "verbosity=1\nrootdev=UUID=abc\nconsole=serial\n")
    text = target_config.edit_armbian_env(str(tmp_path), "rootfs")
    assert text == "verbosity=1\nrootdev=/dev/mapper/rootfs\nconsole=display\nbootlogo=false\n"


@pytest.mark.parametrize(
    "ip,mode,expected",
    [
        ("192.168.1.50", IpMode.STATIC, ["IP=192.168.1.50:::255.255.255.0::eth0:off", "DEVICE=eth0"]),
        ("dhcp", IpMode.DHCP, ["DEVICE=eth0"]),
        ("none", IpMode.NONE, []),
    ],
)
def test_initramfs_conf(tmp_path, ip, mode, expected):
    _put(tmp_path, "/etc/initramfs-tools/initramfs.conf", "MODULES=most\nDEVICE=\nIP=dhcp\n")
    lines = target_config.edit_initramfs_conf(str(tmp_path), ip, mode).splitlines()
    assert lines[:2] == ["MODULES=most", "# IP=dhcp"]
    assert lines[2:] == expected


def test_crypttab_and_fstab(tmp_path):
    crypttab = target_config.write_crypttab(str(tmp_path), "rootfs", "1111")
    assert crypttab == "rootfs UUID=1111 none initramfs,luks\n"
    fstab = target_config.write_fstab(str(tmp_path), "rootfs", "2222").splitlines()
    assert fstab[0].startswith("/dev/mapper/rootfs / ext4 ")
    assert fstab[1].startswith("UUID=2222 /boot ext4 ")
    with pytest.raises(RuntimeError):
        target_config.write_crypttab(str(tmp_path), "rootfs", "")


def test_dropbear_config_is_idempotent(tmp_path):
    once = target_config.edit_dropbear_cfg(str(tmp_path), IpMode.DHCP)
    twice = target_config.edit_dropbear_cfg(str(tmp_path), IpMode.DHCP)
    assert once == twice == 'DROPBEAR_OPTIONS="-p 2222"\nDROPBEAR=y\n'
    assert target_config.edit_dropbear_cfg(str(tmp_path), IpMode.NONE) is None
    assert not os.path.exists(tmp_path / "etc/dropbear-initramfs/config")


def test_modules_file(tmp_path):
    text = target_config.write_initramfs_modules(str(tmp_path), ["dm_crypt", "aes"])
    assert text.startswith("# List of modules")
    assert text.endswith("dm_crypt\naes\n")
    empty = target_config.write_initramfs_modules(str(tmp_path), [])
    assert empty == target_config.MODULES_HEADER


def test_loaded_modules(monkeypatch):
    out = "Module                  Size  Used by\ndm_crypt 40960 1\naes_arm64 16384 0\n"
    monkeypatch.setattr(target_config, "run", lambda cmd, **kw: SimpleNamespace(rc=0, out=out))
    assert target_config.loaded_modules() == ["dm_crypt", "aes_arm64"]


def test_copy_to_target_replaces_symlink(tmp_path):
    src = tmp_path / "host_resolv.conf"
    src.write_text("nameserver 1.1.1.1\n")
    root = tmp_path / "target"
    (root / str(tmp_path).lstrip("/")).mkdir(parents=True)
    dest = root / str(src).lstrip("/")
    os.symlink("/nonexistent", dest)
    assert target_config.copy_to_target(str(root), str(src)) is True
    assert dest.read_text() == "nameserver 1.1.1.1\n"
    assert target_config.copy_to_target(str(root), str(tmp_path / "absent")) is False


def test_copy_authorized_keys(tmp_path):
    keyfile = tmp_path / "authorized_keys"
    keyfile.write_text("ssh-ed25519 AAAA me@host\n")
    root = tmp_path / "target"
    assert target_config.copy_authorized_keys(str(root), str(keyfile)) == "ssh-ed25519 AAAA me@host\n"
    assert (root / "etc/dropbear-initramfs/authorized_keys").exists()
