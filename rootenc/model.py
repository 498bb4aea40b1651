from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Optional

from .paths import BUILD_DIR_NAME


class Stage(str, Enum):
    CARD_PARTITIONED = "card_partitioned"
    BOOTPART_COPIED = "bootpart_copied"
    BOOTPART_LABEL_CREATED = "bootpart_label_created"
    ROOTPART_COPIED = "rootpart_copied"
    TARGET_CONFIGURED = "target_configured"

    def __str__(self) -> str:
        return self.value


class IpMode(str, Enum):
    STATIC = "static"
    DHCP = "dhcp"
    NONE = "none"


def ip_mode_of(address: str) -> IpMode:
    value = (address or "").lower()
    if value == "dhcp":
        return IpMode.DHCP
    if value in ("", "none"):
        return IpMode.NONE
    return IpMode.STATIC


# snapshot field -> persisted key, in file order
SNAPSHOT_KEYS = {
    "image": "ARMBIAN_IMAGE",
    "bootpart_label": "BOOTPART_LABEL",
    "rootfs_name": "ROOTFS_NAME",
    "disk_passwd": "DISK_PASSWD",
    "unlocking_userhost": "UNLOCKING_USERHOST",
    "ip_address": "IP_ADDRESS",
    "add_all_mods": "ADD_ALL_MODS",
    "use_local_authorized_keys": "USE_LOCAL_AUTHORIZED_KEYS",
}


@dataclass(frozen=True)
class ConfigSnapshot:
    image: str
    bootpart_label: str
    rootfs_name: str
    disk_passwd: str
    unlocking_userhost: str = ""
    ip_address: str = "none"
    add_all_mods: bool = False
    use_local_authorized_keys: bool = False

    @property
    def ip_mode(self) -> IpMode:
        return ip_mode_of(self.ip_address)

    def as_dict(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass
class Flags:
    no_cleanup: bool = False
    debug: bool = False
    verbose: bool = False
    force_reconfigure: bool = False
    force_rebuild: bool = False
    add_all_mods: bool = False
    partition_only: bool = False
    use_local_authorized_keys: bool = False
    apt_upgrade: bool = False
    erase: bool = False
    assume_yes: bool = False
    reuse_fs: bool = False
    testing: bool = False
    pause: bool = False
    ignore_apt_errors: bool = False
    orig_opts: list[str] = field(default_factory=list)


@dataclass
class DeviceMap:
    sdcard: str
    boot: str
    root: str
    info: str = ""

    @property
    def sdcard_path(self) -> str:
        return f"/dev/{self.sdcard}"

    @property
    def boot_path(self) -> str:
        return f"/dev/{self.boot}"

    @property
    def root_path(self) -> str:
        return f"/dev/{self.root}"


@dataclass
class BuildDirs:
    base: str

    @classmethod
    def under(cls, workdir: Optional[str] = None) -> "BuildDirs":
        return cls(os.path.join(workdir or os.getcwd(), BUILD_DIR_NAME))

    @property
    def src(self) -> str:
        return os.path.join(self.base, "src")

    @property
    def boot(self) -> str:
        return os.path.join(self.base, "boot")

    @property
    def target(self) -> str:
        return os.path.join(self.base, "target")

    def all(self) -> list[str]:
        return [self.base, self.src, self.boot, self.target]
