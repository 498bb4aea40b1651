"""Static stage graph: execution order and config-invalidation rules."""
from __future__ import annotations

from typing import Optional

from .model import ConfigSnapshot, IpMode, Stage

ORDER: tuple[Stage, ...] = (
    Stage.CARD_PARTITIONED,
    Stage.BOOTPART_COPIED,
    Stage.BOOTPART_LABEL_CREATED,
    Stage.ROOTPART_COPIED,
    Stage.TARGET_CONFIGURED,
)

# Executed inside the chrooted target root rather than on the host.
TARGET_SIDE: frozenset[Stage] = frozenset({Stage.TARGET_CONFIGURED})

# Dependencies that exist regardless of config: a label on a partition that
# never received its files is meaningless.
REQUIRES: dict[Stage, frozenset[Stage]] = {
    Stage.BOOTPART_LABEL_CREATED: frozenset({Stage.BOOTPART_COPIED}),
}

INVALIDATES: dict[str, frozenset[Stage]] = {
    "image": frozenset({Stage.CARD_PARTITIONED}),
    "bootpart_label": frozenset({Stage.BOOTPART_LABEL_CREATED}),
    "rootfs_name": frozenset({Stage.TARGET_CONFIGURED}),
    "disk_passwd": frozenset({Stage.ROOTPART_COPIED}),
    "unlocking_userhost": frozenset({Stage.TARGET_CONFIGURED}),
    "ip_address": frozenset({Stage.TARGET_CONFIGURED}),
    "add_all_mods": frozenset({Stage.TARGET_CONFIGURED}),
    "use_local_authorized_keys": frozenset({Stage.TARGET_CONFIGURED}),
}


def index(stage: Stage) -> int:
    return ORDER.index(stage)


def predecessor(stage: Stage) -> Optional[Stage]:
    i = index(stage)
    return ORDER[i - 1] if i > 0 else None


def successors(stage: Stage) -> tuple[Stage, ...]:
    return ORDER[index(stage) + 1:]


def prerequisites(stage: Stage) -> frozenset[Stage]:
    before = predecessor(stage)
    direct = frozenset({before}) if before is not None else frozenset()
    return direct | REQUIRES.get(stage, frozenset())


def invalidated_by(field_name: str) -> frozenset[Stage]:
    try:
        return INVALIDATES[field_name]
    except KeyError:
        raise KeyError(f"unknown config field {field_name!r}") from None


def field_changed(field_name: str, previous: ConfigSnapshot, current: ConfigSnapshot) -> bool:
    """Return True when ``field_name`` differs in a way that voids its stage.

    Two fields are guarded: a new unlocking host only counts when one is
    actually set now (dropping remote unlock does not force a rebuild), and
    the key source only matters while remote unlock over IP is enabled.
    """

    old = getattr(previous, field_name)
    new = getattr(current, field_name)
    if field_name == "unlocking_userhost":
        return bool(new) and old != new
    if field_name == "use_local_authorized_keys":
        return current.ip_mode is not IpMode.NONE and old != new
    return old != new


def sort_stages(stages) -> list[Stage]:
    return sorted(set(stages), key=index)
