"""Durable stage markers and the last-applied config snapshot.

Both live on the boot partition of the card being provisioned, so they
survive reboots and vanish naturally when the card is wiped.  Callers must
hold the boot partition mount (see :func:`rootenc.mounts.boot_partition_mounted`)
for the whole time they use a :class:`StateStore`.
"""
from __future__ import annotations

import os
from typing import Iterable, Optional

from . import stages
from .config import dump_snapshot, parse_snapshot
from .executil import trace
from .model import ConfigSnapshot, Stage
from .paths import CONFIG_VARS_NAME, STATE_DIR_NAME


class StateStore:
    def __init__(self, boot_root: str):
        self.boot_root = boot_root
        self.state_dir = os.path.join(boot_root, STATE_DIR_NAME)

    def __repr__(self) -> str:
        return f"StateStore({self.boot_root!r})"

    def _path(self, stage: Stage) -> str:
        if not isinstance(stage, Stage):
            raise TypeError(f"not a stage: {stage!r}")
        return os.path.join(self.state_dir, stage.value)

    def is_marked(self, stage: Stage) -> bool:
        return os.path.isfile(self._path(stage))

    def mark(self, stage: Stage) -> None:
        path = self._path(stage)
        if os.path.isfile(path):
            return
        os.makedirs(self.state_dir, exist_ok=True)
        with open(path, "w", encoding="utf-8") as fh:
            fh.flush()
            os.fsync(fh.fileno())
        trace("state.mark", stage=stage.value, path=path)

    def unmark(self, stage: Stage) -> None:
        path = self._path(stage)
        try:
            os.remove(path)
        except FileNotFoundError:
            return
        trace("state.unmark", stage=stage.value, path=path)

    def marked(self) -> list[Stage]:
        return [s for s in stages.ORDER if self.is_marked(s)]

    def mark_all(self, which: Optional[Iterable[Stage]] = None) -> None:
        for stage in (which if which is not None else stages.ORDER):
            self.mark(stage)

    def unmark_all(self, which: Optional[Iterable[Stage]] = None) -> None:
        for stage in (which if which is not None else stages.ORDER):
            self.unmark(stage)


def snapshot_path(boot_root: str) -> str:
    return os.path.join(boot_root, CONFIG_VARS_NAME)


def read_snapshot(boot_root: str) -> Optional[ConfigSnapshot]:
    path = snapshot_path(boot_root)
    try:
        with open(path, "r", encoding="utf-8") as fh:
            text = fh.read()
    except FileNotFoundError:
        return None
    return parse_snapshot(text)


def write_snapshot(boot_root: str, snapshot: ConfigSnapshot) -> str:
    path = snapshot_path(boot_root)
    tmp = path + ".tmp"
    fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as fh:
        fh.write(dump_snapshot(snapshot))
        fh.flush()
        os.fsync(fh.fileno())
    os.replace(tmp, path)
    trace("state.snapshot_written", path=path)
    return path
