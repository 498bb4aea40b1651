"""Re-run this tool inside the target root via chroot.

The host builds a zipapp of the ``rootenc`` package, drops it into the
target root, runs it under ``chroot`` with a scrubbed environment and
the ``in_target`` sentinel, waits for it, then removes the archive.
"""
from __future__ import annotations

import os
import shutil
import tempfile
import zipapp
from enum import Enum
from typing import Callable, Mapping, Sequence

from .config import DEV_FLAGS
from .errors import RelayError
from .executil import LOG_LEVEL, Result, run, trace
from .model import ConfigSnapshot, Flags

RELAY_NAME = "rootenc_relay.pyz"
IN_TARGET = "in_target"
CHROOT_PATH = "/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin"

# everything the target side may see; the disk password is never among them
ALLOWED_ENV = frozenset(
    {"PATH", "HOME", "LANG", "ROOTFS_NAME", "IP_ADDRESS", "TARGET_DISTRO", "ROOTENC_LOG_LEVEL", *DEV_FLAGS}
)
SECRET_ENV = frozenset({"DISK_PASSWD"})


class RelayState(Enum):
    NOT_ENTERED = "not_entered"
    INSIDE_CHROOT = "inside_chroot"
    RETURNED = "returned"


def relay_env(snapshot: ConfigSnapshot, flags: Flags, target_distro: str) -> dict[str, str]:
    env = {
        "PATH": CHROOT_PATH,
        "HOME": "/root",
        "LANG": "C",
        "ROOTFS_NAME": snapshot.rootfs_name,
        "IP_ADDRESS": snapshot.ip_address,
        "TARGET_DISTRO": target_distro,
        "ROOTENC_LOG_LEVEL": LOG_LEVEL,
    }
    for key, attr in DEV_FLAGS.items():
        if getattr(flags, attr):
            env[key] = "y"
    return env


def check_env(env: Mapping[str, str]) -> None:
    leaked = sorted(SECRET_ENV & set(env))
    if leaked:
        raise RelayError(f"refusing to pass {', '.join(leaked)} into the target")
    extra = sorted(set(env) - ALLOWED_ENV)
    if extra:
        raise RelayError(f"unexpected variables for the target: {', '.join(extra)}")


def build_zipapp(dest: str) -> str:
    """Write a runnable archive of this package to ``dest``."""

    pkg_dir = os.path.dirname(os.path.abspath(__file__))
    with tempfile.TemporaryDirectory(prefix="rootenc-relay-") as staging:
        shutil.copytree(
            pkg_dir,
            os.path.join(staging, "rootenc"),
            ignore=shutil.ignore_patterns("__pycache__", "*.pyc"),
        )
        zipapp.create_archive(staging, target=dest, interpreter="/usr/bin/env python3", main="rootenc.cli:main")
    trace("relay.built", path=dest)
    return dest


class BoundaryRelay:
    """One-shot hand-off of control into the target root.

    A relay moves NOT_ENTERED -> INSIDE_CHROOT -> RETURNED and cannot be
    entered twice.  The child's exit status is returned unchanged.
    """

    def __init__(
        self,
        target_root: str,
        python: str = "python3",
        builder: Callable[[str], str] = build_zipapp,
        runner: Callable[..., Result] = run,
    ):
        self.target_root = target_root
        self.python = python
        self.builder = builder
        self.runner = runner
        self.state = RelayState.NOT_ENTERED
        self.returncode: int | None = None

    @property
    def archive(self) -> str:
        return os.path.join(self.target_root, RELAY_NAME)

    def command(self, args: Sequence[str]) -> list[str]:
        return ["chroot", self.target_root, self.python, "/" + RELAY_NAME, *args, IN_TARGET]

    def enter(self, env: Mapping[str, str], args: Sequence[str] = ()) -> int:
        if self.state is not RelayState.NOT_ENTERED:
            raise RelayError(f"relay already {self.state.value}")
        check_env(env)
        try:
            self.builder(self.archive)
            self.state = RelayState.INSIDE_CHROOT
            trace("relay.enter", target=self.target_root, args=list(args))
            res = self.runner(self.command(args), check=False, env=dict(env), timeout=None, capture=False)
            self.returncode = res.rc
        finally:
            self.state = RelayState.RETURNED
            try:
                os.remove(self.archive)
            except FileNotFoundError:
                pass
        trace("relay.returned", target=self.target_root, rc=self.returncode)
        return self.returncode


def relay(target_root: str, env: Mapping[str, str], args: Sequence[str] = ()) -> int:
    return BoundaryRelay(target_root).enter(env, args)
