from __future__ import annotations

import subprocess

from . import console
from .executil import Result, run, trace

COPY_TIMEOUT = 4 * 3600
ROOT_EXCLUDES = ["/boot"]
# rsync: partial transfer / vanished source files
SOFT_FAILURES = (23, 24)


def copy_tree(src: str, dst: str, excludes: list[str] | None = None, verbose: bool = False) -> Result:
    """Copy the contents of ``src`` into ``dst`` with rsync.

    Progress goes straight to the terminal; exit codes 23/24 are reported as
    warnings rather than failures.
    """

    cmd = ["rsync", "--verbose" if verbose else "--info=progress2", "--archive"]
    for pattern in excludes or []:
        cmd += ["--exclude", pattern]
    cmd += [src.rstrip("/") + "/", dst.rstrip("/") + "/"]
    try:
        result = run(cmd, check=True, timeout=COPY_TIMEOUT, capture=False)
    except subprocess.CalledProcessError as exc:
        if exc.returncode not in SOFT_FAILURES:
            raise
        console.warn(f"rsync completed with return code {exc.returncode} (partial transfer). Continuing.")
        result = Result(exc.returncode, exc.output or "", exc.stderr or "", 0.0)
    trace("root_sync.copied", src=src, dst=dst, rc=result.rc, dur=result.duration)
    return result


def sync_disks():
    run(["sync"], check=False, timeout=COPY_TIMEOUT)
