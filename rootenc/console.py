"""Coloured operator messages; every line is mirrored into the trace log."""
from __future__ import annotations

import sys

from .executil import log

RED = "\033[31;1m"
GREEN = "\033[32;1m"
YELLOW = "\033[33;1m"
BLUE = "\033[34;1m"
PURPLE = "\033[35;1m"
RESET = "\033[0m"

TESTING = False


def _emit(color: str, msg: str, level: str = "INFO", end: str = "\n"):
    stream = sys.stdout
    if color:
        stream.write(f"{color}{msg}{RESET}{end}")
    else:
        stream.write(f"{msg}{end}")
    stream.flush()
    log(level, "console", msg=msg)


def info(msg: str, end: str = "\n"):
    _emit("", msg, end=end)


def ok(msg: str):
    _emit(GREEN, msg)


def warn(msg: str, end: str = "\n"):
    _emit(YELLOW, msg, level="WARN", end=end)


def fail(msg: str):
    _emit(RED, msg, level="ERROR")


def step(msg: str):
    _emit(PURPLE, msg)


def testing(msg: str):
    """Developer chatter, shown only with ROOTENC_TESTING."""

    if TESTING:
        _emit("", msg, level="TRACE")


def yes_no(flag: bool) -> str:
    return f"{GREEN}yes{RESET}" if flag else f"{RED}no{RESET}"


def display_file(name: str, text: str):
    """Print ``text`` in a box headed by ``name``."""

    hls = "─" * (len(name) + 1)
    lines = [f"┌─{hls}─┐", f"│ {name}: │", f"├─{hls}─┘"]
    lines += [f"│ {line}" for line in text.rstrip("\n").splitlines()]
    sys.stdout.write("\n".join(lines) + "\n")
    sys.stdout.flush()
