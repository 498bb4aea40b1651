"""Interactive prompts for values missing from the environment."""
from __future__ import annotations

from typing import Callable, Optional

from . import console
from .config import check_value
from .errors import UserAbort

Reader = Callable[[str], str]


def confirm(prompt: str, default_yes: bool, *, assume_yes: bool = False, reader: Reader = input) -> None:
    """Return when the operator agrees, raise :class:`UserAbort` otherwise."""

    if assume_yes:
        return
    suffix = "(Y/n)" if default_yes else "(y/N)"
    reply = reader(f"{prompt} {suffix} ").strip()
    if not reply and default_yes:
        return
    if reply[:1] in ("y", "Y"):
        return
    console.warn("Exiting at user request")
    raise UserAbort("declined at prompt")


def pause(reader: Reader = input) -> None:
    reader(f"{console.GREEN}(Press any key to continue){console.RESET}")


def ask(
    name: str,
    desc: str,
    prompt: str,
    *,
    default: str = "",
    current: str = "",
    extra_check: Optional[Callable[[str], Optional[str]]] = None,
    reader: Reader = input,
) -> str:
    """Prompt until a value for snapshot field ``name`` passes validation.

    A preset ``current`` value is used without prompting if it is valid.
    """

    value = current
    asked = False
    while True:
        if not value or asked:
            text = prompt % default if default and "%s" in prompt else prompt
            value = reader(f"\n{text} " if not asked else f"  Enter {desc}: ").strip()
            asked = True
        if not value and default:
            value = default
        problem = check_value(name, value)
        if problem is None and extra_check is not None:
            problem = extra_check(value)
        if problem is None:
            return value
        console.fail(f"  {desc} {problem}" if problem == "must not be empty" else f"  {problem}")
        asked = True
