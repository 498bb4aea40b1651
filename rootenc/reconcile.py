"""Decide which stages must (re-)run and revoke stale markers."""
from __future__ import annotations

from typing import Optional

from . import console, stages
from .executil import info
from .model import SNAPSHOT_KEYS, ConfigSnapshot, Stage
from .state import StateStore


def changed_fields(previous: ConfigSnapshot, current: ConfigSnapshot) -> list[str]:
    return [name for name in SNAPSHOT_KEYS if stages.field_changed(name, previous, current)]


def pending_stages(store: StateStore) -> list[Stage]:
    """Read-only view: stages not yet marked, in execution order."""

    return [s for s in stages.ORDER if not store.is_marked(s)]


def _cascade(invalid: set[Stage]) -> set[Stage]:
    if not invalid:
        return set()
    first = min(invalid, key=stages.index)
    return {first, *stages.successors(first)}


def _report(changed: list[str], store: StateStore) -> None:
    keys = " ".join(SNAPSHOT_KEYS[name] for name in changed)
    console.warn(f"Install state altered due to changed config vars: {keys}")
    for stage in stages.ORDER:
        console.info(f"  {stage.value}: {console.yes_no(store.is_marked(stage))}")


def reconcile(
    previous: Optional[ConfigSnapshot],
    current: ConfigSnapshot,
    store: StateStore,
    *,
    force_rebuild: bool = False,
    force_reconfigure: bool = False,
) -> list[Stage]:
    """Return the stages still to run, after revoking invalidated markers.

    A stage is invalidated when a config field bound to it changed, when any
    earlier stage is invalidated, or when an earlier stage has no marker.
    Without a previous snapshot nothing on the card can be trusted.
    """

    if force_rebuild or previous is None:
        store.unmark_all()
        info("reconcile.reset", force_rebuild=force_rebuild, first_run=previous is None)
        return list(stages.ORDER)

    if force_reconfigure:
        store.unmark(Stage.TARGET_CONFIGURED)

    changed = changed_fields(previous, current)
    invalid: set[Stage] = set()
    for name in changed:
        invalid |= stages.invalidated_by(name)

    # a marker whose prerequisite is gone cannot stand either
    for stage in stages.ORDER:
        if store.is_marked(stage) and not all(store.is_marked(p) for p in stages.prerequisites(stage)):
            invalid.add(stage)

    revoked = [s for s in stages.sort_stages(_cascade(invalid)) if store.is_marked(s)]
    for stage in revoked:
        store.unmark(stage)

    info(
        "reconcile.done",
        changed=[SNAPSHOT_KEYS[n] for n in changed],
        revoked=[s.value for s in revoked],
    )
    if changed and revoked:
        _report(changed, store)

    return pending_stages(store)
