"""Decide what a book update has to do.

Pure function of the remote inventory and the archive state; no I/O.
"""

from __future__ import annotations

from collections.abc import Sequence

from .models import ChapterDescriptor, UpdatePlan


def _same_title(a: str, b: str) -> bool:
    return " ".join(a.split()) == " ".join(b.split())


def _is_prefix(short: Sequence[str], long: Sequence[str]) -> bool:
    return len(short) <= len(long) and tuple(long[: len(short)]) == tuple(short)


def plan_update(
    inventory: Sequence[ChapterDescriptor],
    embedded: Sequence[ChapterDescriptor],
    strict_titles: bool = True,
    detect_republished: bool = False,
) -> UpdatePlan:
    """Compare *inventory* (remote, in reading order) with *embedded* (archive).

    * embedded ids are a prefix of the inventory: the tail is missing;
    * the inventory is a strict prefix of the embedded ids: nothing to do,
      the archive never loses chapters;
    * anything else (unknown id, reordering): rebuild from the whole
      inventory.

    With *strict_titles* a changed title on a shared id forces a rebuild;
    with *detect_republished* so does a newer publication date.
    """
    inventory = tuple(inventory)
    inv_ids = [c.stable_id for c in inventory]
    emb_ids = [c.stable_id for c in embedded]

    if len(inv_ids) < len(emb_ids) and _is_prefix(inv_ids, emb_ids):
        return UpdatePlan(
            missing=(),
            reason=f"source lists {len(inv_ids)} of {len(emb_ids)} archived chapters",
        )

    if not _is_prefix(emb_ids, inv_ids):
        listed = set(inv_ids)
        unknown = [i for i in emb_ids if i not in listed]
        if unknown:
            reason = f"archived chapter {unknown[0]!r} is no longer listed"
        else:
            reason = "chapters were reordered"
        return UpdatePlan(missing=inventory, rebuild_required=True, reason=reason)

    for old, new in zip(embedded, inventory):
        if strict_titles and not _same_title(old.title, new.title):
            return UpdatePlan(
                missing=inventory,
                rebuild_required=True,
                reason=f"chapter {new.position} renamed from {old.title!r} to {new.title!r}",
            )
        if (
            detect_republished
            and old.published_at is not None
            and new.published_at is not None
            and new.published_at > old.published_at
        ):
            return UpdatePlan(
                missing=inventory,
                rebuild_required=True,
                reason=f"chapter {new.position} {new.title!r} was republished",
            )

    missing = inventory[len(emb_ids):]
    return UpdatePlan(missing=missing, reason=f"{len(missing)} new chapters" if missing else "up to date")
