"""Reconciliation of locally-optimistic completion against server state.

Completion only ever moves forward for a learner, so the merged view of an
item is complete when either side says so. What differs is the repair:

* server ahead: the local store is brought up to the server;
* local ahead: the item still counts as complete, and the caller owes the
  server a write.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Mapping, Sequence

import structlog

from ..domain.entities import Confirmed, ContentItem, Optimistic
from ..infrastructure.metrics import reconciliation_divergences_total
from .progress_store import ProgressStore

logger = structlog.get_logger()


class Direction(str, Enum):
    SERVER_AHEAD = "server_ahead"
    LOCAL_AHEAD = "local_ahead"


@dataclass(frozen=True)
class Divergence:
    content_id: str
    direction: Direction


def reconcile(
    local: Mapping[str, Optimistic[bool]],
    remote: Mapping[str, Confirmed[bool]],
) -> tuple[dict[str, bool], list[Divergence]]:
    merged: dict[str, bool] = {}
    divergences: list[Divergence] = []
    for key in list(local) + [k for k in remote if k not in local]:
        mine = local[key].value if key in local else False
        theirs = remote[key].value if key in remote else False
        merged[key] = mine or theirs
        if theirs and not mine:
            divergences.append(Divergence(key, Direction.SERVER_AHEAD))
        elif mine and not theirs:
            divergences.append(Divergence(key, Direction.LOCAL_AHEAD))
    return merged, divergences


@dataclass
class ChapterRecompute:
    chapter_id: str
    course_id: str
    total: int
    completed: int
    is_complete: bool
    newly_completed: bool
    percent: float
    synced_from_server: list[str] = field(default_factory=list)
    pending_writes: list[str] = field(default_factory=list)


def chapter_percent(completed: int, total: int) -> float:
    if total <= 0:
        return 0.0
    return round(completed / total * 100, 2)


def recompute_chapter(
    store: ProgressStore,
    chapter_id: str,
    course_id: str,
    contents: Sequence[ContentItem],
    server_completed: Mapping[str, bool] | set[str] | frozenset[str],
    server_completed_at: Mapping[str, datetime] | None = None,
) -> ChapterRecompute:
    """Run one reconciliation pass for a chapter and update the store.

    Items the server already has are copied into the store with the server's
    ``completed_at`` when it is known.
    """
    if isinstance(server_completed, (set, frozenset)):
        server_flags = {cid: True for cid in server_completed}
    else:
        server_flags = dict(server_completed)

    local = {c.id: Optimistic(store.is_content_completed(c.id)) for c in contents}
    remote = {c.id: Confirmed(server_flags.get(c.id, False)) for c in contents}
    merged, divergences = reconcile(local, remote)

    synced, pending = [], []
    for d in divergences:
        reconciliation_divergences_total.labels(direction=d.direction.value).inc()
        if d.direction is Direction.SERVER_AHEAD:
            store.set_content_completed(d.content_id, chapter_id, course_id, True,
                                        completed_at=(server_completed_at or {}).get(d.content_id))
            synced.append(d.content_id)
        else:
            pending.append(d.content_id)

    total = len(contents)
    completed = sum(1 for v in merged.values() if v)
    # an empty chapter is never complete
    is_complete = total > 0 and completed == total
    percent = chapter_percent(completed, total)

    was_complete = store.is_chapter_completed(chapter_id)
    if is_complete != was_complete or store.get_chapter_progress(chapter_id) != percent:
        store.set_chapter_completed(chapter_id, course_id, is_complete, percent)

    if synced or pending:
        logger.info(
            "chapter_reconciled",
            chapter_id=chapter_id,
            synced_from_server=len(synced),
            pending_writes=len(pending),
        )

    return ChapterRecompute(
        chapter_id=chapter_id,
        course_id=course_id,
        total=total,
        completed=completed,
        is_complete=is_complete,
        newly_completed=is_complete and not was_complete,
        percent=percent,
        synced_from_server=synced,
        pending_writes=pending,
    )
