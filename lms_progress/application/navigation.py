from dataclasses import dataclass
from typing import Sequence

from ..domain.entities import Chapter, ContentItem


@dataclass(frozen=True)
class NavigationTarget:
    chapter_id: str
    content_id: str | None = None  # None: open the chapter at its first item


def sort_chapters(chapters: Sequence[Chapter]) -> list[Chapter]:
    # sorted() is stable: chapters sharing an order index keep the server's order
    return sorted(chapters, key=lambda c: c.order_index)


def sort_contents(contents: Sequence[ContentItem]) -> list[ContentItem]:
    return sorted(contents, key=lambda c: c.order_index)


def _index_of(items, item_id) -> int:
    for i, item in enumerate(items):
        if item.id == item_id:
            return i
    return -1


def next_chapter(chapters: Sequence[Chapter], chapter_id: str) -> Chapter | None:
    """The chapter after ``chapter_id`` by order, whatever its completion or lock state."""
    ordered = sort_chapters(chapters)
    idx = _index_of(ordered, chapter_id)
    if idx == -1:
        return ordered[0] if ordered else None
    if idx + 1 < len(ordered):
        return ordered[idx + 1]
    return None


def next_target(
    chapters: Sequence[Chapter],
    contents: Sequence[ContentItem],
    chapter_id: str,
    content_id: str | None,
) -> NavigationTarget | None:
    ordered = sort_contents(contents)
    # an unknown or missing content id starts the chapter from its first item
    idx = _index_of(ordered, content_id) if content_id else -1
    if idx + 1 < len(ordered):
        return NavigationTarget(chapter_id, ordered[idx + 1].id)

    following = next_chapter(chapters, chapter_id)
    if following is None:
        return None
    return NavigationTarget(following.id)


def previous_target(
    contents: Sequence[ContentItem],
    chapter_id: str,
    content_id: str | None,
) -> NavigationTarget | None:
    """Previous item within the current chapter only."""
    ordered = sort_contents(contents)
    idx = _index_of(ordered, content_id) if content_id else -1
    if idx > 0:
        return NavigationTarget(chapter_id, ordered[idx - 1].id)
    return None
