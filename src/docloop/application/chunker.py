"""Split an ordered item list into bounded chunks.

Pure functions only: the same items and budget always give the same chunks.
"""

from __future__ import annotations

from typing import Callable, List, Optional, Sequence

from docloop.config.constants import DEFAULT_CHUNK_BUDGET
from docloop.domain import Chunk, Item

ItemFormatter = Callable[[Item, int], str]
ItemFilter = Callable[[Item], bool]


def default_format(item: Item, original_index: int) -> str:
    """``[index] [ID: id] text`` followed by a blank line."""
    return f"[{original_index}] [ID: {item.id}] {item.text}\n\n"


def has_text(item: Item) -> bool:
    return bool(item.text and item.text.strip())


def split(
    items: Sequence[Item],
    budget: int = DEFAULT_CHUNK_BUDGET,
    format: ItemFormatter = default_format,  # noqa: A002
    include: Optional[ItemFilter] = None,
) -> List[Chunk]:
    """Group *items* into chunks whose formatted text stays within *budget*.

    Items are appended greedily.  A chunk is closed when the next formatted
    item would push it past *budget*, unless the chunk is still empty: an
    item longer than *budget* on its own gets a chunk of its own instead of
    being dropped or split.

    Args:
        items: Items in document order.
        budget: Maximum characters of formatted text per chunk.
        format: Renders one item; receives the item's ``original_index``.
        include: Keeps an item when it returns True.  Defaults to items
            whose text is not blank.

    Raises:
        ValueError: When *budget* is not positive.
    """
    if budget <= 0:
        raise ValueError(f"Chunk budget must be positive, got {budget}")
    keep = include or has_text

    chunks: List[Chunk] = []
    parts: List[str] = []
    ids: List[str] = []
    size = 0

    for item in items:
        if not keep(item):
            continue
        piece = format(item, item.original_index)
        if parts and size + len(piece) > budget:
            chunks.append(Chunk(index=len(chunks), text="".join(parts), item_ids=tuple(ids)))
            parts, ids, size = [], [], 0
        parts.append(piece)
        ids.append(item.id)
        size += len(piece)

    if parts:
        chunks.append(Chunk(index=len(chunks), text="".join(parts), item_ids=tuple(ids)))
    return chunks
