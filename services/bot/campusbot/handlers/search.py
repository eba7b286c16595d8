import asyncio
from typing import Any, Callable, Hashable, List, Sequence, Tuple, TypeVar

from ..messages import MAX_CAROUSEL_BUBBLES
from ..store import Store
from ..text import dedupe

T = TypeVar("T")


async def two_tier(
    store: Store,
    kind: str,
    exact_fields: Sequence[str],
    fuzzy_fields: Sequence[str],
    needle: str,
    key: Callable[[Any], Hashable],
) -> List[Any]:
    """
    Run the exact (substring) and fuzzy (character-multiset) searches
    concurrently and return their union, exact hits first, each key once.
    """
    exact, fuzzy = await asyncio.gather(
        store.exact(kind, exact_fields, needle),
        store.fuzzy(kind, fuzzy_fields, needle),
    )
    return dedupe(list(exact) + list(fuzzy), key)


def cap(records: Sequence[T], limit: int) -> Tuple[List[T], int]:
    """First ``limit`` records and how many were left out."""
    if limit <= 0 or len(records) <= limit:
        return list(records), 0
    return list(records[:limit]), len(records) - limit


def cap_cards(records: Sequence[T], limit: int, max_messages: int) -> Tuple[List[T], int]:
    """
    Like ``cap`` but also fits the reply envelope when every record is one
    carousel bubble. A truncated result needs a message slot for its note.
    """
    kept, omitted = cap(records, limit)
    room = max_messages * MAX_CAROUSEL_BUBBLES
    if omitted or len(kept) > room:
        room -= MAX_CAROUSEL_BUBBLES
        kept = list(records[:min(len(kept), room)])
        omitted = len(records) - len(kept)
    return kept, omitted


def cap_lines(
    records: Sequence[T], limit: int, per_message: int, max_messages: int, has_note: bool = False,
) -> Tuple[List[T], int]:
    """
    ``cap_cards`` for text pages of ``per_message`` lines. A reply that
    carries a note, or ends up truncated, keeps one message for it.
    """
    kept, omitted = cap(records, limit)
    room = (max_messages - (1 if has_note else 0)) * per_message
    if omitted or len(kept) > room:
        room = (max_messages - 1) * per_message
        kept = list(records[:min(len(kept), room)])
        omitted = len(records) - len(kept)
    return kept, omitted
