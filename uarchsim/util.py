"""Small sequence helpers used by the pipeline stages."""

from __future__ import annotations

from collections import deque
from collections.abc import Callable, Iterable, MutableSequence
from itertools import islice, takewhile
from typing import TypeVar

T = TypeVar("T")
U = TypeVar("U")


def get_span(items: Iterable[T], size: int) -> list[T]:
    """Return the first ``size`` items, or fewer if the input is shorter."""
    if size < 0:
        raise ValueError("span size must not be negative")
    return list(islice(items, size))


def get_span_p(
    items: Iterable[T], predicate: Callable[[T], bool], size: int | None = None
) -> list[T]:
    """Return the leading items, at most ``size`` of them, that satisfy ``predicate``."""
    window = items if size is None else get_span(items, size)
    return list(takewhile(predicate, window))


def extract_if(
    items: Iterable[T], predicate: Callable[[T], bool]
) -> tuple[list[T], list[T]]:
    """Split items into ``(kept, extracted)``, keeping the relative order of each."""
    kept: list[T] = []
    extracted: list[T] = []
    for item in items:
        (extracted if predicate(item) else kept).append(item)
    return kept, extracted


def transform_while_n(
    queue: MutableSequence[T],
    size: int,
    test: Callable[[T], bool],
    transform: Callable[[T], U],
) -> list[U]:
    """Remove the leading span that passes ``test`` (at most ``size`` items) and return it transformed."""
    span = get_span_p(queue, test, size)
    if isinstance(queue, deque):
        for _ in span:
            queue.popleft()
    else:
        del queue[: len(span)]
    return [transform(item) for item in span]