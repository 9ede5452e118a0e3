"""
Cursor-driven pagination over entry store listings.

``DataStorePages`` turns a "list one page from this cursor" primitive into a
forward-only sequence of pages. The cursor is whatever token the entry store
handed back; it is threaded through untouched and never inspected here.

Usage:

    >>> pages = await store.list_keys(prefix="player_", page_size=25)
    >>> while not pages.is_finished:
    ...     await pages.advance_to_next_page()
    ...     for item in pages.get_current_page():
    ...         print(item.key)
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Generic, TypeVar

from .backends.base import ListResult
from .exceptions import InvalidStateError
from .logging_utils import get_store_logger

logger = get_store_logger("pagination")

T = TypeVar("T")

PageFetcher = Callable[[str | None, int], Awaitable[ListResult[T]]]


class DataStorePages(Generic[T]):
    """A lazy, forward-only sequence of listing pages.

    Nothing is fetched at construction: the current page is empty and the
    sequence is not finished until the first ``advance_to_next_page``.
    Once advanced, earlier pages and their cursors are gone; restarting
    requires a new listing call.

    Attributes:
        page_size: Items requested per page
        is_finished: True once the store reported no further cursor
    """

    def __init__(
        self,
        fetch_page: PageFetcher[T],
        page_size: int,
        cursor: str | None = None,
    ):
        """
        Args:
            fetch_page: ``(cursor, page_size) -> ListResult`` for one page
            page_size: Items requested per page
            cursor: Cursor to resume from (None starts at the beginning)
        """
        self._fetch_page = fetch_page
        self.page_size = page_size
        self._cursor = cursor
        self._current: list[T] = []
        self._finished = False
        self._pages_loaded = 0

    @property
    def is_finished(self) -> bool:
        return self._finished

    @property
    def cursor(self) -> str | None:
        """Cursor for the page after the current one (None when finished).

        Pass it back to the listing call to resume later from a fresh
        pages object.
        """
        return self._cursor

    def get_current_page(self) -> list[T]:
        """Return the buffered page (a copy; mutating it has no effect)."""
        return list(self._current)

    async def advance_to_next_page(self) -> None:
        """Fetch the next page, replacing the buffered one.

        Raises:
            InvalidStateError: If the listing is already finished
            RemoteUnavailableError: If the entry store call fails
        """
        if self._finished:
            raise InvalidStateError("Cannot advance a finished page listing")

        result = await self._fetch_page(self._cursor, self.page_size)
        self._current = list(result.items)
        self._cursor = result.next_cursor
        self._finished = result.next_cursor is None
        self._pages_loaded += 1
        logger.debug(
            "Loaded page %d (%d items, finished=%s)",
            self._pages_loaded,
            len(self._current),
            self._finished,
        )

    async def __aiter__(self) -> AsyncIterator[list[T]]:
        """Yield the current page, then every remaining page.

        An unloaded listing is loaded first.
        """
        if self._pages_loaded == 0:
            await self.advance_to_next_page()
        yield self.get_current_page()
        while not self._finished:
            await self.advance_to_next_page()
            yield self.get_current_page()

