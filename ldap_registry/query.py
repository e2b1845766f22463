"""
Paged execution of one search filter across several search bases.

:class:`PagedQuery` is a pull-based producer: :meth:`PagedQuery.advance`
returns the next result (or None once every base is exhausted) and
:meth:`PagedQuery.close` releases whatever is still held. Bases are searched
in order; within a base every page is drained before the next base starts.
"""

import logging
from typing import Optional, Sequence

from ldap_registry.directory import (
    ConnectionFactory, DirectorySession, ResultEnumeration, SearchResult, close_quietly
)

logger = logging.getLogger(__name__)


class PagedQuery:
    """
    Streams the results of ``query`` over ``search_bases``.

    One session is held at a time, opened when a base is started and closed
    once that base has no further pages. The previous result's handle is
    released on every call to :meth:`advance` and on :meth:`close`.
    """

    def __init__(self, factory: ConnectionFactory, search_bases: Sequence[str], query: str,
                 attributes: Optional[Sequence[str]] = None, batch_size: int = 0):
        self.factory = factory
        self.search_bases = list(search_bases)
        self.query = query
        self.attributes = list(attributes) if attributes is not None else None
        self.batch_size = batch_size

        self._base_index = 0
        self._session: Optional[DirectorySession] = None
        self._results: Optional[ResultEnumeration] = None
        self._current: Optional[SearchResult] = None
        self._closed = False
        self.pages = 0
        self.count = 0

    @property
    def current_base(self) -> Optional[str]:
        if self._base_index < len(self.search_bases):
            return self.search_bases[self._base_index]
        return None

    def open(self) -> 'PagedQuery':
        """Start the search on the first base without consuming a result."""
        if self._results is None and not self._closed:
            self._guarded(self._start_base)
        return self

    def advance(self) -> Optional[SearchResult]:
        """
        Return the next result, or None once every base is exhausted.

        Raises:
            ProtocolError: If the directory fails; the query is closed first
        """
        return self._guarded(self._advance)

    def close(self) -> None:
        """Release the current result, enumeration and session. Safe to call repeatedly."""
        if self._closed:
            return
        self._closed = True
        self._release_current()
        self._release_results()
        self._release_session()
        logger.debug(f"Closed query {self.query} after {self.count} results in {self.pages} pages")

    def _guarded(self, step):
        try:
            return step()
        except Exception:
            self.close()
            raise

    def _advance(self) -> Optional[SearchResult]:
        self._release_current()
        while not self._closed:
            if self._results is None and not self._start_base():
                return None

            try:
                result = next(self._results)
            except StopIteration:
                self._release_results()
                if self.factory.has_next_page(self._session, self.batch_size):
                    logger.debug(f"Fetching next page for base {self.current_base}")
                    self._search()
                else:
                    self._release_session()
                    self._base_index += 1
                continue

            self._current = result
            self.count += 1
            return result
        return None

    def _start_base(self) -> bool:
        """Open a session for the current base and issue the first search. False when no base is left."""
        if self.current_base is None:
            self.close()
            return False
        logger.info(f"Searching base {self.current_base} with filter {self.query}")
        self._session = self.factory.open_session(self.batch_size)
        self._search()
        return True

    def _search(self) -> None:
        self._results = self._session.search(self.current_base, self.query, self.attributes)
        self.pages += 1

    def _release_current(self) -> None:
        current, self._current = self._current, None
        close_quietly(current, 'search result')

    def _release_results(self) -> None:
        results, self._results = self._results, None
        close_quietly(results, 'search results')

    def _release_session(self) -> None:
        session, self._session = self._session, None
        close_quietly(session, 'directory session')

    def __iter__(self) -> 'PagedQuery':
        return self

    def __next__(self) -> SearchResult:
        result = self.advance()
        if result is None:
            raise StopIteration
        return result

    def __enter__(self) -> 'PagedQuery':
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class SearchHandler:
    """Callback form of a query consumer."""

    def process(self, result: SearchResult) -> None:
        raise NotImplementedError

    def close(self) -> None:
        """Release anything the handler holds. Called exactly once."""


def process_query(handler: SearchHandler, factory: ConnectionFactory, search_bases: Sequence[str],
                  query: str, attributes: Optional[Sequence[str]] = None, batch_size: int = 0) -> int:
    """
    Invoke ``handler.process`` on every result of ``query`` across ``search_bases``.

    Each result's handle is released right after the handler returns, and
    ``handler.close`` runs exactly once whatever happens.

    Returns:
        Number of results processed
    """
    processed = 0
    try:
        with PagedQuery(factory, search_bases, query, attributes, batch_size) as results:
            for result in results:
                try:
                    handler.process(result)
                finally:
                    close_quietly(result, 'search result')
                processed += 1
    finally:
        close_quietly(handler, 'search handler')
    return processed


def count_results(factory: ConnectionFactory, search_bases: Sequence[str], query: str,
                  batch_size: int = 0) -> int:
    """Count the entries matching ``query`` without fetching any attributes."""
    count = 0
    with PagedQuery(factory, search_bases, query, [], batch_size) as results:
        for result in results:
            logger.debug(f"Counting entry: {result.dn}")
            count += 1
    return count
