"""
Interfaces the engine needs from a directory connection.

A :class:`ConnectionFactory` hands out :class:`DirectorySession` objects that
can run subtree searches and point lookups. Paging cursors live on the
session; the engine only asks the factory whether another page exists.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, Iterator, Optional, Sequence

logger = logging.getLogger(__name__)


def close_quietly(resource: Any, description: str = 'resource') -> None:
    """Close ``resource`` if it is not None, logging (never raising) failures."""
    if resource is None:
        return
    try:
        resource.close()
    except Exception as e:
        logger.debug(f"Error when closing {description}: {e}")


class Attribute:
    """A named, possibly multi-valued directory attribute."""

    def __init__(self, attribute_id: str, values: Iterable[Any] = ()):
        self.id = attribute_id
        self.values = list(values)

    def first(self) -> Any:
        return self.values[0] if self.values else None

    def has_value(self, value: str) -> bool:
        """Case-insensitive search for ``value`` among the string values."""
        wanted = value.lower()
        for candidate in self.values:
            if isinstance(candidate, bytes):
                try:
                    candidate = candidate.decode('utf-8')
                except UnicodeDecodeError:
                    continue
            if isinstance(candidate, str) and candidate.lower() == wanted:
                return True
        return False

    def __len__(self) -> int:
        return len(self.values)

    def __iter__(self) -> Iterator[Any]:
        return iter(self.values)

    def __repr__(self) -> str:
        return f"Attribute({self.id!r}, {self.values!r})"


class Attributes:
    """Attributes of one entry, looked up case-insensitively by id."""

    def __init__(self, attributes: Optional[Dict[str, Any]] = None):
        self._attributes = {}
        for attribute_id, values in (attributes or {}).items():
            self.add(attribute_id, values)

    def add(self, attribute_id: str, values: Any) -> None:
        if values is None:
            values = []
        elif isinstance(values, (str, bytes)) or not isinstance(values, (list, tuple, set)):
            values = [values]
        self._attributes[attribute_id.lower()] = Attribute(attribute_id, values)

    def get(self, attribute_id: str) -> Optional[Attribute]:
        return self._attributes.get(attribute_id.lower())

    def __contains__(self, attribute_id: str) -> bool:
        return attribute_id.lower() in self._attributes

    def __iter__(self) -> Iterator[Attribute]:
        return iter(self._attributes.values())

    def __len__(self) -> int:
        return len(self._attributes)

    def __repr__(self) -> str:
        return f"Attributes({list(self._attributes.values())!r})"


class SearchResult:
    """
    One entry returned by a search.

    ``handle`` is an optional auxiliary resource tied to the entry (for
    example a resolved object context); it is released by :meth:`close`.
    """

    def __init__(self, dn: str, attributes: Optional[Attributes] = None, handle: Any = None):
        self.dn = dn
        self.attributes = attributes if attributes is not None else Attributes()
        self.handle = handle

    def close(self) -> None:
        handle, self.handle = self.handle, None
        if handle is not None:
            handle.close()

    def __repr__(self) -> str:
        return f"SearchResult({self.dn!r})"


class ResultEnumeration:
    """An iterator over search results that must be closed when done."""

    def __init__(self, results: Iterable[SearchResult] = ()):
        self._results = iter(results)
        self.closed = False

    def __iter__(self) -> 'ResultEnumeration':
        return self

    def __next__(self) -> SearchResult:
        if self.closed:
            raise StopIteration
        return next(self._results)

    def close(self) -> None:
        """Stop iteration and release every result not yet handed out."""
        if self.closed:
            return
        self.closed = True
        for result in self._results:
            close_quietly(result, 'search result')


class DirectorySession(ABC):
    """A live directory connection able to search and read entries."""

    @abstractmethod
    def search(self, search_base: str, search_filter: str,
               attributes: Optional[Sequence[str]] = None) -> ResultEnumeration:
        """
        Run a subtree search, continuing from the session's paging cursor if
        one is held.

        Raises:
            ProtocolError: If the search fails
        """

    @abstractmethod
    def get_attributes(self, dn: str, attribute_names: Sequence[str]) -> Attributes:
        """
        Read selected attributes of a single entry.

        Raises:
            ProtocolError: If the entry cannot be read
        """

    @abstractmethod
    def close(self) -> None:
        """Release the connection."""

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        close_quietly(self, 'directory session')


class ConnectionFactory(ABC):
    """Creates directory sessions and answers paging questions about them."""

    @abstractmethod
    def open_session(self, batch_size: int = 0) -> DirectorySession:
        """
        Open a ready-to-use session. A positive ``batch_size`` requests paged
        results of that size.
        """

    @abstractmethod
    def has_next_page(self, session: DirectorySession, batch_size: int) -> bool:
        """True if the last search on ``session`` left another page to fetch."""

