"""
Lazy, single-pass collection of person records.
"""

import logging
from typing import Optional, Sequence, Set

from ldap_registry.directory import ConnectionFactory
from ldap_registry.errors import DataIntegrityError
from ldap_registry.mapping import AttributeMapper
from ldap_registry.models import EntityRecord, IntegrityPolicy
from ldap_registry.query import PagedQuery, count_results

logger = logging.getLogger(__name__)

UNKNOWN_SIZE = -1


class PersonCollection:
    """
    Person records matching ``query`` across every user search base.

    The collection is its own iterator and can be consumed only once. The
    search on the first base starts on construction; further pages and bases
    are fetched as iteration reaches them. With ``estimate_size`` the whole
    query is run once beforehand just to count entries, so :attr:`size` is
    known up front at the cost of a second pass over the directory;
    otherwise :attr:`size` is ``UNKNOWN_SIZE``.
    """

    def __init__(self, factory: ConnectionFactory, search_bases: Sequence[str], query: str,
                 mapper: AttributeMapper, user_id_attribute: str,
                 policy: Optional[IntegrityPolicy] = None, batch_size: int = 0,
                 estimate_size: bool = False):
        self.query = query
        self.mapper = mapper
        self.user_id_attribute = user_id_attribute
        self.policy = policy or IntegrityPolicy()
        self._uids: Set[str] = set()

        if estimate_size:
            self.size = count_results(factory, search_bases, query, batch_size)
            logger.info(f"Estimated {self.size} people for query {query}")
        else:
            self.size = UNKNOWN_SIZE

        self._results = PagedQuery(factory, search_bases, query, mapper.returning_attributes, batch_size)
        self._results.open()

    def __iter__(self) -> 'PersonCollection':
        return self

    def __next__(self) -> EntityRecord:
        record = self.fetch_next()
        if record is None:
            raise StopIteration
        return record

    def fetch_next(self) -> Optional[EntityRecord]:
        """
        Return the next person, or None when every base is exhausted.

        Raises:
            DataIntegrityError: If a person lacks the user id attribute and the
                policy says so
            ProtocolError: If the directory fails
        """
        try:
            while True:
                result = self._results.advance()
                if result is None:
                    return None

                uid_attribute = result.attributes.get(self.user_id_attribute)
                if uid_attribute is None or uid_attribute.first() is None:
                    if self.policy.error_on_missing_uid:
                        raise DataIntegrityError(
                            f"User {result.dn} does not have mandatory user id attribute {self.user_id_attribute}"
                        )
                    logger.warning(f"User returned by user search does not have mandatory user id attribute: {result.dn}")
                    continue

                uid = str(uid_attribute.first())
                if uid in self._uids:
                    logger.warning(f"Duplicate uid found - there will be more than one person object for this user - {uid}")
                self._uids.add(uid)

                logger.debug(f"Adding user for {uid}")
                return self.mapper.map(result)
        except Exception:
            self.close()
            raise

    def close(self) -> None:
        self._results.close()

    def __enter__(self) -> 'PersonCollection':
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
