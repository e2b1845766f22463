"""
Range retrieval of large multi-valued attributes.

Active Directory (and others) cap the number of values returned for an
attribute such as ``member``; the returned attribute is then named
``member;range=0-1499`` and the rest has to be requested with explicit
``;range=<start>-<end>`` options until a range ending in ``*`` comes back.
"""

import logging
import re
from typing import Any, Iterator, Optional

from ldap_registry.directory import Attribute, Attributes, DirectorySession

logger = logging.getLogger(__name__)

PATTERN_RANGE_END = re.compile(r';range=[0-9]+-\*')
PATTERN_RANGE = re.compile(r';range=[0-9]+-(?:[0-9]+|\*)')


def range_request(attribute_name: str, start: int, batch_size: int) -> str:
    """``member;range=<start>-<start + batch_size - 1>``"""
    return f"{attribute_name};range={start}-{start + batch_size - 1}"


def member_request(member_attribute: str, attribute_batch_size: int) -> str:
    """Member attribute as requested by the initial group query."""
    if attribute_batch_size > 0:
        return range_request(member_attribute, 0, attribute_batch_size)
    return member_attribute


def get_range_restricted_attribute(attributes: Attributes, attribute_name: str) -> Optional[Attribute]:
    """
    Return ``attribute_name`` from ``attributes``, falling back to a
    range-restricted variant (``<name>;range=...``) when the plain one is absent.
    """
    unrestricted = attributes.get(attribute_name)
    if unrestricted is not None:
        return unrestricted
    prefix = f"{attribute_name.lower()};range="
    for attribute in attributes:
        if attribute.id.lower().startswith(prefix):
            return attribute
    return None


def is_range_restricted(attribute: Attribute) -> bool:
    return PATTERN_RANGE.search(attribute.id.lower()) is not None


def is_final_range(attribute: Attribute) -> bool:
    return PATTERN_RANGE_END.search(attribute.id.lower()) is not None


class RangeBatchFetcher:
    """
    Reads every value of a multi-valued attribute, following range batches.

    Follow-up requests go to ``session``, which must not be the session
    driving the paged search of the entries themselves.
    """

    def __init__(self, session: DirectorySession, attribute_name: str, batch_size: int):
        self.session = session
        self.attribute_name = attribute_name
        self.batch_size = batch_size
        self.requests = 0

    def iter_batches(self, dn: str, attributes: Attributes) -> Iterator[Attribute]:
        """
        Yield the attribute batch found on the entry, then each further batch
        fetched from the directory.

        Raises:
            ProtocolError: If a follow-up request fails
        """
        batch = get_range_restricted_attribute(attributes, self.attribute_name)
        next_start = self.batch_size
        while batch is not None and len(batch) > 0:
            yield batch

            if next_start > 0 and is_range_restricted(batch) and not is_final_range(batch):
                request = range_request(self.attribute_name, next_start, self.batch_size)
                logger.debug(f"Fetching {request} for {dn}")
                fetched = self.session.get_attributes(dn, [request])
                self.requests += 1
                batch = get_range_restricted_attribute(fetched, self.attribute_name)
                next_start += self.batch_size
            else:
                batch = None

    def iter_values(self, dn: str, attributes: Attributes) -> Iterator[Any]:
        for batch in self.iter_batches(dn, attributes):
            yield from batch
